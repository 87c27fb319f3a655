"""API endpoints for reconciliation operations."""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import limiter, verify_api_key
from ..database import get_db
from .models import (
    ReconciliationFilters,
    ReconciliationRequest,
    ReconciliationRun,
    TriggeredBy,
    to_naive_utc,
)
from .service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconcile", tags=["reconciliation"])

REPORT_FORMATS = ("json", "csv", "text", "detailed_text")


class RunRegistry:
    """Reconciliation runs executing in the background, keyed by run id."""

    def __init__(self):
        self._runs: Dict[str, Tuple[asyncio.Task, asyncio.Event]] = {}

    def start(
        self,
        run_id: str,
        runner: Callable[[asyncio.Event], Awaitable[ReconciliationRun]],
    ) -> asyncio.Task:
        cancel_event = asyncio.Event()
        task = asyncio.create_task(runner(cancel_event))
        self._runs[run_id] = (task, cancel_event)
        task.add_done_callback(lambda t: self._finished(run_id, t))
        return task

    def _finished(self, run_id: str, task: asyncio.Task) -> None:
        self._runs.pop(run_id, None)
        if task.cancelled():
            logger.warning(f"Background reconciliation run {run_id} was aborted")
        elif task.exception() is not None:
            logger.error(f"Background reconciliation run {run_id} failed: {task.exception()}")

    def is_active(self, run_id: str) -> bool:
        return run_id in self._runs

    def cancel(self, run_id: str) -> bool:
        """Stop issuing lookups for a run. The partial run is still stored."""
        entry = self._runs.get(run_id)
        if entry is None:
            return False
        entry[1].set()
        logger.info(f"Cancellation requested for reconciliation run {run_id}")
        return True

    async def shutdown(self) -> None:
        entries = list(self._runs.values())
        for _, cancel_event in entries:
            cancel_event.set()
        if entries:
            await asyncio.gather(*(task for task, _ in entries), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._runs)


def get_reconciliation_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> ReconciliationService:
    return ReconciliationService(db, request.app.state.gateway, request.app.state.settings)


def _filters(client_id: Optional[str], provider_id: Optional[str]) -> Optional[ReconciliationFilters]:
    if not client_id and not provider_id:
        return None
    return ReconciliationFilters(client_id=client_id, provider_id=provider_id)


async def _run_in_background(
    state: Any,
    run_id: str,
    body: ReconciliationRequest,
    cancel_event: asyncio.Event,
) -> ReconciliationRun:
    async with state.db.session() as session:
        service = ReconciliationService(session, state.gateway, state.settings)
        run = await service.reconcile(
            body.window_start,
            body.window_end,
            filters=body.filters,
            triggered_by=TriggeredBy.ADMIN,
            cancel_event=cancel_event,
            run_id=run_id,
        )
    await state.dispatcher.dispatch(run)
    return run


@router.post("")
@limiter.limit("10/minute")
async def reconcile(
    request: Request,
    body: ReconciliationRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Reconcile a window now and return the stored run.

    Every payment confirmed in the window, or initiated in it and not yet
    confirmed, is classified as matched, discrepancy, unmatched or pending.
    """
    logger.info(f"Admin reconciliation requested for {body.window_start} - {body.window_end}")
    try:
        run = await service.reconcile(
            body.window_start,
            body.window_end,
            filters=body.filters,
            triggered_by=TriggeredBy.ADMIN,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await request.app.state.dispatcher.dispatch(run)
    return run.model_dump(mode="json")


@router.get("/report")
async def reconciliation_report(
    window_start: datetime = Query(..., description="Start of the window"),
    window_end: datetime = Query(..., description="End of the window"),
    format: str = Query(default="json", description="Output format: json, csv, text, detailed_text"),
    client_id: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
    service: ReconciliationService = Depends(get_reconciliation_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Render the report for a window.

    The latest stored unfiltered run for the window is reused. A filtered
    request, or a window never reconciled, runs reconciliation first.
    """
    if format not in REPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"format must be one of: {', '.join(REPORT_FORMATS)}",
        )
    window_start, window_end = to_naive_utc(window_start), to_naive_utc(window_end)
    if window_end < window_start:
        raise HTTPException(status_code=400, detail="window_end must not be before window_start")

    filters = _filters(client_id, provider_id)
    run = None
    if filters is None:
        run = await service.latest_for_window(window_start, window_end)
    if run is None:
        run = await service.reconcile(window_start, window_end, filters=filters)

    output = service.generate_report(run, format=format)
    if format == "json":
        return PlainTextResponse(content=output, media_type="application/json")
    content_type = "text/csv" if format == "csv" else "text/plain"
    return PlainTextResponse(content=output, media_type=content_type)


@router.post("/runs", status_code=202)
async def start_background_run(
    request: Request,
    body: ReconciliationRequest,
    api_key: str = Depends(verify_api_key),
):
    """Start a reconciliation run in the background and return its id."""
    run_id = str(uuid.uuid4())
    state = request.app.state
    state.runs.start(run_id, lambda cancel_event: _run_in_background(state, run_id, body, cancel_event))
    logger.info(f"Started background reconciliation run {run_id}")
    return {"run_id": run_id, "status": "running"}


@router.get("/runs")
async def list_runs(
    limit: int = Query(default=20, ge=1, le=100),
    service: ReconciliationService = Depends(get_reconciliation_service),
    api_key: str = Depends(verify_api_key),
):
    return [run.to_summary_dict() for run in await service.list_runs(limit)]


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
    api_key: str = Depends(verify_api_key),
):
    run = await service.get_run(run_id)
    if run is not None:
        return run.model_dump(mode="json")
    if request.app.state.runs.is_active(run_id):
        return JSONResponse(status_code=202, content={"run_id": run_id, "status": "running"})
    raise HTTPException(status_code=404, detail=f"Reconciliation run {run_id} not found")


@router.delete("/runs/{run_id}", status_code=202)
async def cancel_run(
    run_id: str,
    request: Request,
    api_key: str = Depends(verify_api_key),
):
    """Cancel a background run. Lookups already in flight still finish."""
    if not request.app.state.runs.cancel(run_id):
        raise HTTPException(status_code=404, detail=f"No active reconciliation run {run_id}")
    return {"run_id": run_id, "status": "cancelling"}

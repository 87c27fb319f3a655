"""FastAPI application exposing the payment integrity layer."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import limiter, rate_limit_handler, verify_api_key
from .config import IntegritySettings
from .database import DatabaseManager, EnforcementChangeRepository, get_db
from .exceptions import (
    AuthorityViolation,
    EnforcementChangeDenied,
    InvalidCallback,
    InvariantViolation,
    RecordNotFound,
)
from .gateway import PaymentGateway, get_gateway
from .integrity import (
    ChangeContext,
    EnforcementConfig,
    EnforcementLevel,
    StateAuthorityRegistry,
    TransitionValidator,
)
from .locks import KeyedLocks
from .reconciliation.api import RunRegistry, router as reconciliation_router
from .reconciliation.dispatch import RunDispatcher
from .reconciliation.scheduler import ReconciliationScheduler
from .services import OrphanChecker, PaymentEvent, PaymentService

logger = logging.getLogger(__name__)


class EnforcementChangeBody(BaseModel):
    """Request body for changing the enforcement level."""
    level: EnforcementLevel = Field(..., description="strict, warn or off")
    reason: str = Field(..., min_length=1, max_length=500, description="Why the level is changing")
    actor: str = Field(default="admin", min_length=1, max_length=100, description="Who is changing it")
    emergency: bool = Field(default=False, description="Use the emergency path; required for off")


def create_app(
    settings: Optional[IntegritySettings] = None,
    gateway: Optional[PaymentGateway] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Settings to run with. Read from the environment if omitted.
        gateway: Gateway collaborator. Built from settings if omitted.
        start_scheduler: Start the daily reconciliation and stuck sweep jobs.
    """
    settings = settings or IntegritySettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = DatabaseManager.from_settings(settings)
        await db.initialize()

        enforcement = EnforcementConfig(
            level=EnforcementLevel(settings.enforcement_level),
            actor="startup",
            reason="configured at startup",
        )
        async with db.session() as session:
            await EnforcementChangeRepository(session).record(enforcement.history[-1])

        app.state.settings = settings
        app.state.db = db
        app.state.gateway = gateway or get_gateway(settings)
        app.state.enforcement = enforcement
        app.state.validator = TransitionValidator(enforcement, StateAuthorityRegistry())
        app.state.locks = KeyedLocks()
        app.state.runs = RunRegistry()
        app.state.dispatcher = RunDispatcher(
            settings.webhook_urls,
            secret=settings.webhook_secret,
            retry_attempts=settings.webhook_retry_attempts,
            retry_delay=settings.webhook_retry_delay,
        )
        app.state.scheduler = None
        if start_scheduler:
            app.state.scheduler = ReconciliationScheduler(
                db, app.state.gateway, settings, dispatcher=app.state.dispatcher
            )
            app.state.scheduler.start()

        logger.info(f"Payment integrity service started with enforcement {enforcement.level.value}")
        try:
            yield
        finally:
            if app.state.scheduler is not None:
                app.state.scheduler.shutdown()
            await app.state.runs.shutdown()
            await app.state.gateway.aclose()
            await db.shutdown()
            logger.info("Payment integrity service stopped")

    app = FastAPI(title="Payment Integrity Service", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.include_router(reconciliation_router)

    @app.get("/health")
    async def health(request: Request):
        gateway_health = await request.app.state.gateway.health_check()
        database_ok = await request.app.state.db.ping()
        return {
            "status": "healthy" if database_ok else "degraded",
            "database": database_ok,
            "enforcement": request.app.state.enforcement.level.value,
            "gateway": gateway_health,
        }

    @app.post("/webhooks/gateway")
    async def gateway_webhook(request: Request, db: AsyncSession = Depends(get_db)):
        """
        Receive a gateway payment callback.

        Redelivered and out-of-order callbacks are acknowledged so the
        gateway stops retrying; only rejected transitions return an error.
        """
        state = request.app.state
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Callback body must be JSON")
        try:
            callback = state.gateway.parse_callback(body)
        except InvalidCallback as e:
            logger.warning(f"Rejected gateway callback: {e.message}")
            raise HTTPException(status_code=400, detail=e.message)

        service = PaymentService(
            db,
            state.validator,
            locks=state.locks,
            gateway=state.gateway,
            currency=settings.currency,
        )
        try:
            result = await service.apply_payment_event(
                PaymentEvent.from_callback(callback, occurred_at=datetime.utcnow())
            )
        except (AuthorityViolation, InvariantViolation) as e:
            raise HTTPException(status_code=409, detail=e.message)
        except RecordNotFound as e:
            raise HTTPException(status_code=404, detail=e.message)

        return {
            "ResultCode": 0,
            "ResultDesc": "Accepted",
            "outcome": result.outcome.value,
            "payment_id": result.payment.id,
            "status": result.payment.status,
        }

    @app.get("/payments/{payment_id}/orphan-check")
    async def orphan_check(
        payment_id: str,
        request: Request,
        db: AsyncSession = Depends(get_db),
        api_key: str = Depends(verify_api_key),
    ):
        checker = OrphanChecker(db, gateway=request.app.state.gateway)
        try:
            result = await checker.check(payment_id)
        except RecordNotFound as e:
            raise HTTPException(status_code=404, detail=e.message)
        return result.to_dict()

    @app.get("/integrity/enforcement")
    async def enforcement_status(
        request: Request,
        db: AsyncSession = Depends(get_db),
        api_key: str = Depends(verify_api_key),
    ) -> Dict[str, Any]:
        status = request.app.state.enforcement.health()
        changes = await EnforcementChangeRepository(db).list_recent()
        status["recent_changes"] = [change.to_dict() for change in changes]
        return status

    @app.post("/integrity/enforcement")
    @limiter.limit("5/minute")
    async def change_enforcement(
        request: Request,
        body: EnforcementChangeBody,
        db: AsyncSession = Depends(get_db),
        api_key: str = Depends(verify_api_key),
    ):
        """Change the enforcement level. Every change is audited."""
        enforcement: EnforcementConfig = request.app.state.enforcement
        context = ChangeContext.EMERGENCY if body.emergency else ChangeContext.ADMIN
        try:
            change = enforcement.set_level(body.level, body.reason, body.actor, context)
        except EnforcementChangeDenied as e:
            raise HTTPException(status_code=403, detail=e.message)

        await EnforcementChangeRepository(db).record(change)
        return {"acknowledged": True, "change": change.to_dict()}

    return app

"""Delivery of reconciliation run summaries to configured webhooks."""

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .models import ReconciliationRun

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


def canonical_json(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of ``body``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class RunDispatcher:
    """
    Posts a run summary to every configured URL.

    Each URL is retried with exponential backoff. Failures are logged and
    reported in the return value; they never propagate to the caller.
    """

    def __init__(
        self,
        urls: List[str],
        secret: Optional[str] = None,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.urls = list(urls)
        self.secret = secret
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self._client = client
        self.timeout = timeout

    def build_request(self, run: ReconciliationRun) -> Dict[str, Any]:
        payload = {"event": "reconciliation.run_finished", "run": run.to_summary_dict()}
        body = canonical_json(payload)
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, self.secret)
        return {"content": body, "headers": headers}

    async def _deliver(self, client: httpx.AsyncClient, url: str, request: Dict[str, Any]) -> bool:
        for attempt in range(1, self.retry_attempts + 1):
            try:
                response = await client.post(url, **request)
                if response.status_code < 300:
                    logger.info(f"Delivered reconciliation webhook to {url} (attempt {attempt})")
                    return True
                logger.warning(
                    f"Reconciliation webhook to {url} returned HTTP {response.status_code} "
                    f"(attempt {attempt}/{self.retry_attempts})"
                )
            except httpx.HTTPError as e:
                logger.warning(
                    f"Reconciliation webhook to {url} failed: {e} "
                    f"(attempt {attempt}/{self.retry_attempts})"
                )
            if attempt < self.retry_attempts and self.retry_delay > 0:
                await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))

        logger.error(f"Giving up on reconciliation webhook to {url} after {self.retry_attempts} attempts")
        return False

    async def dispatch(self, run: ReconciliationRun) -> Dict[str, bool]:
        """Send the run summary everywhere. Returns delivery success per URL."""
        if not self.urls:
            return {}
        request = self.build_request(run)

        if self._client is not None:
            results = await asyncio.gather(*(self._deliver(self._client, u, request) for u in self.urls))
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                results = await asyncio.gather(*(self._deliver(client, u, request) for u in self.urls))
        return dict(zip(self.urls, results))

"""
Outbound status callbacks to the caller's callback_url.

Best-effort and fire-and-forget: one POST per terminal transition, bounded by
its own timeout, never retried. Failures are logged and never affect the
transition that triggered them.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Optional, Set

import httpx

from app.core.exceptions import ExternalDeliveryError
from app.core.monitoring import error_monitor
from app.services.state_machine import coarse_status

logger = logging.getLogger(__name__)


def sign_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA512 hex digest of the raw callback body."""
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


class CallbackNotifier:
    """Delivers terminal-state notifications to callers"""

    def __init__(self, secret: Optional[str], timeout: float = 10.0, client_factory=httpx.AsyncClient):
        self.secret = secret
        self.timeout = timeout
        self._client_factory = client_factory
        self._tasks: Set[asyncio.Task] = set()

    @staticmethod
    def build_body(tx_id: str, status: str, reason: str) -> bytes:
        payload = {
            "external_id": tx_id,
            "id": tx_id,
            "status": coarse_status(status),
            "state": status,
            "reason": reason,
        }
        return json.dumps(payload, separators=(",", ":")).encode()

    async def deliver(self, url: str, tx_id: str, status: str, reason: str) -> bool:
        body = self.build_body(tx_id, status, reason)
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Signature"] = sign_payload(self.secret, body)

        try:
            async with self._client_factory(timeout=self.timeout) as client:
                response = await client.post(url, content=body, headers=headers)
            if response.status_code >= 400:
                raise ExternalDeliveryError(
                    f"Callback rejected with HTTP {response.status_code}",
                    channel="callback",
                    target=url,
                )
            logger.info(f"Callback delivered for {tx_id} ({status})")
            return True
        except ExternalDeliveryError as e:
            error_monitor.log_error(e, {"tx_id": tx_id, "status": status})
        except Exception as e:
            error_monitor.log_error(
                ExternalDeliveryError(
                    f"Callback delivery failed: {type(e).__name__}",
                    channel="callback",
                    target=url,
                ),
                {"tx_id": tx_id, "status": status},
            )
        return False

    def schedule(self, url: Optional[str], tx_id: str, status: str, reason: str) -> Optional[asyncio.Task]:
        """Start delivery in the background; the caller does not wait for it."""
        if not url:
            return None
        task = asyncio.create_task(self.deliver(url, tx_id, status, reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

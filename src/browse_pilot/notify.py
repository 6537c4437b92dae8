# notify.py
# Notification Sinks: where final answers and notify_connector messages go.
#
# A run owns one NotifyLimiter; it caps how many notifications the run may
# send, whether they come from the agent's own tool calls or from
# notify_on_finish. Delivery failures are reported, never raised.

import logging
from typing import Protocol

import httpx
from pydantic import BaseModel

from browse_pilot.config import Settings

logger = logging.getLogger(__name__)


class NotifyReceipt(BaseModel):
    success: bool
    delivered: bool = False
    connector_id: str = ""
    error: str = ""


class NotificationSink(Protocol):
    async def notify(self, connector_id: str, message: str, meta: dict) -> NotifyReceipt: ...


class NotifyLimiter:
    """
    Per-run call budget for notifications.

    Example:
        limiter = NotifyLimiter(max_calls=3)
        if limiter.acquire():
            await sink.notify("ops", "done", {})
    """

    def __init__(self, max_calls: int = 3, used: int = 0) -> None:
        self.max_calls = max_calls
        self.used = used

    @property
    def remaining(self) -> int:
        return max(self.max_calls - self.used, 0)

    def acquire(self) -> bool:
        if self.used >= self.max_calls:
            return False
        self.used += 1
        return True


# ---------------------------------------------------------------------------
# Webhook sink
# ---------------------------------------------------------------------------


class WebhookSink:
    """
    Posts notifications as JSON to one webhook URL per connector id.

    Slack- and Telegram-style relays both accept the `text` field; the
    full payload also carries `connector_id` and `meta`.
    """

    def __init__(self, webhooks: dict[str, str] | None = None, timeout_s: float | None = None) -> None:
        self.webhooks = dict(Settings.WEBHOOKS if webhooks is None else webhooks)
        self.timeout_s = timeout_s or Settings.NOTIFY_TIMEOUT_S

    async def notify(self, connector_id: str, message: str, meta: dict) -> NotifyReceipt:
        url = self.webhooks.get(connector_id)
        if not url:
            return NotifyReceipt(success=False, connector_id=connector_id, error=f"Unknown connector '{connector_id}'")

        payload = {"text": message, "connector_id": connector_id, "meta": meta}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.debug("Webhook %s failed: %s", connector_id, exc)
            return NotifyReceipt(success=False, connector_id=connector_id, error=str(exc) or type(exc).__name__)

        return NotifyReceipt(success=True, delivered=True, connector_id=connector_id)

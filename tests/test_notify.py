import httpx
import pytest
from unittest.mock import patch
from browse_pilot.diagnostics import WarnThrottle
from browse_pilot.notify import NotifyLimiter, WebhookSink

_REAL_CLIENT = httpx.AsyncClient


def mock_client(handler):
    """Patch target for httpx.AsyncClient that routes every request to `handler`."""
    def factory(**kwargs):
        return _REAL_CLIENT(transport=httpx.MockTransport(handler), **kwargs)
    return factory


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------

def test_limiter_caps_calls():
    limiter = NotifyLimiter(max_calls=2)
    assert limiter.acquire() and limiter.acquire()
    assert limiter.acquire() is False
    assert limiter.remaining == 0

# ---------------------------------------------------------------------------
# Webhook sink
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unknown_connector_is_reported_not_raised():
    sink = WebhookSink(webhooks={})
    receipt = await sink.notify("slack", "hello", {})
    assert receipt.success is False
    assert "Unknown connector" in receipt.error

@pytest.mark.asyncio
async def test_webhook_posts_text_and_meta():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    sink = WebhookSink(webhooks={"ops": "https://hooks.example/ops"}, timeout_s=2)
    with patch("browse_pilot.notify.httpx.AsyncClient", side_effect=mock_client(handler)):
        receipt = await sink.notify("ops", "Run finished", {"status": "complete"})

    assert receipt.success and receipt.delivered
    assert str(seen[0].url) == "https://hooks.example/ops"
    body = httpx.Response(200, content=seen[0].content).json()
    assert body == {"text": "Run finished", "connector_id": "ops", "meta": {"status": "complete"}}

@pytest.mark.asyncio
async def test_webhook_http_error_is_a_failed_receipt():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502)

    sink = WebhookSink(webhooks={"ops": "https://hooks.example/ops"})
    with patch("browse_pilot.notify.httpx.AsyncClient", side_effect=mock_client(handler)):
        receipt = await sink.notify("ops", "Run finished", {})

    assert receipt.success is False
    assert receipt.connector_id == "ops"
    assert "502" in receipt.error

# ---------------------------------------------------------------------------
# Warn throttle
# ---------------------------------------------------------------------------

def test_throttle_logs_once_per_interval_but_records_all():
    now = [0.0]
    throttle = WarnThrottle(interval_s=10, clock=lambda: now[0])
    assert throttle.warn("notify.ops", "Notification failed", "502") is True
    assert throttle.warn("notify.ops", "Notification failed", "502") is False
    now[0] = 11.0
    assert throttle.warn("notify.ops", "Notification failed", "502") is True
    assert len(throttle.records) == 3

    throttle.reset()
    assert len(throttle.records) == 0

"""Tests for notifier implementations."""

import json
import logging
from datetime import datetime

import httpx
import pytest

from remedy.clients.notifier import LoggingNotifier, WebhookNotifier

CONTEXT = {
    "plan_id": "plan-1",
    "kind": "format_standardization",
    "target_asset": "customers",
    "iteration_count": 2,
    "reason": "accuracy too low",
    "expires_at": datetime(2025, 3, 2, 9, 0),
}


@pytest.mark.asyncio
async def test_webhook_posts_rendered_notification():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = WebhookNotifier("https://hooks.example.com/remedy", client=client)
        await notifier.send("transformations", "plan_failed", CONTEXT)

    [request] = requests
    payload = json.loads(request.content)
    assert str(request.url) == "https://hooks.example.com/remedy"
    assert payload["template"] == "plan_failed"
    assert payload["subject"] == "Plan failed: format_standardization on customers"
    assert "accuracy too low" in payload["text"]
    assert payload["context"]["expires_at"] == "2025-03-02 09:00:00"


@pytest.mark.asyncio
async def test_webhook_raises_on_error_status():
    transport = httpx.MockTransport(lambda request: httpx.Response(503))

    async with httpx.AsyncClient(transport=transport) as client:
        notifier = WebhookNotifier("https://hooks.example.com/remedy", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await notifier.send("transformations", "plan_failed", CONTEXT)


@pytest.mark.asyncio
async def test_logging_notifier_escalates_alerts(caplog):
    caplog.set_level(logging.INFO, logger="remedy.clients.notifier")
    context = dict(CONTEXT, execution_log_id="log-1", error="restore failed", snapshot_id=None)

    await LoggingNotifier().send("alerts", "rollback_failed", context)

    [record] = [r for r in caplog.records if r.name == "remedy.clients.notifier"]
    assert record.levelno == logging.CRITICAL
    assert "MANUAL INTERVENTION REQUIRED" in record.getMessage()

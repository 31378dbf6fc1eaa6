from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.job_errors import NotificationDeliveryError  # noqa: E402
from services.push_gateway import HttpPushGateway, NotificationPayload  # noqa: E402


MESSAGES = [
    NotificationPayload(title="It's time for habit!", body="Read starting now...", recipient_tokens=("tok-kid", "tok-mom")),
    NotificationPayload(title="Hooray!", body="Read habit has been completed.", recipient_tokens=("tok-dad",)),
]


def test_http_gateway_posts_grouped_messages_and_reads_success_count():
    seen: dict = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"successCount": 2, "failureCount": 0})

    gateway = HttpPushGateway("https://push.example.test/send", token="secret", transport=httpx.MockTransport(_handler))
    result = asyncio.run(gateway.send_all(MESSAGES))

    assert result.success_count == 2
    assert result.failure_count == 0
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["messages"][0] == {
        "notification": {"title": "It's time for habit!", "body": "Read starting now..."},
        "tokens": ["tok-kid", "tok-mom"],
    }


def test_http_gateway_raises_on_error_status():
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable"))
    gateway = HttpPushGateway("https://push.example.test/send", transport=transport)

    with pytest.raises(NotificationDeliveryError) as excinfo:
        asyncio.run(gateway.send_all(MESSAGES))
    assert "status=503" in str(excinfo.value)


def test_http_gateway_infers_failures_when_count_missing():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"successCount": 1}))
    gateway = HttpPushGateway("https://push.example.test/send", transport=transport)

    result = asyncio.run(gateway.send_all(MESSAGES))
    assert result.success_count == 1
    assert result.failure_count == 1

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from config import settings
from services.job_errors import NotificationDeliveryError

logger = logging.getLogger(__name__)

MAX_MESSAGES_PER_SEND = 500


@dataclass(frozen=True)
class NotificationPayload:
    title: str
    body: str
    recipient_tokens: tuple[str, ...] = field(default_factory=tuple)

    def to_message(self) -> dict[str, Any]:
        return {
            "notification": {"title": self.title, "body": self.body},
            "tokens": list(self.recipient_tokens),
        }


@dataclass(frozen=True)
class SendResult:
    success_count: int
    failure_count: int = 0


def normalize_tokens(*raw_tokens: Any) -> tuple[str, ...]:
    """Flatten token fields (string or list) into unique non-empty tokens, order kept."""
    out: list[str] = []
    for raw in raw_tokens:
        values = raw if isinstance(raw, (list, tuple)) else [raw]
        for value in values:
            token = str(value or "").strip()
            if token and token not in out:
                out.append(token)
    return tuple(out)


class PushGateway:
    async def send_all(self, messages: list[NotificationPayload]) -> SendResult:
        raise NotImplementedError


class StubPushGateway(PushGateway):
    """Logs messages and reports them as delivered."""

    def __init__(self) -> None:
        self.sent: list[list[NotificationPayload]] = []

    async def send_all(self, messages: list[NotificationPayload]) -> SendResult:
        self.sent.append(list(messages))
        logger.info("Push stub accepted %s messages", len(messages))
        return SendResult(success_count=len(messages))


class HttpPushGateway(PushGateway):
    def __init__(
        self,
        url: str,
        token: str | None = None,
        timeout_s: int = 12,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._token = token
        self._timeout_s = timeout_s
        self._transport = transport

    async def send_all(self, messages: list[NotificationPayload]) -> SendResult:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        payload = {"messages": [m.to_message() for m in messages]}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                resp = await client.post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise NotificationDeliveryError(f"Push gateway request failed: {exc}") from exc

        if resp.status_code < 200 or resp.status_code >= 300:
            raise NotificationDeliveryError(
                f"Push gateway returned status={resp.status_code}: {resp.text[:500]}"
            )
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        success = int(body.get("successCount", 0) or 0)
        failure = int(body.get("failureCount", max(len(messages) - success, 0)) or 0)
        return SendResult(success_count=success, failure_count=failure)


def get_push_gateway() -> PushGateway:
    mode = (settings.PUSH_MODE or "stub").strip().lower()
    if mode == "http" and settings.PUSH_GATEWAY_URL:
        return HttpPushGateway(
            settings.PUSH_GATEWAY_URL,
            token=settings.PUSH_GATEWAY_TOKEN,
            timeout_s=settings.PUSH_TIMEOUT_SECONDS,
        )
    if mode == "http":
        logger.warning("PUSH_MODE=http without PUSH_GATEWAY_URL; falling back to stub delivery")
    return StubPushGateway()

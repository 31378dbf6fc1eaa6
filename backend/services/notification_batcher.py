from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from services.push_gateway import MAX_MESSAGES_PER_SEND, NotificationPayload, PushGateway, SendResult

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    groups: int = 0
    messages: int = 0
    success_count: int = 0
    failure_count: int = 0
    failed_groups: int = 0

    @property
    def summary(self) -> str:
        return f"{self.success_count} messages were sent successfully"


class NotificationBatcher:
    """
    Buffers notification payloads and sends them in groups of ``limit``.

    Sends triggered by a full group are not awaited by ``stage_notification``;
    their tasks are kept and settled in ``finalize`` together with the final
    partial group.
    """

    def __init__(self, gateway: PushGateway, limit: int = 500):
        self._gateway = gateway
        self._limit = min(max(int(limit), 1), MAX_MESSAGES_PER_SEND)
        self._messages: list[NotificationPayload] = []
        self._sends: list[tuple[int, asyncio.Task]] = []

    @property
    def pending(self) -> int:
        return len(self._messages)

    @property
    def sends_started(self) -> int:
        return len(self._sends)

    def stage_notification(self, payload: NotificationPayload) -> None:
        self._messages.append(payload)
        if len(self._messages) >= self._limit:
            self._start_send()

    def _start_send(self) -> None:
        group = self._messages
        self._messages = []
        task = asyncio.get_running_loop().create_task(self._send_group(group))
        self._sends.append((len(group), task))

    async def _send_group(self, group: list[NotificationPayload]) -> SendResult:
        try:
            result = await self._gateway.send_all(group)
        except Exception as exc:
            logger.error("Sent failed for group of %s messages: %s", len(group), exc)
            raise
        logger.info("%s messages were sent successfully", result.success_count)
        return result

    async def discard(self) -> None:
        """Drop unsent payloads and wait for sends already in flight."""
        self._messages = []
        if self._sends:
            await asyncio.gather(*(task for _, task in self._sends), return_exceptions=True)
        self._sends = []

    async def finalize(self) -> DeliveryReport:
        if self._messages:
            self._start_send()
        report = DeliveryReport()
        if not self._sends:
            return report

        results = await asyncio.gather(*(task for _, task in self._sends), return_exceptions=True)
        for (size, _), result in zip(self._sends, results):
            report.groups += 1
            report.messages += size
            if isinstance(result, BaseException):
                report.failed_groups += 1
                report.failure_count += size
                continue
            report.success_count += result.success_count
            report.failure_count += result.failure_count
        self._sends = []
        return report

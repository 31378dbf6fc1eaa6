from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from services.document_store import MAX_BATCH_OPERATIONS, DocumentStore, WriteBatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitOutcome:
    size: int
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchWriteAccumulator:
    """
    Buffers document writes and commits them in groups of ``limit``.

    A full group starts committing as soon as it fills; staging continues
    while it runs. ``finalize`` commits the remainder and waits for every
    group started during the run.
    """

    def __init__(self, store: DocumentStore, limit: int = 500):
        self._store = store
        self._limit = min(max(int(limit), 1), MAX_BATCH_OPERATIONS)
        self._batch: WriteBatch = store.batch()
        self._counter = 0
        self._staged_total = 0
        self._commits: list[tuple[int, asyncio.Task]] = []

    @property
    def pending(self) -> int:
        return self._counter

    @property
    def staged_total(self) -> int:
        return self._staged_total

    @property
    def commits_started(self) -> int:
        return len(self._commits)

    def stage_write(
        self,
        collection: str,
        payload: dict[str, Any],
        doc_id: str | None = None,
        merge: bool = False,
    ) -> str:
        doc_id = doc_id or self._store.new_id()
        self._batch.set(collection, doc_id, payload, merge=merge)
        self._counter += 1
        self._staged_total += 1

        if self._counter >= self._limit:
            self._start_commit()
        return doc_id

    def _start_commit(self) -> None:
        logger.info("Committing batch of %s", self._counter)
        task = asyncio.get_running_loop().create_task(self._batch.commit())
        self._commits.append((self._counter, task))
        self._counter = 0
        self._batch = self._store.batch()

    async def discard(self) -> None:
        """Drop the open group and wait for commits already in flight."""
        self._counter = 0
        self._batch = self._store.batch()
        if not self._commits:
            return
        results = await asyncio.gather(*(task for _, task in self._commits), return_exceptions=True)
        for (size, _), result in zip(self._commits, results):
            if isinstance(result, BaseException):
                logger.error("Commit of %s writes failed: %s", size, result)
        self._commits = []

    async def finalize(self) -> list[CommitOutcome]:
        if self._counter:
            self._start_commit()
        if not self._commits:
            return []

        results = await asyncio.gather(*(task for _, task in self._commits), return_exceptions=True)
        outcomes: list[CommitOutcome] = []
        for (size, _), result in zip(self._commits, results):
            if isinstance(result, BaseException):
                logger.error("Commit of %s writes failed: %s", size, result)
                outcomes.append(CommitOutcome(size=size, error=result))
            else:
                outcomes.append(CommitOutcome(size=size))
        self._commits = []
        return outcomes

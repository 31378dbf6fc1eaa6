from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from services.batch_writer import BatchWriteAccumulator  # noqa: E402
from services.document_store import DocumentStore, FieldFilter  # noqa: E402


def _new_store(store_cls=DocumentStore) -> DocumentStore:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return store_cls(sessionmaker(autocommit=False, autoflush=False, bind=engine))


class _FailingStore(DocumentStore):
    def apply(self, ops):
        raise RuntimeError("store unavailable")


def test_exactly_500_writes_start_one_commit_and_reset_counter():
    store = _new_store()

    async def _run():
        writer = BatchWriteAccumulator(store, limit=500)
        for i in range(500):
            writer.stage_write("history", {"i": i})
        assert writer.commits_started == 1
        assert writer.pending == 0
        return await writer.finalize()

    outcomes = asyncio.run(_run())
    assert [o.size for o in outcomes] == [500]
    assert all(o.ok for o in outcomes)
    assert len(asyncio.run(store.where("history"))) == 500


def test_501_writes_commit_full_group_and_final_partial_group():
    store = _new_store()

    async def _run():
        writer = BatchWriteAccumulator(store, limit=500)
        for i in range(501):
            writer.stage_write("history", {"i": i})
        assert writer.commits_started == 1
        assert writer.pending == 1
        outcomes = await writer.finalize()
        return writer, outcomes

    writer, outcomes = asyncio.run(_run())
    assert [o.size for o in outcomes] == [500, 1]
    assert writer.staged_total == 501
    assert len(asyncio.run(store.where("history"))) == 501


def test_finalize_without_writes_commits_nothing():
    store = _new_store()
    assert asyncio.run(BatchWriteAccumulator(store).finalize()) == []


def test_explicit_ids_and_merge_flow_through_to_the_store():
    store = _new_store()
    asyncio.run(store.add("habit", {"name": "Read", "recurrence": {"cadenceCount": 2}}, doc_id="h1"))

    async def _run():
        writer = BatchWriteAccumulator(store, limit=10)
        returned = writer.stage_write("habit", {"recurrence": {"timesPerDay": 1}}, doc_id="h1", merge=True)
        assert returned == "h1"
        return await writer.finalize()

    asyncio.run(_run())
    habit = asyncio.run(store.get("habit", "h1")).data
    assert habit["recurrence"] == {"cadenceCount": 2, "timesPerDay": 1}
    assert len(asyncio.run(store.where("habit", FieldFilter("name", "==", "Read")))) == 1


def test_failed_commits_are_reported_at_finalize_not_at_staging():
    store = _new_store(_FailingStore)

    async def _run():
        writer = BatchWriteAccumulator(store, limit=2)
        for i in range(3):
            writer.stage_write("history", {"i": i})
        return await writer.finalize()

    outcomes = asyncio.run(_run())
    assert [o.size for o in outcomes] == [2, 1]
    assert not any(o.ok for o in outcomes)
    assert isinstance(outcomes[0].error, RuntimeError)


def test_limit_above_store_maximum_is_clamped():
    store = _new_store()

    async def _run():
        writer = BatchWriteAccumulator(store, limit=1000)
        for i in range(501):
            writer.stage_write("history", {"i": i})
        assert writer.commits_started == 1
        return await writer.finalize()

    outcomes = asyncio.run(_run())
    assert [o.size for o in outcomes] == [500, 1]
    assert all(o.ok for o in outcomes)
    assert len(asyncio.run(store.where("history"))) == 501


def test_starting_a_commit_requires_a_running_loop():
    writer = BatchWriteAccumulator(_new_store(), limit=1)
    with pytest.raises(RuntimeError):
        writer.stage_write("history", {"i": 0})


def test_discard_settles_commits_in_flight_and_drops_the_open_group():
    store = _new_store()

    async def _run():
        writer = BatchWriteAccumulator(store, limit=2)
        for i in range(3):
            writer.stage_write("history", {"i": i})
        await writer.discard()
        return writer

    writer = asyncio.run(_run())
    assert writer.commits_started == 0
    assert writer.pending == 0
    assert sorted(r.data["i"] for r in asyncio.run(store.where("history"))) == [0, 1]

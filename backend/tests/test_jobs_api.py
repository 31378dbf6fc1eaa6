from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from main import app  # noqa: E402
import api.jobs as jobs_api  # noqa: E402
import services.habit_job_service as habit_job_service  # noqa: E402
from db.database import Base  # noqa: E402
from services.document_store import DocumentStore  # noqa: E402
from services.push_gateway import PushGateway, StubPushGateway  # noqa: E402


def _new_store() -> DocumentStore:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return DocumentStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))


def _client(store: DocumentStore, gateway: PushGateway | None = None) -> TestClient:
    app.dependency_overrides[jobs_api.get_document_store] = lambda: store
    app.dependency_overrides[jobs_api.get_gateway] = lambda: gateway or StubPushGateway()
    return TestClient(app)


def teardown_function():
    app.dependency_overrides.clear()


def test_health_check():
    client = TestClient(app)
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_missing_and_unknown_actions_return_404_with_error():
    client = _client(_new_store())

    missing = client.post("/api/habit-repeat", json={})
    assert missing.status_code == 404
    assert missing.json() == {"error": "No action"}

    unknown = client.post("/api/habit-repeat", json={"action": "habit-dance"})
    assert unknown.status_code == 404
    assert unknown.json() == {"error": "Not valid"}


def test_generate_occurrences_echoes_body_with_result():
    store = _new_store()
    asyncio.run(
        store.add(
            "habit",
            {
                "name": "Read",
                "ownerId": "kid",
                "endMode": "never",
                "recurrence": {
                    "cadenceUnit": "day",
                    "cadenceCount": 1,
                    "startDate": datetime(2026, 10, 1, 7, 30, tzinfo=timezone.utc),
                    "latestGeneratedDate": datetime(2026, 10, 18, 7, 30, tzinfo=timezone.utc),
                },
            },
            doc_id="h1",
        )
    )
    client = _client(store)

    body = {"action": "generate-occurrences", "today": "2026-10-19T06:00:00Z", "source": "scheduler"}
    response = client.post("/api/habit-repeat", json=body)

    assert response.status_code == 200
    payload = response.json()
    assert payload["source"] == "scheduler"
    assert payload["action"] == "generate-occurrences"
    assert payload["result"] == "Committed 2 writes in 1 batches"
    assert len(asyncio.run(store.where("history"))) == 1


def test_send_reminders_with_nothing_due_still_succeeds():
    client = _client(_new_store())
    response = client.post("/api/habit-repeat", json={"action": "send-reminders", "today": "2026-10-19T07:15:00Z"})
    assert response.status_code == 200
    assert response.json()["result"] == "0 messages were sent successfully"


def test_unexpected_failure_maps_to_500(monkeypatch):
    async def _explode(ctx, store):
        raise RuntimeError("boom")

    monkeypatch.setattr(habit_job_service, "generate_occurrences", _explode)
    client = _client(_new_store())

    response = client.post("/api/habit-repeat", json={"action": "generate-occurrences"})
    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error"}


def test_get_is_not_an_entry_point():
    client = _client(_new_store())
    response = client.get("/api/habit-repeat")
    assert response.status_code == 405

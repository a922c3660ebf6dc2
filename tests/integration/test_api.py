from __future__ import annotations

import asyncio
import threading
from threading import Event

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from kestrel.api import routes
from kestrel.api.app import create_app
from kestrel.api.deps import get_run_orchestrator
from kestrel.config import get_settings
from kestrel.core.batch import build_operations
from kestrel.core.jobs import JobLifecycleManager
from kestrel.core.learning import RejectionLearner
from kestrel.core.orchestrator import RunOrchestrator
from kestrel.core.runtime import get_learning_queue
from kestrel.db.repositories import Repository, hash_url
from kestrel.db.session import SessionLocal
from kestrel.types import JobCandidate, LeadProfile


@pytest.fixture()
def make_client():
    def _make(orchestrator: RunOrchestrator | None = None) -> TestClient:
        app = create_app()
        if orchestrator is not None:
            app.dependency_overrides[get_run_orchestrator] = lambda: orchestrator
        return TestClient(app)

    return _make


def _seed_job(db, index: int = 1, **overrides) -> str:
    url = f"https://jobs.example.com/view/{index}"
    payload = {"url": url, "title": f"Engineer {index}", "company": "Acme", "rank": 80.0 + index}
    payload.update(overrides)
    JobLifecycleManager(db).ingest([JobCandidate(**payload)])
    return hash_url(url)


def test_health(make_client) -> None:
    assert make_client().get("/health").json() == {"status": "ok"}


def test_automation_start_conflict_and_status(make_client, job_scraper_factory, ranker_factory, posting) -> None:
    release = Event()
    entered = Event()

    def block(_posting) -> None:
        entered.set()
        release.wait(10)

    orchestrator = RunOrchestrator(
        build_operations(
            get_settings(),
            job_scraper=job_scraper_factory([[posting(1)]]),
            ranker=ranker_factory(on_rank=block),
        ),
        session_factory=SessionLocal,
    )
    client = make_client(orchestrator)

    started = client.post("/api/automation/start", json={"operation": "search", "config": {"profile": "core", "max_pages": 1}})
    assert started.status_code == 200
    assert started.json()["operation"] == "search"
    assert entered.wait(5)
    try:
        conflict = client.post("/api/automation/start", json={"operation": "search", "config": {"profile": "core"}})
        assert conflict.status_code == 409
        status = client.get("/api/automation/status").json()
        assert status["status"] == "running"
        assert status["run_id"] == started.json()["run_id"]
    finally:
        release.set()

    assert orchestrator.wait(timeout=10)
    status = client.get("/api/automation/status").json()
    assert status["status"] == "idle"
    assert status["last_result"]["queued"] == 1

    runs = client.get("/api/runs").json()
    assert [(run["operation"], run["status"]) for run in runs] == [("search", "completed")]
    assert client.get(f"/api/runs/{runs[0]['id']}").json()["last_cursor"] == "1"


def test_automation_error_codes(make_client) -> None:
    client = make_client()

    assert client.post("/api/automation/start", json={"operation": "search", "config": {"profile": "core", "max_pages": 0}}).status_code == 400
    assert client.post("/api/automation/start", json={"operation": "crawl"}).status_code == 422
    assert client.post("/api/automation/start", json={"operation": "search", "resume_run_id": 42}).status_code == 404
    assert client.post("/api/automation/stop").status_code == 404
    assert client.post("/api/automation/reconcile/42").status_code == 404
    assert client.get("/api/automation/status").json()["status"] == "idle"


def test_job_endpoints(make_client, db) -> None:
    job_id = _seed_job(db, 1)
    _seed_job(db, 2, company="Beta")
    client = make_client()

    listed = client.get("/api/jobs").json()
    assert [job["id"] for job in listed][1] == job_id
    assert [job["company"] for job in client.get("/api/jobs", params={"search": "beta"}).json()] == ["Beta"]
    assert client.get(f"/api/jobs/{job_id}").json()["fit"]["reasons"] == []
    assert client.get("/api/jobs/missing").status_code == 404

    curated = client.post(f"/api/jobs/{job_id}/curate").json()
    assert curated["curated"] is True

    updated = client.post(f"/api/jobs/{job_id}/status", json={"status": "applied", "applied_method": "manual"})
    assert updated.status_code == 200
    assert updated.json()["status"] == "applied"
    assert updated.json()["status_updated_at"] is not None

    assert client.post("/api/jobs/missing/status", json={"status": "applied"}).status_code == 404
    assert client.post(f"/api/jobs/{job_id}/status", json={"status": "hired"}).status_code == 422

    stats = client.get("/api/jobs/stats").json()
    assert stats["statuses"]["applied"] == 1
    assert stats["statuses"]["queued"] == 1
    assert stats["applied_methods"]["manual"] == 1
    assert client.get(f"/api/jobs/{job_id}/steps").json() == []


def test_rejection_via_api_feeds_learning(make_client, db) -> None:
    job_id = _seed_job(db, 1)
    client = make_client()

    response = client.post(
        f"/api/jobs/{job_id}/status",
        json={"status": "rejected", "rejection_reason": "requires 5+ years AWS"},
    )

    assert response.status_code == 200
    assert get_learning_queue().join(timeout=5)
    patterns = client.get("/api/learning/patterns", params={"pattern_type": "technology"}).json()
    assert [(pattern["pattern_value"], pattern["count"]) for pattern in patterns] == [("AWS", 1)]
    assert client.get("/api/learning/queue").json()["processed"] == 1


def test_learning_weights_and_reset(make_client, db) -> None:
    job_id = _seed_job(db, 1, profile="core")
    JobLifecycleManager(db).update_status(job_id, "rejected", rejection_reason="too junior")
    RejectionLearner(db).learn(job_id)
    client = make_client()

    weights = client.get("/api/learning/weights", params={"profile": "core"}).json()
    assert weights["adjustments"] == {"seniority": pytest.approx(2.0)}
    assert weights["stats"]["total_adjustments"] == 1
    assert len(client.get("/api/learning/adjustments").json()) == 1

    reset = client.post("/api/learning/reset", json={"include_patterns": True}).json()
    assert reset["adjustments_removed"] == 1
    assert reset["patterns_removed"] >= 1
    assert client.get("/api/learning/weights").json()["adjustments"] == {}


def test_lead_endpoints(make_client, db) -> None:
    repo = Repository(db)
    repo.add_lead(LeadProfile(name="Dana", title="Recruiter", company="Acme", profile_url="https://www.linkedin.com/in/dana"))
    lead_id = repo.list_leads()[0].id
    client = make_client()

    assert [lead["name"] for lead in client.get("/api/leads").json()] == ["Dana"]
    assert client.delete(f"/api/leads/{lead_id}").json()["deleted_at"] is not None
    assert client.get("/api/leads").json() == []
    assert client.get("/api/leads/stats").json() == {"total": 0, "with_email": 0, "deleted": 1}
    assert client.delete("/api/leads/missing").status_code == 404


def test_preference_endpoints(make_client) -> None:
    client = make_client()

    assert client.put("/api/preferences/min_fit_score", json={"value": "80"}).json() == {
        "key": "min_fit_score",
        "value": "80",
    }
    assert client.get("/api/preferences").json() == {"min_fit_score": "80"}
    assert client.get("/api/preferences/min_fit_score").json()["value"] == "80"
    assert client.delete("/api/preferences/min_fit_score").json() == {"deleted": True}
    assert client.get("/api/preferences/min_fit_score").status_code == 404
    assert client.delete("/api/preferences/min_fit_score").status_code == 404


def test_label_mapping_endpoints(make_client) -> None:
    client = make_client()

    mapped = client.post("/api/label-mappings/map", json={"labels": ["First Name", "Email address"]}).json()
    assert [(item["key"], item["source"]) for item in mapped] == [("first_name", "heuristic"), ("email", "heuristic")]

    feedback = client.post(
        "/api/label-mappings/feedback",
        json={"label": "First Name", "success": True, "locator": "#first"},
    ).json()
    assert feedback["success_count"] == 1
    assert feedback["locator"] == "#first"

    missing = client.post("/api/label-mappings/feedback", json={"label": "Nope", "success": False})
    assert missing.status_code == 404

    assert len(client.get("/api/label-mappings").json()) == 2
    assert client.delete("/api/label-mappings").json() == {"removed": 2}


def test_stream_sends_status_computed_off_the_event_loop(monkeypatch) -> None:
    class RecordingOrchestrator(RunOrchestrator):
        status_threads: list[str] = []

        def status(self) -> dict:
            self.status_threads.append(threading.current_thread().name)
            return super().status()

    class FakeWebSocket:
        def __init__(self) -> None:
            self.sent: list[dict] = []

        async def accept(self) -> None:
            return None

        async def send_json(self, payload: dict) -> None:
            self.sent.append(payload)
            raise WebSocketDisconnect()

    orchestrator = RecordingOrchestrator(build_operations(get_settings()), session_factory=SessionLocal)
    monkeypatch.setattr(routes, "get_run_orchestrator", lambda: orchestrator)
    websocket = FakeWebSocket()

    asyncio.run(routes.stream_automation(websocket))

    assert websocket.sent[0]["type"] == "status"
    assert websocket.sent[0]["status"] == "idle"
    assert orchestrator.status_threads
    assert threading.main_thread().name not in orchestrator.status_threads
    assert orchestrator.stream.subscriber_count == 0

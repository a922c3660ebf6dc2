from __future__ import annotations

import os
from threading import Event

import pytest

from kestrel.config import get_settings
from kestrel.core.batch import ApplyOperation, BatchContext, build_operations
from kestrel.core.cancellation import CancellationToken
from kestrel.core.errors import InvalidBatchConfig, NoActiveRun, OrchestrationConflict, RunNotFound
from kestrel.core.events import LogStream
from kestrel.core.jobs import JobLifecycleManager
from kestrel.core.orchestrator import RunOrchestrator
from kestrel.core.weights import WeightManager
from kestrel.db.repositories import Repository, hash_url
from kestrel.db.session import SessionLocal
from kestrel.types import ApplyOptions, JobCandidate, SearchPage


def _orchestrator(*, job_scraper=None, lead_scraper=None, ranker=None, applier=None) -> RunOrchestrator:
    operations = build_operations(
        get_settings(),
        job_scraper=job_scraper,
        lead_scraper=lead_scraper,
        ranker=ranker,
        applier=applier,
    )
    return RunOrchestrator(operations, session_factory=SessionLocal)


def _run(orchestrator: RunOrchestrator, operation: str, config=None, **kwargs) -> dict:
    orchestrator.start(operation, config, **kwargs)
    assert orchestrator.wait(timeout=10)
    return orchestrator.status()


def test_search_queues_ranked_postings_and_completes(db, job_scraper_factory, ranker_factory, posting) -> None:
    scraper = job_scraper_factory([[posting(1), posting(2)], [posting(3)]])
    ranker = ranker_factory(score=85)
    orchestrator = _orchestrator(job_scraper=scraper, ranker=ranker)

    status = _run(orchestrator, "search", {"profile": "core", "max_pages": 5})

    assert status["status"] == "idle"
    assert status["last_result"]["status"] == "completed"
    assert status["last_result"]["queued"] == 3
    assert scraper.requested == [1, 2]
    run = Repository(db).list_run_records()[0]
    assert (run.operation, run.status, run.items_processed, run.items_added, run.last_cursor) == (
        "search",
        "completed",
        3,
        3,
        "2",
    )
    job = Repository(db).get_job(hash_url(posting(1)["url"]))
    assert job.profile == "core"
    assert job.category_scores_json == {"coreAzure": 90.0}
    assert [step.step for step in Repository(db).list_steps(job.id)] == ["rank"]


def test_search_applies_min_score_from_preferences(db, job_scraper_factory, ranker_factory, posting) -> None:
    Repository(db).set_preference("min_fit_score", "90")
    orchestrator = _orchestrator(job_scraper=job_scraper_factory([[posting(1)]]), ranker=ranker_factory(score=85))

    status = _run(orchestrator, "search", {"profile": "core"})

    assert status["last_result"]["queued"] == 0
    assert status["last_result"]["skipped"] == 1
    assert Repository(db).list_jobs() == []


def test_search_skips_known_jobs_before_ranking(db, job_scraper_factory, ranker_factory, posting) -> None:
    ranker = ranker_factory()
    orchestrator = _orchestrator(job_scraper=job_scraper_factory([[posting(1), posting(2)]]), ranker=ranker)
    _run(orchestrator, "search", {"profile": "core"})
    ranker.ranked.clear()

    status = _run(orchestrator, "search", {"profile": "core"})

    assert ranker.ranked == []
    assert status["last_result"]["analyzed"] == 2
    assert status["last_result"]["queued"] == 0


def test_search_passes_learned_weights_to_ranker(db, job_scraper_factory, ranker_factory, posting) -> None:
    WeightManager(db).apply_adjustment(profile="security", category="security", adjustment=5, reason="test")
    ranker = ranker_factory()
    orchestrator = _orchestrator(job_scraper=job_scraper_factory([[posting(1)]]), ranker=ranker)

    _run(orchestrator, "search", {"profile": "security"})

    assert ranker.weights_seen[0] == WeightManager(db).active_weights("security")
    assert sum(ranker.weights_seen[0].values()) == pytest.approx(100.0)


def test_page_fetch_failure_is_counted_and_skipped(db, ranker_factory, posting) -> None:
    class FlakyScraper:
        def __init__(self):
            self.requested: list[int] = []

        def fetch_page(self, options, page):
            self.requested.append(page)
            if page == 1:
                raise ConnectionError("timed out")
            return SearchPage(postings=[posting(page)], has_next=False)

    scraper = FlakyScraper()
    orchestrator = _orchestrator(job_scraper=scraper, ranker=ranker_factory())

    status = _run(orchestrator, "search", {"profile": "core", "max_pages": 2})

    assert scraper.requested == [1, 2]
    assert status["last_result"]["errors"] == 1
    assert status["last_result"]["queued"] == 1
    assert status["last_result"]["status"] == "completed"


def test_only_one_batch_runs_at_a_time(db, job_scraper_factory, ranker_factory, posting) -> None:
    release = Event()
    entered = Event()

    def block(_posting) -> None:
        entered.set()
        release.wait(10)

    orchestrator = _orchestrator(
        job_scraper=job_scraper_factory([[posting(1)]]),
        ranker=ranker_factory(on_rank=block),
    )
    orchestrator.start("search", {"profile": "core"})
    assert entered.wait(5)
    try:
        with pytest.raises(OrchestrationConflict):
            orchestrator.start("search", {"profile": "core"})
        with pytest.raises(OrchestrationConflict):
            orchestrator.start("lead_scrape")
        assert orchestrator.status()["status"] == "running"
        assert orchestrator.status()["operation"] == "search"
    finally:
        release.set()
    assert orchestrator.wait(timeout=10)
    assert orchestrator.state == "idle"


def test_stop_without_active_run_raises(db) -> None:
    with pytest.raises(NoActiveRun):
        _orchestrator().stop()


def test_cooperative_stop_keeps_evaluated_work(db, job_scraper_factory, ranker_factory, posting) -> None:
    holder: dict[str, RunOrchestrator] = {}

    def stop_after_first(_posting) -> None:
        holder["orchestrator"].stop()

    scraper = job_scraper_factory([[posting(1), posting(2), posting(3)], [posting(4)]])
    ranker = ranker_factory(on_rank=stop_after_first)
    orchestrator = holder["orchestrator"] = _orchestrator(job_scraper=scraper, ranker=ranker)

    status = _run(orchestrator, "search", {"profile": "core", "max_pages": 2})

    assert status["status"] == "idle"
    assert status["last_result"]["status"] == "stopped"
    assert ranker.ranked == [posting(1)["url"]]
    assert [job.url for job in Repository(db).list_jobs()] == [posting(1)["url"]]
    run = Repository(db).list_run_records()[0]
    assert run.status == "stopped"
    assert run.last_cursor is None
    assert run.items_processed == 1


def test_resume_continues_the_same_record_after_the_cursor(db, job_scraper_factory, ranker_factory, posting) -> None:
    holder: dict[str, object] = {"stopped": False}

    def stop_on_page_two(current) -> None:
        if current.url == posting(3)["url"] and not holder["stopped"]:
            holder["stopped"] = True
            holder["orchestrator"].stop()

    scraper = job_scraper_factory([[posting(1), posting(2)], [posting(3), posting(4)], [posting(5)]])
    ranker = ranker_factory(on_rank=stop_on_page_two)
    orchestrator = holder["orchestrator"] = _orchestrator(job_scraper=scraper, ranker=ranker)

    first = _run(orchestrator, "search", {"profile": "core", "max_pages": 3})
    run_id = first["last_result"]["run_id"]
    record = Repository(db).get_run_record(run_id)
    assert (record.status, record.last_cursor) == ("stopped", "1")
    db.rollback()

    second = _run(orchestrator, "search", resume_run_id=run_id)

    assert second["last_result"]["status"] == "completed"
    assert second["last_result"]["run_id"] == run_id
    assert scraper.requested == [1, 2, 2, 3]
    assert ranker.ranked.count(posting(3)["url"]) == 1
    assert len(Repository(db).list_jobs()) == 5
    record = Repository(db).get_run_record(run_id)
    assert (record.status, record.last_cursor, record.items_added) == ("completed", "3", 5)
    assert len(Repository(db).list_run_records()) == 1


def test_resume_rejects_completed_and_unknown_runs(db, job_scraper_factory, ranker_factory, posting) -> None:
    orchestrator = _orchestrator(job_scraper=job_scraper_factory([[posting(1)]]), ranker=ranker_factory())
    run_id = _run(orchestrator, "search", {"profile": "core"})["last_result"]["run_id"]

    with pytest.raises(InvalidBatchConfig, match="already completed"):
        orchestrator.start("search", resume_run_id=run_id)
    with pytest.raises(InvalidBatchConfig, match="not lead_scrape"):
        orchestrator.start("lead_scrape", resume_run_id=run_id)
    with pytest.raises(RunNotFound):
        orchestrator.start("search", resume_run_id=999)
    assert orchestrator.state == "idle"


def test_invalid_config_is_rejected_before_any_state_change(db) -> None:
    orchestrator = _orchestrator()

    with pytest.raises(InvalidBatchConfig):
        orchestrator.start("search", {"profile": "core", "max_pages": 0})
    with pytest.raises(InvalidBatchConfig):
        orchestrator.start("lead_scrape", {"max_profiles": "many"})
    with pytest.raises(InvalidBatchConfig, match="unknown operation"):
        orchestrator.start("crawl")

    assert orchestrator.state == "idle"
    assert Repository(db).list_run_records() == []


def test_stale_run_reports_error_until_reconciled(db) -> None:
    stale = Repository(db).create_run_record(
        operation="search",
        filters={"profile": "core", "max_pages": 2},
        max_items=2,
        process_id=os.getpid(),
    )
    orchestrator = _orchestrator()

    status = orchestrator.status()
    assert status["status"] == "error"
    assert status["run_id"] == stale.id
    assert "resume or reconcile" in status["error"]

    with pytest.raises(OrchestrationConflict, match="still in progress"):
        orchestrator.start("search", {"profile": "core"})

    reconciled = orchestrator.reconcile(stale.id)
    assert reconciled["status"] == "stopped"
    assert reconciled["error_message"] == "interrupted; reconciled"
    assert orchestrator.status()["status"] == "idle"

    with pytest.raises(RunNotFound):
        orchestrator.reconcile(999)


def test_stale_run_can_be_resumed_with_its_stored_filters(db, job_scraper_factory, ranker_factory, posting) -> None:
    stale = Repository(db).create_run_record(
        operation="search",
        filters={"profile": "core", "max_pages": 2, "start_page": 1},
        max_items=2,
        process_id=os.getpid(),
    )
    Repository(db).checkpoint_run(stale.id, processed=1, cursor="1")
    scraper = job_scraper_factory([[posting(1)], [posting(2)]])
    orchestrator = _orchestrator(job_scraper=scraper, ranker=ranker_factory())

    status = _run(orchestrator, "search", resume_run_id=stale.id)

    assert scraper.requested == [2]
    assert status["last_result"]["status"] == "completed"
    db.rollback()
    assert Repository(db).get_run_record(stale.id).items_processed == 2


def test_failing_operation_reports_error_then_returns_to_idle(db, lead_scraper_factory, lead_profile) -> None:
    class BrokenLeadScraper:
        def iter_profiles(self, options, *, after=None):
            raise RuntimeError("session expired")
            yield

    orchestrator = _orchestrator(lead_scraper=BrokenLeadScraper())
    with orchestrator.subscribe() as subscription:
        status = _run(orchestrator, "lead_scrape")
        statuses = [event["status"] for event in subscription.drain() if event["type"] == "status"]

    assert statuses[-2:] == ["error", "idle"]
    assert status["status"] == "idle"
    assert status["error"] == "session expired"
    assert status["last_result"]["status"] == "error"
    run = Repository(db).list_run_records()[0]
    assert (run.status, run.error_message) == ("stopped", "session expired")

    orchestrator.operations["lead_scrape"].scraper = lead_scraper_factory([lead_profile(1)])
    status = _run(orchestrator, "lead_scrape")
    assert status["status"] == "idle"
    assert status["error"] is None
    assert status["last_result"]["profiles_added"] == 1


def test_lead_scrape_filters_titles_and_honors_max_profiles(db, lead_scraper_factory, lead_profile) -> None:
    profiles = [
        lead_profile(1),
        lead_profile(2, title="Staff Engineer"),
        lead_profile(3, title="Senior Talent Acquisition Partner"),
        lead_profile(4),
    ]
    orchestrator = _orchestrator(lead_scraper=lead_scraper_factory(profiles))

    status = _run(
        orchestrator,
        "lead_scrape",
        {"titles": ["recruiter", "talent acquisition"], "max_profiles": 3, "profile": "recruiters"},
    )

    assert status["last_result"]["profiles_scraped"] == 3
    assert status["last_result"]["profiles_added"] == 2
    assert status["last_result"]["status"] == "completed"
    assert sorted(lead.name for lead in Repository(db).list_leads()) == ["Recruiter 1", "Recruiter 3"]
    run = Repository(db).list_run_records()[0]
    assert run.last_cursor == "https://www.linkedin.com/in/recruiter-3"


def test_lead_scrape_resume_skips_through_cursor(db, lead_scraper_factory, lead_profile) -> None:
    holder: dict[str, object] = {}
    scraper = lead_scraper_factory([lead_profile(index) for index in range(1, 5)])

    class StoppingScraper:
        def iter_profiles(self, options, *, after=None):
            for index, profile in enumerate(scraper.iter_profiles(options, after=after)):
                if index == 2 and after is None:
                    holder["orchestrator"].stop()
                yield profile

    orchestrator = holder["orchestrator"] = _orchestrator(lead_scraper=StoppingScraper())
    first = _run(orchestrator, "lead_scrape", {"max_profiles": 3})
    run_id = first["last_result"]["run_id"]
    assert first["last_result"]["status"] == "stopped"
    assert first["last_result"]["profiles_added"] == 2

    second = _run(orchestrator, "lead_scrape", resume_run_id=run_id)

    assert scraper.cursors == [None, "https://www.linkedin.com/in/recruiter-2"]
    assert second["last_result"]["profiles_added"] == 1
    assert second["last_result"]["status"] == "completed"
    assert len(Repository(db).list_leads()) == 3
    db.rollback()
    assert Repository(db).get_run_record(run_id).items_processed == 3


def test_apply_dry_run_leaves_queue_untouched(db, job_scraper_factory, ranker_factory, posting) -> None:
    orchestrator = _orchestrator(job_scraper=job_scraper_factory([[posting(1), posting(2)]]), ranker=ranker_factory())
    _run(orchestrator, "search", {"profile": "core"})

    status = _run(orchestrator, "apply", {"easy": True, "external": True, "dry_run": True})

    assert status["last_result"]["skipped"] == 2
    assert status["last_result"]["run_id"] is None
    assert Repository(db).job_stats()["queued"] == 2
    assert len(Repository(db).list_run_records()) == 1


def test_apply_requires_an_applier_unless_dry_run(db) -> None:
    orchestrator = _orchestrator()

    with pytest.raises(InvalidBatchConfig, match="no applier"):
        orchestrator.start("apply", {"easy": True, "dry_run": False})
    with pytest.raises(InvalidBatchConfig, match="not resumable"):
        orchestrator.start("apply", {"easy": True, "dry_run": True}, resume_run_id=1)
    assert orchestrator.state == "idle"


def test_apply_without_applier_counts_each_job_as_failed(db) -> None:
    JobLifecycleManager(db).ingest([JobCandidate(url="https://jobs.example.com/view/1", title="Engineer", company="Acme")])
    ctx = BatchContext(token=CancellationToken(), session_factory=SessionLocal, stream=LogStream(), operation="apply")

    outcome = ApplyOperation().run(ctx, ApplyOptions(easy=True, external=True))

    assert outcome.summary == {"applied": 0, "skipped": 0, "failed": 1, "errors": 1}
    db.rollback()
    assert Repository(db).get_job(hash_url("https://jobs.example.com/view/1")).status == "queued"


def test_apply_marks_applied_jobs_and_skips_duplicates(db, job_scraper_factory, ranker_factory, posting) -> None:
    class RecordingApplier:
        def __init__(self):
            self.seen: list[str] = []

        def apply(self, job, *, session, log):
            self.seen.append(job.id)
            log(f"filling form for {job.title}")
            return "failed" if job.url.endswith("/2") else "applied"

    applier = RecordingApplier()
    duplicate = posting(3, title="Senior Backend Engineer 1", company="Company 1")
    orchestrator = _orchestrator(
        job_scraper=job_scraper_factory([[posting(1), posting(2), duplicate]]),
        ranker=ranker_factory(),
        applier=applier,
    )
    _run(orchestrator, "search", {"profile": "core"})

    status = _run(orchestrator, "apply", {"easy": True, "external": True})

    result = status["last_result"]
    assert (result["applied"], result["failed"], result["skipped"]) == (1, 1, 1)
    repo = Repository(db)
    same_role = [repo.get_job(hash_url(posting(index)["url"])) for index in (1, 3)]
    assert sorted(job.status for job in same_role) == ["applied", "skipped"]
    assert [job.applied_method for job in same_role if job.status == "applied"] == ["automatic"]
    assert repo.get_job(hash_url(posting(2)["url"])).status == "queued"
    assert len(applier.seen) == 2

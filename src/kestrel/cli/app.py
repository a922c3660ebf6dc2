from __future__ import annotations

import json
from typing import Any, NoReturn

import typer
import uvicorn

from kestrel.api.app import create_app
from kestrel.api.schemas import LeadResponse, RejectionPatternResponse, WeightAdjustmentResponse
from kestrel.config import get_settings
from kestrel.core.errors import InvalidBatchConfig, OrchestrationConflict, RunNotFound
from kestrel.core.jobs import JobLifecycleManager, serialize_job
from kestrel.core.label_mapping import LabelMappingLearner
from kestrel.core.orchestrator import serialize_run
from kestrel.core.runtime import get_learning_queue, get_orchestrator, rejection_hook
from kestrel.core.weights import WeightManager
from kestrel.db.init import init_database
from kestrel.db.repositories import Repository
from kestrel.db.session import SessionLocal
from kestrel.logging_config import configure_logging
from kestrel.types import JOB_STATUSES

app = typer.Typer(help="Kestrel CLI")
jobs_app = typer.Typer(help="Job queue commands")
leads_app = typer.Typer(help="Lead collection commands")
runs_app = typer.Typer(help="Batch run records")
learning_app = typer.Typer(help="Rejection learning and category weights")
mappings_app = typer.Typer(help="Learned form label mappings")
prefs_app = typer.Typer(help="Application preferences")

app.add_typer(jobs_app, name="jobs")
app.add_typer(leads_app, name="leads")
app.add_typer(runs_app, name="runs")
app.add_typer(learning_app, name="learning")
app.add_typer(mappings_app, name="mappings")
app.add_typer(prefs_app, name="prefs")

_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _fail(message: str) -> NoReturn:
    typer.echo(json.dumps({"ok": False, "error": message}), err=True)
    raise typer.Exit(code=1)


def _resume_target(operation: str, resume: bool, run_id: int | None) -> int | None:
    if run_id is not None:
        return run_id
    if not resume:
        return None
    with SessionLocal() as db:
        record = Repository(db).last_incomplete_run(operation)
    if record is None:
        _fail(f"no incomplete {operation} run to resume")
    return record.id


def _run_foreground(operation: str, config: dict[str, Any], *, resume_run_id: int | None = None) -> None:
    orchestrator = get_orchestrator()
    orchestrator.install_signal_handlers()
    try:
        orchestrator.start(operation, config, resume_run_id=resume_run_id)
    except (InvalidBatchConfig, RunNotFound, OrchestrationConflict) as exc:
        _fail(str(exc))

    # short joins keep the main thread responsive to SIGINT/SIGTERM
    while not orchestrator.wait(timeout=0.5):
        pass

    status = orchestrator.status()
    _echo(status)
    if (status["last_result"] or {}).get("status") == "error":
        raise typer.Exit(code=1)


@app.command("init")
def init_cmd() -> None:
    """Create data directories and database tables."""
    configure_logging()
    result = init_database()
    _echo({"ok": True, **result})


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)


@app.command("search")
def search_cmd(
    profile: str | None = typer.Option(None, "--profile"),
    keywords: str | None = typer.Option(None, "--keywords"),
    location: str | None = typer.Option(None, "--location"),
    remote: bool = typer.Option(False, "--remote"),
    date_posted: str | None = typer.Option(None, "--date-posted", help="day, week or month"),
    min_score: float | None = typer.Option(None, "--min-score"),
    max_pages: int = typer.Option(1, "--max-pages"),
    start_page: int = typer.Option(1, "--start-page"),
    resume: bool = typer.Option(False, "--resume", help="Resume the last incomplete search run"),
    run_id: int | None = typer.Option(None, "--run-id", help="Resume this run record"),
) -> None:
    """Scrape, rank and queue job postings."""
    configure_logging()
    ensure_initialized()
    resume_run_id = _resume_target("search", resume, run_id)
    config: dict[str, Any] = {}
    if resume_run_id is None:
        config = {
            "profile": profile,
            "keywords": keywords,
            "location": location,
            "remote": remote,
            "date_posted": date_posted,
            "min_score": min_score,
            "max_pages": max_pages,
            "start_page": start_page,
        }
        config = {key: value for key, value in config.items() if value is not None}
    _run_foreground("search", config, resume_run_id=resume_run_id)


@app.command("apply")
def apply_cmd(
    easy: bool = typer.Option(False, "--easy"),
    external: bool = typer.Option(False, "--external"),
    job_id: str | None = typer.Option(None, "--job-id"),
    limit: int | None = typer.Option(None, "--limit"),
    dry_run: bool = typer.Option(True, "--dry-run/--submit"),
) -> None:
    """Work through queued jobs."""
    configure_logging()
    ensure_initialized()
    config = {"easy": easy, "external": external, "job_id": job_id, "limit": limit, "dry_run": dry_run}
    _run_foreground("apply", {key: value for key, value in config.items() if value is not None})


@app.command("status")
def status_cmd() -> None:
    configure_logging()
    ensure_initialized()
    _echo(get_orchestrator().status())


@leads_app.command("scrape")
def leads_scrape(
    profile: str = typer.Option("default", "--profile"),
    title: list[str] = typer.Option([], "--title", help="Keep profiles whose title contains this text"),
    max_profiles: int | None = typer.Option(None, "--max-profiles"),
    start_page: int = typer.Option(1, "--start-page"),
    resume: bool = typer.Option(False, "--resume"),
    run_id: int | None = typer.Option(None, "--run-id"),
) -> None:
    configure_logging()
    ensure_initialized()
    resume_run_id = _resume_target("lead_scrape", resume, run_id)
    config: dict[str, Any] = {}
    if resume_run_id is None:
        config = {
            "profile": profile,
            "titles": title,
            "max_profiles": max_profiles or get_settings().lead_max_profiles,
            "start_page": start_page,
        }
    _run_foreground("lead_scrape", config, resume_run_id=resume_run_id)


@leads_app.command("list")
def leads_list(
    search: str | None = typer.Option(None, "--search"),
    company: str | None = typer.Option(None, "--company"),
    limit: int = typer.Option(20, "--limit"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        rows = Repository(db).list_leads(search=search, company=company, limit=limit)
        _echo([LeadResponse.model_validate(row).model_dump(mode="json") for row in rows])


@jobs_app.command("list")
def jobs_list(
    status: str | None = typer.Option(None, "--status"),
    search: str | None = typer.Option(None, "--search"),
    curated: bool | None = typer.Option(None, "--curated/--not-curated"),
    limit: int = typer.Option(20, "--limit"),
) -> None:
    configure_logging()
    ensure_initialized()
    if status and status not in JOB_STATUSES:
        raise typer.BadParameter(f"status must be one of {', '.join(JOB_STATUSES)}")
    with SessionLocal() as db:
        jobs = Repository(db).list_jobs(status=status, search=search, curated=curated, limit=limit)
        _echo(
            [
                {
                    "id": job.id,
                    "title": job.title,
                    "company": job.company,
                    "rank": job.rank,
                    "status": job.status,
                    "easy_apply": job.easy_apply,
                    "url": job.url,
                }
                for job in jobs
            ]
        )


@jobs_app.command("stats")
def jobs_stats() -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        _echo({"statuses": repo.job_stats(), "applied_methods": repo.applied_method_stats()})


@jobs_app.command("status")
def jobs_status(
    job_id: str = typer.Argument(...),
    status: str = typer.Argument(...),
    reason: str | None = typer.Option(None, "--reason", help="Rejection reason"),
    method: str | None = typer.Option(None, "--method", help="manual or automatic"),
) -> None:
    """Move a job to a new status. Rejections with a reason feed the learner."""
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    with SessionLocal() as db:
        manager = JobLifecycleManager(db, on_rejection=rejection_hook())
        try:
            job = manager.update_status(job_id, status, applied_method=method, rejection_reason=reason)
        except ValueError as exc:
            _fail(str(exc))
        payload = serialize_job(job)

    if status == "rejected" and settings.learning_queue_enabled:
        queue = get_learning_queue()
        queue.join(timeout=settings.orchestrator_join_timeout_sec)
        payload["learning"] = queue.stats()
    _echo(payload)


@jobs_app.command("curate")
def jobs_curate(job_id: str = typer.Argument(...)) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            job = Repository(db).toggle_curated(job_id)
        except ValueError as exc:
            _fail(str(exc))
        _echo({"id": job.id, "curated": job.curated})


@runs_app.command("list")
def runs_list(
    operation: str | None = typer.Option(None, "--operation"),
    limit: int = typer.Option(20, "--limit"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        _echo([serialize_run(row) for row in Repository(db).list_run_records(operation=operation, limit=limit)])


@runs_app.command("reconcile")
def runs_reconcile(run_id: int = typer.Argument(...)) -> None:
    """Mark an interrupted run as stopped so it can be resumed later."""
    configure_logging()
    ensure_initialized()
    try:
        _echo(get_orchestrator().reconcile(run_id))
    except (RunNotFound, OrchestrationConflict) as exc:
        _fail(str(exc))


@learning_app.command("show")
def learning_show(profile: str | None = typer.Option(None, "--profile")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        manager = WeightManager(db)
        repo = Repository(db)
        _echo(
            {
                "weights": manager.summary(profile),
                "stats": manager.learning_stats(),
                "patterns": [
                    RejectionPatternResponse.model_validate(row).model_dump(mode="json")
                    for row in repo.list_rejection_patterns()
                ],
                "recent_adjustments": [
                    WeightAdjustmentResponse.model_validate(row).model_dump(mode="json")
                    for row in repo.weight_adjustment_history(limit=10)
                ],
            }
        )


@learning_app.command("reset")
def learning_reset(
    patterns: bool = typer.Option(False, "--patterns", help="Also forget rejection patterns"),
    yes: bool = typer.Option(False, "--yes", "-y"),
) -> None:
    configure_logging()
    ensure_initialized()
    if not yes:
        typer.confirm("Delete all learned weight adjustments?", abort=True)
    with SessionLocal() as db:
        result = {"adjustments_removed": WeightManager(db).reset()}
        if patterns:
            result["patterns_removed"] = Repository(db).clear_rejection_patterns()
    _echo(result)


@learning_app.command("backfill")
def learning_backfill(limit: int | None = typer.Option(None, "--limit")) -> None:
    """Run the learner over rejections it has not consumed yet."""
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        job_ids = [job.id for job in Repository(db).unprocessed_rejections(limit=limit)]

    queue = get_learning_queue()
    for job_id in job_ids:
        queue.submit(job_id)
    finished = queue.join(timeout=max(1, len(job_ids)) * get_settings().orchestrator_join_timeout_sec)
    _echo({"submitted": len(job_ids), "finished": finished, **queue.stats()})


@mappings_app.command("list")
def mappings_list() -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        _echo([mapping.as_dict() for mapping in LabelMappingLearner(db).all_mappings()])


@mappings_app.command("clear")
def mappings_clear(yes: bool = typer.Option(False, "--yes", "-y")) -> None:
    configure_logging()
    ensure_initialized()
    if not yes:
        typer.confirm("Forget all learned label mappings?", abort=True)
    with SessionLocal() as db:
        _echo({"removed": LabelMappingLearner(db).clear()})


@prefs_app.command("get")
def prefs_get(key: str | None = typer.Argument(None)) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        if key is None:
            _echo(repo.all_preferences())
            return
        value = repo.get_preference(key)
        if value is None:
            _fail(f"preference {key} not set")
        _echo({"key": key, "value": value})


@prefs_app.command("set")
def prefs_set(key: str = typer.Argument(...), value: str = typer.Argument(...)) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        Repository(db).set_preference(key, value)
    _echo({"key": key, "value": value})


@prefs_app.command("delete")
def prefs_delete(key: str = typer.Argument(...)) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        if not Repository(db).delete_preference(key):
            _fail(f"preference {key} not set")
    _echo({"deleted": key})

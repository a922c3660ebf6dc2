from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from kestrel.config import Settings, get_settings
from kestrel.core.cancellation import CancellationToken
from kestrel.core.collaborators import Applier, JobScraper, LeadScraper, Ranker
from kestrel.core.errors import InvalidBatchConfig
from kestrel.core.events import LogStream
from kestrel.core.jobs import JobLifecycleManager
from kestrel.core.rejections import CandidateFilter, blocking_reason, build_candidate_filters
from kestrel.core.weights import WeightManager
from kestrel.db.models import Job
from kestrel.db.repositories import Repository, hash_url, normalize_profile_url
from kestrel.types import (
    ApplyOptions,
    JobCandidate,
    JobPosting,
    LeadProfile,
    LeadScrapeOptions,
    SearchOptions,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@dataclass
class BatchContext:
    """Everything a running batch may touch besides its collaborators."""

    token: CancellationToken
    session_factory: SessionFactory
    stream: LogStream
    operation: str
    run_id: int | None = None
    resume_cursor: str | None = None
    initial_processed: int = 0
    errors: int = 0

    def should_stop(self) -> bool:
        return self.token.stop_requested

    def log(self, message: str, *, level: str = "info") -> None:
        logger.log(logging.getLevelName(level.upper()), "[%s] %s", self.operation, message)
        self.stream.log(message, level=level)

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.log(message, level="warning")

    def checkpoint(
        self,
        *,
        processed: int = 0,
        added: int = 0,
        cursor: str | None = None,
        current_page: int | None = None,
    ) -> None:
        if self.run_id is None:
            return
        with self.session_factory() as session:
            Repository(session).checkpoint_run(
                self.run_id,
                processed=processed,
                added=added,
                cursor=cursor,
                current_page=current_page,
            )


@dataclass
class BatchOutcome:
    summary: dict[str, Any] = field(default_factory=dict)
    exhausted: bool = True


class BatchOperation:
    name: str = ""
    options_model: type[BaseModel] = BaseModel
    tracks_run: bool = True

    def parse_options(self, config: dict[str, Any]) -> Any:
        try:
            options = self.options_model.model_validate(config)
        except ValidationError as exc:
            raise InvalidBatchConfig(f"invalid {self.name} options: {exc}") from exc
        self.validate(options)
        return options

    def validate(self, options: Any) -> None:
        pass

    def max_items(self, options: Any) -> int | None:
        return None

    def start_page(self, options: Any) -> int:
        return 1

    def run(self, ctx: BatchContext, options: Any) -> BatchOutcome:
        raise NotImplementedError


class SearchOperation(BatchOperation):
    """Scrape result pages, filter, rank and queue the survivors.

    The cursor is the last page whose candidates were all evaluated and
    ingested; a resumed run starts on the page after it.
    """

    name = "search"
    options_model = SearchOptions

    def __init__(self, scraper: JobScraper, ranker: Ranker, *, settings: Settings | None = None):
        self.scraper = scraper
        self.ranker = ranker
        self.settings = settings or get_settings()

    def max_items(self, options: SearchOptions) -> int | None:
        return options.max_pages

    def start_page(self, options: SearchOptions) -> int:
        return options.start_page

    def run(self, ctx: BatchContext, options: SearchOptions) -> BatchOutcome:
        profile = options.profile or self.settings.default_profile
        last_page = options.start_page + options.max_pages - 1
        page = int(ctx.resume_cursor) + 1 if ctx.resume_cursor else options.start_page

        with ctx.session_factory() as session:
            repo = Repository(session)
            min_score = self._min_score(repo, options)
            filters = build_candidate_filters(repo)
            weights = WeightManager(session).active_weights(profile)

        ctx.log(f"Searching profile={profile} pages {page}..{last_page} min_score={min_score:g}")
        if filters:
            ctx.log(f"{len(filters)} rejection filter(s) active")

        totals = {"pages": 0, "analyzed": 0, "queued": 0, "skipped": 0}
        exhausted = True
        while page <= last_page:
            if ctx.should_stop():
                exhausted = False
                break

            ctx.checkpoint(current_page=page)
            try:
                result_page = self.scraper.fetch_page(options, page)
            except Exception as exc:
                ctx.record_error(f"Page {page} could not be fetched: {exc}")
                page += 1
                continue
            ctx.log(f"Page {page}: {len(result_page.postings)} posting(s)")

            candidates: list[JobCandidate] = []
            analyzed = 0
            interrupted = False
            for raw in result_page.postings:
                if ctx.should_stop():
                    interrupted = True
                    break
                candidate = self._evaluate(ctx, raw, profile=profile, weights=weights, filters=filters, min_score=min_score)
                analyzed += 1
                if candidate is not None:
                    candidates.append(candidate)

            added = self._ingest(ctx, candidates)
            totals["analyzed"] += analyzed
            totals["queued"] += added
            totals["skipped"] += analyzed - added
            ctx.checkpoint(processed=analyzed, added=added, cursor=None if interrupted else str(page))

            if interrupted:
                exhausted = False
                break
            totals["pages"] += 1
            if not result_page.has_next:
                break
            page += 1

        return BatchOutcome(summary={**totals, "errors": ctx.errors}, exhausted=exhausted)

    def _min_score(self, repo: Repository, options: SearchOptions) -> float:
        if options.min_score is not None:
            return options.min_score
        stored = repo.get_preference("min_fit_score")
        if stored:
            try:
                return float(stored)
            except ValueError:
                logger.warning("Ignoring non-numeric min_fit_score preference %r", stored)
        return float(self.settings.min_fit_score)

    def _evaluate(
        self,
        ctx: BatchContext,
        raw: dict[str, Any],
        *,
        profile: str,
        weights: dict[str, float],
        filters: list[CandidateFilter],
        min_score: float,
    ) -> JobCandidate | None:
        try:
            posting = JobPosting.model_validate(raw)
        except ValidationError as exc:
            ctx.record_error(f"Skipping malformed posting: {exc.errors()[0].get('msg', exc)}")
            return None

        label = f"{posting.title} at {posting.company}"
        try:
            with ctx.session_factory() as session:
                repo = Repository(session)
                existing = repo.get_job(hash_url(posting.url))
                if existing is not None and existing.status != "reported":
                    ctx.log(f"Skip {label}: already known ({existing.status})")
                    return None
                if repo.has_applied_to_company_title(posting.company, posting.title):
                    ctx.log(f"Skip {label}: already applied to this role")
                    return None

            reason = blocking_reason(filters, posting)
            if reason:
                ctx.log(f"Skip {label}: {reason}")
                return None

            result = self.ranker.rank_job(posting, profile=profile, weights=weights)
        except Exception as exc:
            ctx.record_error(f"Failed to evaluate {label}: {exc}")
            return None

        if result.fit_score < min_score:
            ctx.log(f"Skip {label}: score {result.fit_score:.1f} below {min_score:g}")
            return None
        ctx.log(f"Queue {label}: score {result.fit_score:.1f}")
        return JobCandidate.from_ranked(posting, result, profile)

    def _ingest(self, ctx: BatchContext, candidates: list[JobCandidate]) -> int:
        if not candidates:
            return 0
        try:
            with ctx.session_factory() as session:
                result = JobLifecycleManager(session).ingest(candidates)
                repo = Repository(session)
                logged: set[str] = set()
                for candidate in candidates:
                    job_id = hash_url(candidate.url)
                    job = session.get(Job, job_id)
                    if job is None or job.status != "queued" or job_id in logged:
                        continue
                    logged.add(job_id)
                    repo.log_step(job_id, "rank", ok=True, log=f"score={candidate.rank} profile={candidate.profile}")
        except Exception as exc:
            ctx.record_error(f"Failed to store {len(candidates)} candidate(s): {exc}")
            return 0

        for detail in result.skipped_details:
            ctx.log(f"Not queued {detail.title} at {detail.company}: {detail.reason}")
        return result.inserted + result.requeued


class LeadScrapeOperation(BatchOperation):
    """Collect recruiter and hiring-manager profiles into the leads table.

    The cursor is the normalized URL of the last profile handled.
    """

    name = "lead_scrape"
    options_model = LeadScrapeOptions

    def __init__(self, scraper: LeadScraper):
        self.scraper = scraper

    def max_items(self, options: LeadScrapeOptions) -> int | None:
        return options.max_profiles

    def start_page(self, options: LeadScrapeOptions) -> int:
        return options.start_page

    def run(self, ctx: BatchContext, options: LeadScrapeOptions) -> BatchOutcome:
        titles = [title.lower() for title in options.titles if title.strip()]
        scraped = added = 0
        exhausted = True

        for raw in self.scraper.iter_profiles(options, after=ctx.resume_cursor):
            if ctx.should_stop():
                exhausted = False
                break
            if ctx.initial_processed + scraped >= options.max_profiles:
                ctx.log(f"Reached max_profiles={options.max_profiles}")
                break

            try:
                lead = LeadProfile.model_validate(raw)
            except ValidationError as exc:
                ctx.record_error(f"Skipping malformed profile: {exc.errors()[0].get('msg', exc)}")
                continue

            cursor = normalize_profile_url(lead.profile_url)
            scraped += 1
            if titles and not any(title in lead.title.lower() for title in titles):
                ctx.log(f"Skip {lead.name}: title {lead.title!r} does not match")
                ctx.checkpoint(processed=1, cursor=cursor)
                continue

            try:
                with ctx.session_factory() as session:
                    inserted = Repository(session).add_lead(lead, profile=options.profile)
            except Exception as exc:
                ctx.record_error(f"Failed to store lead {lead.name}: {exc}")
                ctx.checkpoint(processed=1, cursor=cursor)
                continue

            added += inserted
            ctx.log(f"{'Added' if inserted else 'Known'} lead {lead.name} ({lead.title})")
            ctx.checkpoint(processed=1, added=int(inserted), cursor=cursor)

        return BatchOutcome(
            summary={"profiles_scraped": scraped, "profiles_added": added, "errors": ctx.errors},
            exhausted=exhausted,
        )


class ApplyOperation(BatchOperation):
    name = "apply"
    options_model = ApplyOptions
    tracks_run = False

    def __init__(self, applier: Applier | None = None):
        self.applier = applier

    def validate(self, options: ApplyOptions) -> None:
        if not options.dry_run and self.applier is None:
            raise InvalidBatchConfig("no applier is configured; run apply with dry_run enabled")

    def run(self, ctx: BatchContext, options: ApplyOptions) -> BatchOutcome:
        with ctx.session_factory() as session:
            job_ids = [
                job.id
                for job in Repository(session).list_queued_jobs(
                    easy=options.easy,
                    external=options.external,
                    job_id=options.job_id,
                    limit=options.limit,
                )
            ]
        if options.job_id and not job_ids:
            ctx.log(f"Job {options.job_id} is not queued", level="warning")
        ctx.log(f"{len(job_ids)} queued job(s) selected{' (dry run)' if options.dry_run else ''}")

        counts = {"applied": 0, "skipped": 0, "failed": 0}
        exhausted = True
        for job_id in job_ids:
            if ctx.should_stop():
                exhausted = False
                break
            try:
                outcome = self._apply_one(ctx, job_id, dry_run=options.dry_run)
            except Exception as exc:
                ctx.record_error(f"Apply failed for {job_id}: {exc}")
                outcome = "failed"
            if outcome:
                counts[outcome] += 1

        return BatchOutcome(summary={**counts, "errors": ctx.errors}, exhausted=exhausted)

    def _apply_one(self, ctx: BatchContext, job_id: str, *, dry_run: bool) -> str | None:
        with ctx.session_factory() as session:
            repo = Repository(session)
            manager = JobLifecycleManager(session)
            job = repo.get_job(job_id)
            if job is None or job.status != "queued":
                return None
            label = f"{job.title} at {job.company}"

            if manager.has_applied_to_company_title(job.company, job.title):
                manager.update_status(job_id, "skipped")
                repo.log_step(job_id, "apply", ok=True, log="already applied to this role")
                ctx.log(f"Skip {label}: already applied to this role")
                return "skipped"

            if dry_run:
                ctx.log(f"[dry run] would apply to {label} ({job.url})")
                return "skipped"

            if self.applier is None:
                raise InvalidBatchConfig("no applier is configured")
            outcome = self.applier.apply(job, session=session, log=ctx.log)
            if outcome == "applied":
                manager.update_status(job_id, "applied", applied_method="automatic")
            repo.log_step(job_id, "apply", ok=outcome != "failed", log=outcome)
            ctx.log(f"{outcome.capitalize()} {label}")
            return outcome


def build_operations(
    settings: Settings | None = None,
    *,
    job_scraper: JobScraper | None = None,
    lead_scraper: LeadScraper | None = None,
    ranker: Ranker | None = None,
    applier: Applier | None = None,
) -> dict[str, BatchOperation]:
    from kestrel.core.feeds import JsonFeedScraper
    from kestrel.llm.router import LLMRouter

    settings = settings or get_settings()
    feeds = JsonFeedScraper(
        job_feed=settings.job_feed_path,
        lead_feed=settings.lead_feed_path,
        fetch_missing_descriptions=settings.fetch_missing_descriptions,
        fetch_timeout_sec=settings.fetch_timeout_sec,
    )
    operations: list[BatchOperation] = [
        SearchOperation(job_scraper or feeds, ranker or LLMRouter(settings), settings=settings),
        LeadScrapeOperation(lead_scraper or feeds),
        ApplyOperation(applier),
    ]
    return {operation.name: operation for operation in operations}

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kestrel.db.models import Job
from kestrel.db.repositories import Repository, apply_fit, canonicalize_url, fit_from_job, hash_url
from kestrel.types import JOB_STATUSES, IngestResult, JobCandidate, SkipDetail

logger = logging.getLogger(__name__)

REASON_ALREADY_QUEUED = "Already queued"
REASON_ALREADY_PROCESSED = "Already processed"
REASON_DUPLICATE_URL = "Duplicate URL"

APPLIED_METHODS = {"manual", "automatic"}

RejectionHook = Callable[[str], None]


class JobLifecycleManager:
    def __init__(self, session: Session, *, on_rejection: RejectionHook | None = None):
        self.session = session
        self.repo = Repository(session)
        self.on_rejection = on_rejection

    def ingest(self, candidates: Iterable[JobCandidate]) -> IngestResult:
        """Insert, re-queue or skip each candidate inside one transaction."""
        result = IngestResult()
        seen_urls: set[str] = set()

        try:
            for candidate in candidates:
                url = canonicalize_url(candidate.url)
                if url in seen_urls:
                    self._skip(result, candidate, REASON_DUPLICATE_URL, "unknown")
                    continue
                seen_urls.add(url)

                existing = self.session.get(Job, hash_url(candidate.url))
                if existing is None:
                    if self._insert(candidate, url):
                        result.inserted += 1
                    else:
                        self._skip(result, candidate, REASON_DUPLICATE_URL, "unknown")
                elif existing.status == "reported":
                    self._requeue(existing, candidate)
                    result.requeued += 1
                elif existing.status == "queued":
                    self._skip(result, candidate, REASON_ALREADY_QUEUED, existing.status)
                else:
                    self._skip(result, candidate, REASON_ALREADY_PROCESSED, existing.status)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            "Ingested batch inserted=%s requeued=%s skipped=%s",
            result.inserted,
            result.requeued,
            result.skipped,
        )
        return result

    def update_status(
        self,
        job_id: str,
        status: str,
        *,
        applied_method: str | None = None,
        rejection_reason: str | None = None,
    ) -> Job:
        if status not in JOB_STATUSES:
            raise ValueError(f"invalid status {status!r}")
        if applied_method is not None and applied_method not in APPLIED_METHODS:
            raise ValueError(f"invalid applied_method {applied_method!r}")

        job = self.repo.set_job_status(
            job_id,
            status=status,
            applied_method=applied_method,
            rejection_reason=rejection_reason,
        )
        logger.info("Job %s -> %s", job_id, status)

        if status == "rejected" and rejection_reason and rejection_reason.strip() and self.on_rejection:
            try:
                self.on_rejection(job.id)
            except Exception:
                logger.exception("Rejection hook failed job_id=%s", job.id)
        return job

    def has_applied_to_company_title(self, company: str, title: str) -> bool:
        return self.repo.has_applied_to_company_title(company, title)

    def _insert(self, candidate: JobCandidate, url: str) -> bool:
        job = Job(
            id=hash_url(candidate.url),
            url=url,
            title=candidate.title,
            company=candidate.company,
            easy_apply=candidate.easy_apply,
            rank=candidate.rank,
            status="queued",
            description=candidate.description,
            profile=candidate.profile,
            posted_date=candidate.posted_date,
            status_updated_at=None,
        )
        apply_fit(job, candidate.fit)
        try:
            with self.session.begin_nested():
                self.session.add(job)
        except IntegrityError:
            logger.warning("URL collision while ingesting %s", url)
            return False
        return True

    def _requeue(self, job: Job, candidate: JobCandidate) -> None:
        job.rank = candidate.rank
        apply_fit(job, candidate.fit)
        job.description = candidate.description
        job.profile = candidate.profile
        job.posted_date = candidate.posted_date
        job.status = "queued"
        job.status_updated_at = datetime.now(UTC)
        logger.info("Re-queued reported job %s (%s at %s)", job.id, job.title, job.company)

    @staticmethod
    def _skip(result: IngestResult, candidate: JobCandidate, reason: str, current_status: str) -> None:
        result.skipped += 1
        result.skipped_details.append(
            SkipDetail(
                title=candidate.title,
                company=candidate.company,
                reason=reason,
                current_status=current_status,
            )
        )


def serialize_job(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "url": job.url,
        "title": job.title,
        "company": job.company,
        "easy_apply": job.easy_apply,
        "rank": job.rank,
        "status": job.status,
        "applied_method": job.applied_method,
        "rejection_reason": job.rejection_reason,
        "fit": fit_from_job(job).model_dump(),
        "description": job.description,
        "profile": job.profile,
        "posted_date": job.posted_date,
        "curated": job.curated,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "status_updated_at": job.status_updated_at.isoformat() if job.status_updated_at else None,
    }

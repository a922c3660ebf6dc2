from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from kestrel.db.models import (
    ApplicationPreference,
    Job,
    JobStep,
    LabelMapping,
    Lead,
    RejectionPattern,
    RunRecord,
    WeightAdjustment,
)
from kestrel.types import JOB_STATUSES, SUBMITTED_STATUSES, FitAssessment, LeadProfile


def canonicalize_url(url: str) -> str:
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/") or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def hash_url(url: str) -> str:
    return hashlib.md5(canonicalize_url(url).encode("utf-8")).hexdigest()


def normalize_profile_url(url: str) -> str:
    return url.strip().rstrip("/")


def fit_from_job(job: Job) -> FitAssessment:
    return FitAssessment(
        reasons=job.fit_reasons_json or [],
        must_haves=job.must_haves_json or [],
        blockers=job.blockers_json or [],
        category_scores=job.category_scores_json or {},
        missing_keywords=job.missing_keywords_json or [],
    )


def apply_fit(job: Job, fit: FitAssessment) -> None:
    job.fit_reasons_json = list(fit.reasons)
    job.must_haves_json = list(fit.must_haves)
    job.blockers_json = list(fit.blockers)
    job.category_scores_json = dict(fit.category_scores)
    job.missing_keywords_json = list(fit.missing_keywords)


class Repository:
    def __init__(self, session: Session):
        self.session = session

    # jobs

    def get_job(self, job_id: str) -> Job | None:
        return self.session.get(Job, job_id)

    def list_jobs(
        self,
        *,
        status: str | None = None,
        easy_apply: bool | None = None,
        search: str | None = None,
        curated: bool | None = None,
        include_skipped: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        statement = select(Job)
        if status:
            statement = statement.where(Job.status == status)
        elif not include_skipped:
            statement = statement.where(Job.status != "skipped")
        if easy_apply is not None:
            statement = statement.where(Job.easy_apply.is_(easy_apply))
        if curated is not None:
            statement = statement.where(Job.curated.is_(curated))
        if search:
            pattern = f"%{search.lower()}%"
            statement = statement.where(
                or_(func.lower(Job.title).like(pattern), func.lower(Job.company).like(pattern))
            )
        statement = statement.order_by(Job.rank.desc(), Job.created_at.desc()).limit(limit).offset(offset)
        return list(self.session.scalars(statement).all())

    def list_queued_jobs(
        self,
        *,
        easy: bool = False,
        external: bool = False,
        job_id: str | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        statement = select(Job).where(Job.status == "queued")
        if job_id:
            statement = statement.where(Job.id == job_id)
        elif easy and not external:
            statement = statement.where(Job.easy_apply.is_(True))
        elif external and not easy:
            statement = statement.where(Job.easy_apply.is_(False))
        statement = statement.order_by(Job.rank.desc(), Job.created_at.asc())
        if limit:
            statement = statement.limit(limit)
        return list(self.session.scalars(statement).all())

    def job_stats(self) -> dict[str, int]:
        rows = self.session.execute(select(Job.status, func.count()).group_by(Job.status)).all()
        stats = {status: 0 for status in JOB_STATUSES}
        for status, count in rows:
            stats[status] = count
        stats["curated"] = self.session.scalar(select(func.count()).select_from(Job).where(Job.curated.is_(True))) or 0
        stats["total"] = sum(stats[status] for status in JOB_STATUSES)
        return stats

    def applied_method_stats(self) -> dict[str, int]:
        rows = self.session.execute(
            select(Job.applied_method, func.count())
            .where(Job.status.in_(SUBMITTED_STATUSES))
            .group_by(Job.applied_method)
        ).all()
        stats = {"automatic": 0, "manual": 0, "unknown": 0}
        for method, count in rows:
            stats[method or "unknown"] = stats.get(method or "unknown", 0) + count
        return stats

    def has_applied_to_company_title(self, company: str, title: str) -> bool:
        statement = (
            select(Job.id)
            .where(
                and_(
                    func.lower(Job.company) == company.strip().lower(),
                    func.lower(Job.title) == title.strip().lower(),
                    Job.status.in_(SUBMITTED_STATUSES),
                )
            )
            .limit(1)
        )
        return self.session.scalar(statement) is not None

    def set_job_status(
        self,
        job_id: str,
        *,
        status: str,
        applied_method: str | None = None,
        rejection_reason: str | None = None,
    ) -> Job:
        result = self.session.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(
                status=status,
                applied_method=applied_method,
                rejection_reason=rejection_reason,
                rejection_processed=False,
                status_updated_at=datetime.now(UTC),
            )
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise ValueError(f"job {job_id} not found")
        self.session.commit()
        job = self.session.get(Job, job_id)
        self.session.refresh(job)
        return job

    def toggle_curated(self, job_id: str) -> Job:
        job = self.session.get(Job, job_id)
        if not job:
            raise ValueError(f"job {job_id} not found")
        job.curated = not job.curated
        self.session.commit()
        self.session.refresh(job)
        return job

    def update_job_rank(self, job_id: str, rank: float, fit: FitAssessment) -> Job:
        job = self.session.get(Job, job_id)
        if not job:
            raise ValueError(f"job {job_id} not found")
        job.rank = rank
        apply_fit(job, fit)
        self.session.commit()
        self.session.refresh(job)
        return job

    def unprocessed_rejections(self, limit: int | None = None) -> list[Job]:
        statement = (
            select(Job)
            .where(
                and_(
                    Job.status == "rejected",
                    Job.rejection_processed.is_(False),
                    Job.rejection_reason.is_not(None),
                    Job.rejection_reason != "",
                )
            )
            .order_by(Job.status_updated_at.asc())
        )
        if limit:
            statement = statement.limit(limit)
        return list(self.session.scalars(statement).all())

    def mark_rejections_processed(self, job_ids: list[str]) -> int:
        if not job_ids:
            return 0
        result = self.session.execute(update(Job).where(Job.id.in_(job_ids)).values(rejection_processed=True))
        self.session.commit()
        return result.rowcount

    def log_step(self, job_id: str, step: str, *, ok: bool, log: str = "", screenshot_path: str = "") -> JobStep:
        entry = JobStep(job_id=job_id, step=step, ok=ok, log=log, screenshot_path=screenshot_path)
        self.session.add(entry)
        self.session.commit()
        self.session.refresh(entry)
        return entry

    def list_steps(self, job_id: str) -> list[JobStep]:
        statement = select(JobStep).where(JobStep.job_id == job_id).order_by(JobStep.id.asc())
        return list(self.session.scalars(statement).all())

    # leads

    def add_lead(self, lead: LeadProfile, *, profile: str = "") -> bool:
        profile_url = normalize_profile_url(lead.profile_url)
        conditions = [
            func.rtrim(Lead.profile_url, "/") == profile_url,
        ]
        if lead.linkedin_id:
            conditions.append(Lead.linkedin_id == lead.linkedin_id)
        if lead.email:
            conditions.append(and_(Lead.name == lead.name, Lead.email == lead.email))

        # soft-deleted rows count as existing so they are never re-imported
        existing = self.session.scalar(select(Lead.id).where(or_(*conditions)).limit(1))
        if existing is not None:
            return False

        self.session.add(
            Lead(
                id=hashlib.md5(profile_url.encode("utf-8")).hexdigest(),
                name=lead.name,
                title=lead.title,
                company=lead.company,
                about=lead.about,
                email=lead.email,
                location=lead.location,
                profile_url=profile_url,
                linkedin_id=lead.linkedin_id,
                profile=profile,
            )
        )
        self.session.commit()
        return True

    def get_lead(self, lead_id: str) -> Lead | None:
        return self.session.get(Lead, lead_id)

    def list_leads(
        self,
        *,
        search: str | None = None,
        title: str | None = None,
        company: str | None = None,
        profile: str | None = None,
        include_deleted: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Lead]:
        statement = select(Lead)
        if not include_deleted:
            statement = statement.where(Lead.deleted_at.is_(None))
        if search:
            pattern = f"%{search.lower()}%"
            statement = statement.where(
                or_(
                    func.lower(Lead.name).like(pattern),
                    func.lower(Lead.title).like(pattern),
                    func.lower(Lead.company).like(pattern),
                )
            )
        if title:
            statement = statement.where(func.lower(Lead.title).like(f"%{title.lower()}%"))
        if company:
            statement = statement.where(func.lower(Lead.company).like(f"%{company.lower()}%"))
        if profile:
            statement = statement.where(Lead.profile == profile)
        statement = statement.order_by(Lead.scraped_at.desc()).limit(limit).offset(offset)
        return list(self.session.scalars(statement).all())

    def soft_delete_lead(self, lead_id: str) -> Lead:
        lead = self.session.get(Lead, lead_id)
        if not lead:
            raise ValueError(f"lead {lead_id} not found")
        if lead.deleted_at is None:
            lead.deleted_at = datetime.now(UTC)
            self.session.commit()
            self.session.refresh(lead)
        return lead

    def lead_stats(self) -> dict[str, int]:
        active = Lead.deleted_at.is_(None)
        return {
            "total": self.session.scalar(select(func.count()).select_from(Lead).where(active)) or 0,
            "with_email": self.session.scalar(
                select(func.count()).select_from(Lead).where(and_(active, Lead.email != ""))
            )
            or 0,
            "deleted": self.session.scalar(
                select(func.count()).select_from(Lead).where(Lead.deleted_at.is_not(None))
            )
            or 0,
        }

    # run records

    def create_run_record(
        self,
        *,
        operation: str,
        filters: dict[str, Any],
        max_items: int | None = None,
        start_page: int = 1,
        process_id: int | None = None,
    ) -> RunRecord:
        now = datetime.now(UTC)
        run = RunRecord(
            operation=operation,
            status="in_progress",
            filters_json=filters,
            max_items=max_items,
            start_page=start_page,
            current_page=start_page,
            process_id=process_id,
            last_activity_at=now,
        )
        self.session.add(run)
        self.session.commit()
        self.session.refresh(run)
        return run

    def get_run_record(self, run_id: int) -> RunRecord | None:
        return self.session.get(RunRecord, run_id)

    def list_run_records(self, *, operation: str | None = None, limit: int = 50) -> list[RunRecord]:
        statement = select(RunRecord)
        if operation:
            statement = statement.where(RunRecord.operation == operation)
        statement = statement.order_by(RunRecord.id.desc()).limit(limit)
        return list(self.session.scalars(statement).all())

    def in_progress_run_records(self, operation: str | None = None) -> list[RunRecord]:
        statement = select(RunRecord).where(RunRecord.status == "in_progress")
        if operation:
            statement = statement.where(RunRecord.operation == operation)
        return list(self.session.scalars(statement.order_by(RunRecord.id.asc())).all())

    def last_incomplete_run(self, operation: str) -> RunRecord | None:
        statement = (
            select(RunRecord)
            .where(and_(RunRecord.operation == operation, RunRecord.status.in_(("in_progress", "stopped"))))
            .order_by(RunRecord.id.desc())
            .limit(1)
        )
        return self.session.scalar(statement)

    def reopen_run_record(self, run_id: int, *, process_id: int | None) -> RunRecord:
        run = self.session.get(RunRecord, run_id)
        if not run:
            raise ValueError(f"run {run_id} not found")
        run.status = "in_progress"
        run.process_id = process_id
        run.error_message = ""
        run.completed_at = None
        run.last_activity_at = datetime.now(UTC)
        self.session.commit()
        self.session.refresh(run)
        return run

    def checkpoint_run(
        self,
        run_id: int,
        *,
        processed: int = 0,
        added: int = 0,
        cursor: str | None = None,
        current_page: int | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "items_processed": RunRecord.items_processed + processed,
            "items_added": RunRecord.items_added + added,
            "last_activity_at": datetime.now(UTC),
        }
        if cursor is not None:
            values["last_cursor"] = cursor
        if current_page is not None:
            values["current_page"] = current_page
        self.session.execute(update(RunRecord).where(RunRecord.id == run_id).values(**values))
        self.session.commit()

    def finalize_run(self, run_id: int, *, status: str, error_message: str = "") -> bool:
        result = self.session.execute(
            update(RunRecord)
            .where(and_(RunRecord.id == run_id, RunRecord.status == "in_progress"))
            .values(
                status=status,
                error_message=error_message,
                completed_at=datetime.now(UTC),
                last_activity_at=datetime.now(UTC),
            )
        )
        self.session.commit()
        return result.rowcount == 1

    # label mappings

    def get_label_mapping(self, label: str) -> LabelMapping | None:
        return self.session.get(LabelMapping, label)

    def label_mappings_for_key(self, key: str) -> list[LabelMapping]:
        statement = select(LabelMapping).where(LabelMapping.key == key).order_by(LabelMapping.confidence.desc())
        return list(self.session.scalars(statement).all())

    def list_label_mappings(self) -> list[LabelMapping]:
        statement = select(LabelMapping).order_by(LabelMapping.last_seen_at.desc())
        return list(self.session.scalars(statement).all())

    def upsert_label_mapping(
        self,
        *,
        label: str,
        key: str,
        confidence: float,
        locator: str | None = None,
        field_type: str | None = None,
        input_strategy: str | None = None,
    ) -> LabelMapping:
        now = datetime.now(UTC)
        statement = sqlite_insert(LabelMapping).values(
            label=label,
            key=key,
            confidence=confidence,
            locator=locator or "",
            field_type=field_type or "",
            input_strategy=input_strategy or "",
            last_seen_at=now,
            created_at=now,
            updated_at=now,
        )
        refreshed: dict[str, Any] = {
            "key": statement.excluded["key"],
            "confidence": statement.excluded["confidence"],
            "last_seen_at": now,
            "updated_at": now,
        }
        if locator is not None:
            refreshed["locator"] = statement.excluded["locator"]
        if field_type is not None:
            refreshed["field_type"] = statement.excluded["field_type"]
        if input_strategy is not None:
            refreshed["input_strategy"] = statement.excluded["input_strategy"]
        self.session.execute(statement.on_conflict_do_update(index_elements=["label"], set_=refreshed))
        self.session.commit()
        mapping = self.session.get(LabelMapping, label)
        self.session.refresh(mapping)
        return mapping

    def increment_label_success(self, label: str, locator: str) -> bool:
        now = datetime.now(UTC)
        result = self.session.execute(
            update(LabelMapping)
            .where(LabelMapping.label == label)
            .values(
                success_count=LabelMapping.success_count + 1,
                locator=locator,
                last_seen_at=now,
                updated_at=now,
            )
        )
        self.session.commit()
        return result.rowcount == 1

    def increment_label_failure(self, label: str) -> bool:
        result = self.session.execute(
            update(LabelMapping)
            .where(LabelMapping.label == label)
            .values(failure_count=LabelMapping.failure_count + 1, updated_at=datetime.now(UTC))
        )
        self.session.commit()
        return result.rowcount == 1

    def clear_label_mappings(self) -> int:
        result = self.session.execute(delete(LabelMapping))
        self.session.commit()
        return result.rowcount

    # rejection patterns and the weight ledger

    def upsert_rejection_pattern(
        self,
        *,
        pattern_type: str,
        pattern_value: str,
        weight_adjustment: float = 0.0,
        profile_category: str | None = None,
    ) -> RejectionPattern:
        now = datetime.now(UTC)
        statement = sqlite_insert(RejectionPattern).values(
            pattern_type=pattern_type,
            pattern_value=pattern_value,
            count=1,
            weight_adjustment=weight_adjustment,
            profile_category=profile_category,
            last_seen_at=now,
            created_at=now,
            updated_at=now,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["pattern_type", "pattern_value"],
            set_={
                "count": RejectionPattern.count + 1,
                "weight_adjustment": statement.excluded["weight_adjustment"],
                "profile_category": statement.excluded["profile_category"],
                "last_seen_at": now,
                "updated_at": now,
            },
        )
        self.session.execute(statement)
        self.session.commit()
        pattern = self.session.scalar(
            select(RejectionPattern).where(
                and_(
                    RejectionPattern.pattern_type == pattern_type,
                    RejectionPattern.pattern_value == pattern_value,
                )
            )
        )
        self.session.refresh(pattern)
        return pattern

    def list_rejection_patterns(self, pattern_type: str | None = None) -> list[RejectionPattern]:
        statement = select(RejectionPattern)
        if pattern_type:
            statement = statement.where(RejectionPattern.pattern_type == pattern_type)
        statement = statement.order_by(RejectionPattern.count.desc(), RejectionPattern.last_seen_at.desc())
        return list(self.session.scalars(statement).all())

    def clear_rejection_patterns(self) -> int:
        result = self.session.execute(delete(RejectionPattern))
        self.session.commit()
        return result.rowcount

    def save_weight_adjustment(
        self,
        *,
        search_profile: str,
        profile_category: str,
        old_weight: float,
        new_weight: float,
        reason: str,
        rejection_id: str | None = None,
    ) -> WeightAdjustment:
        entry = WeightAdjustment(
            search_profile=search_profile,
            profile_category=profile_category,
            old_weight=old_weight,
            new_weight=new_weight,
            reason=reason,
            rejection_id=rejection_id,
        )
        self.session.add(entry)
        self.session.commit()
        self.session.refresh(entry)
        return entry

    def current_weight_adjustments(self, search_profile: str | None = None) -> dict[str, float]:
        statement = select(
            WeightAdjustment.profile_category,
            func.sum(WeightAdjustment.new_weight - WeightAdjustment.old_weight),
        )
        if search_profile:
            statement = statement.where(WeightAdjustment.search_profile == search_profile)
        statement = statement.group_by(WeightAdjustment.profile_category)
        return {category: float(total or 0.0) for category, total in self.session.execute(statement).all()}

    def weight_adjustment_history(self, limit: int = 20) -> list[WeightAdjustment]:
        statement = select(WeightAdjustment).order_by(WeightAdjustment.id.desc()).limit(limit)
        return list(self.session.scalars(statement).all())

    def count_weight_adjustments(self) -> int:
        return self.session.scalar(select(func.count()).select_from(WeightAdjustment)) or 0

    def reset_weight_adjustments(self) -> int:
        result = self.session.execute(delete(WeightAdjustment))
        self.session.commit()
        return result.rowcount

    # preferences

    def get_preference(self, key: str) -> str | None:
        row = self.session.get(ApplicationPreference, key)
        return row.value if row else None

    def all_preferences(self) -> dict[str, str]:
        rows = self.session.scalars(select(ApplicationPreference).order_by(ApplicationPreference.key)).all()
        return {row.key: row.value for row in rows}

    def set_preference(self, key: str, value: str) -> None:
        now = datetime.now(UTC)
        statement = sqlite_insert(ApplicationPreference).values(key=key, value=value, created_at=now, updated_at=now)
        statement = statement.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": statement.excluded["value"], "updated_at": now},
        )
        self.session.execute(statement)
        self.session.commit()

    def delete_preference(self, key: str) -> bool:
        result = self.session.execute(delete(ApplicationPreference).where(ApplicationPreference.key == key))
        self.session.commit()
        return result.rowcount == 1

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from kestrel.db.base import Base, TimestampMixin, utcnow


class Job(TimestampMixin, Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    url: Mapped[str] = mapped_column(String(800), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    company: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    easy_apply: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rank: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="queued", nullable=False, index=True)
    applied_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fit_reasons_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    must_haves_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    blockers_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    category_scores_json: Mapped[dict[str, float]] = mapped_column(JSON, default=dict, nullable=False)
    missing_keywords_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    profile: Mapped[str] = mapped_column(String(80), default="", nullable=False)
    posted_date: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    status_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    curated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class JobStep(TimestampMixin, Base):
    __tablename__ = "job_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), index=True)
    step: Mapped[str] = mapped_column(String(80), nullable=False)
    ok: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    log: Mapped[str] = mapped_column(Text, default="", nullable=False)
    screenshot_path: Mapped[str] = mapped_column(String(800), default="", nullable=False)


class Lead(TimestampMixin, Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    company: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    about: Mapped[str] = mapped_column(Text, default="", nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    location: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    profile_url: Mapped[str] = mapped_column(String(800), unique=True, nullable=False)
    linkedin_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    profile: Mapped[str] = mapped_column(String(80), default="", nullable=False)
    scraped_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RunRecord(TimestampMixin, Base):
    __tablename__ = "run_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    operation: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="in_progress", nullable=False, index=True)
    items_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_cursor: Mapped[str | None] = mapped_column(String(800), nullable=True)
    filters_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    max_items: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_page: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_page: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    process_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LabelMapping(TimestampMixin, Base):
    __tablename__ = "label_mappings"

    label: Mapped[str] = mapped_column(String(500), primary_key=True)
    key: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    locator: Mapped[str] = mapped_column(String(800), default="", nullable=False)
    confidence: Mapped[float] = mapped_column(Float, default=0.8, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    field_type: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    input_strategy: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class RejectionPattern(TimestampMixin, Base):
    __tablename__ = "rejection_patterns"
    __table_args__ = (UniqueConstraint("pattern_type", "pattern_value", name="uq_rejection_pattern"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pattern_type: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    pattern_value: Mapped[str] = mapped_column(String(255), nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    weight_adjustment: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    profile_category: Mapped[str | None] = mapped_column(String(80), nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class WeightAdjustment(TimestampMixin, Base):
    __tablename__ = "weight_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    search_profile: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    profile_category: Mapped[str] = mapped_column(String(80), nullable=False)
    old_weight: Mapped[float] = mapped_column(Float, nullable=False)
    new_weight: Mapped[float] = mapped_column(Float, nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    rejection_id: Mapped[str | None] = mapped_column(String(32), nullable=True)


class ApplicationPreference(TimestampMixin, Base):
    __tablename__ = "application_preferences"

    key: Mapped[str] = mapped_column(String(120), primary_key=True)
    value: Mapped[str] = mapped_column(Text, default="", nullable=False)

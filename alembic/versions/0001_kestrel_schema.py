"""Jobs, leads, run records and learning stores

Revision ID: 0001_kestrel_schema
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_kestrel_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("url", sa.String(800), nullable=False, unique=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("company", sa.String(255), nullable=False),
        sa.Column("easy_apply", sa.Boolean(), nullable=False),
        sa.Column("rank", sa.Float(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("applied_method", sa.String(20), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("rejection_processed", sa.Boolean(), nullable=False),
        sa.Column("fit_reasons_json", sa.JSON(), nullable=False),
        sa.Column("must_haves_json", sa.JSON(), nullable=False),
        sa.Column("blockers_json", sa.JSON(), nullable=False),
        sa.Column("category_scores_json", sa.JSON(), nullable=False),
        sa.Column("missing_keywords_json", sa.JSON(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("profile", sa.String(80), nullable=False),
        sa.Column("posted_date", sa.String(40), nullable=False),
        sa.Column("status_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("curated", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_jobs_status", "jobs", ["status"])

    op.create_table(
        "job_steps",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_id", sa.String(32), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("step", sa.String(80), nullable=False),
        sa.Column("ok", sa.Boolean(), nullable=False),
        sa.Column("log", sa.Text(), nullable=False),
        sa.Column("screenshot_path", sa.String(800), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_job_steps_job_id", "job_steps", ["job_id"])

    op.create_table(
        "leads",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("company", sa.String(255), nullable=False),
        sa.Column("about", sa.Text(), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("location", sa.String(255), nullable=False),
        sa.Column("profile_url", sa.String(800), nullable=False, unique=True),
        sa.Column("linkedin_id", sa.String(120), nullable=True),
        sa.Column("profile", sa.String(80), nullable=False),
        sa.Column("scraped_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_leads_linkedin_id", "leads", ["linkedin_id"])

    op.create_table(
        "run_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("operation", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("items_processed", sa.Integer(), nullable=False),
        sa.Column("items_added", sa.Integer(), nullable=False),
        sa.Column("last_cursor", sa.String(800), nullable=True),
        sa.Column("filters_json", sa.JSON(), nullable=False),
        sa.Column("max_items", sa.Integer(), nullable=True),
        sa.Column("start_page", sa.Integer(), nullable=False),
        sa.Column("current_page", sa.Integer(), nullable=False),
        sa.Column("process_id", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_run_records_operation", "run_records", ["operation"])
    op.create_index("ix_run_records_status", "run_records", ["status"])

    op.create_table(
        "label_mappings",
        sa.Column("label", sa.String(500), primary_key=True),
        sa.Column("key", sa.String(80), nullable=False),
        sa.Column("locator", sa.String(800), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False),
        sa.Column("failure_count", sa.Integer(), nullable=False),
        sa.Column("field_type", sa.String(40), nullable=False),
        sa.Column("input_strategy", sa.String(40), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_label_mappings_key", "label_mappings", ["key"])

    op.create_table(
        "rejection_patterns",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pattern_type", sa.String(40), nullable=False),
        sa.Column("pattern_value", sa.String(255), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("weight_adjustment", sa.Float(), nullable=False),
        sa.Column("profile_category", sa.String(80), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("pattern_type", "pattern_value", name="uq_rejection_pattern"),
    )
    op.create_index("ix_rejection_patterns_pattern_type", "rejection_patterns", ["pattern_type"])

    op.create_table(
        "weight_adjustments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("search_profile", sa.String(80), nullable=False),
        sa.Column("profile_category", sa.String(80), nullable=False),
        sa.Column("old_weight", sa.Float(), nullable=False),
        sa.Column("new_weight", sa.Float(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("rejection_id", sa.String(32), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_weight_adjustments_search_profile", "weight_adjustments", ["search_profile"])

    op.create_table(
        "application_preferences",
        sa.Column("key", sa.String(120), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        *_timestamps(),
    )


def downgrade() -> None:
    for table in (
        "application_preferences",
        "weight_adjustments",
        "rejection_patterns",
        "label_mappings",
        "run_records",
        "leads",
        "job_steps",
        "jobs",
    ):
        op.drop_table(table)

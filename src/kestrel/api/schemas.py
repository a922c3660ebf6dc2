from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from kestrel.types import AppliedMethod, FitAssessment, JobStatus, OperationName, OrchestratorState


class AutomationStartRequest(BaseModel):
    operation: OperationName
    config: dict[str, Any] = Field(default_factory=dict)
    resume_run_id: int | None = None


class AutomationStatusResponse(BaseModel):
    status: OrchestratorState
    pid: int | None = None
    operation: str | None = None
    run_id: int | None = None
    error: str | None = None
    started_at: str | None = None
    last_result: dict[str, Any] | None = None


class JobResponse(BaseModel):
    id: str
    url: str
    title: str
    company: str
    easy_apply: bool
    rank: float | None
    status: JobStatus
    applied_method: AppliedMethod | None
    rejection_reason: str | None
    fit: FitAssessment
    description: str
    profile: str
    posted_date: str
    curated: bool
    created_at: str | None
    status_updated_at: str | None


class JobStatusRequest(BaseModel):
    status: JobStatus
    applied_method: AppliedMethod | None = None
    rejection_reason: str | None = None


class JobStepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: str
    step: str
    ok: bool
    log: str
    screenshot_path: str
    created_at: datetime | None = None


class LeadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    title: str
    company: str
    about: str
    email: str
    location: str
    profile_url: str
    linkedin_id: str | None
    profile: str
    scraped_at: datetime | None = None
    deleted_at: datetime | None = None


class RunRecordResponse(BaseModel):
    id: int
    operation: str
    status: str
    items_processed: int
    items_added: int
    last_cursor: str | None
    filters: dict[str, Any]
    max_items: int | None
    start_page: int
    current_page: int
    process_id: int | None
    error_message: str
    created_at: str | None
    last_activity_at: str | None
    completed_at: str | None


class RejectionPatternResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    pattern_type: str
    pattern_value: str
    count: int
    weight_adjustment: float
    profile_category: str | None
    last_seen_at: datetime | None = None


class WeightAdjustmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    search_profile: str
    profile_category: str
    old_weight: float
    new_weight: float
    reason: str
    rejection_id: str | None
    created_at: datetime | None = None


class LearningResetRequest(BaseModel):
    include_patterns: bool = False


class LabelMappingResponse(BaseModel):
    label: str
    key: str
    locator: str
    base_confidence: float
    confidence: float
    success_count: int
    failure_count: int
    field_type: str
    input_strategy: str
    last_seen_at: str | None


class PreferenceRequest(BaseModel):
    value: str


class MapLabelsRequest(BaseModel):
    labels: list[str] = Field(min_length=1)


class LabelFeedbackRequest(BaseModel):
    label: str
    success: bool
    locator: str = ""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

JobStatus = Literal["queued", "applied", "interview", "rejected", "skipped", "reported"]
AppliedMethod = Literal["manual", "automatic"]
RunStatus = Literal["in_progress", "completed", "stopped"]
OrchestratorState = Literal["idle", "running", "stopping", "error"]
OperationName = Literal["search", "apply", "lead_scrape"]
ApplyOutcome = Literal["applied", "skipped", "failed"]
MappingSource = Literal["heuristic", "cache", "llm"]
DatePosted = Literal["day", "week", "month"]

JOB_STATUSES: tuple[str, ...] = ("queued", "applied", "interview", "rejected", "skipped", "reported")
SUBMITTED_STATUSES: tuple[str, ...] = ("applied", "interview", "rejected")


class FitAssessment(BaseModel):
    reasons: list[str] = Field(default_factory=list)
    must_haves: list[str] = Field(default_factory=list)
    blockers: list[str] = Field(default_factory=list)
    category_scores: dict[str, float] = Field(default_factory=dict)
    missing_keywords: list[str] = Field(default_factory=list)


class JobPosting(BaseModel):
    """Raw posting as produced by a scraper; validated before it reaches the store."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str
    company: str
    url: str
    easy_apply: bool = Field(default=False, validation_alias=AliasChoices("easy_apply", "quick_apply", "quickApply"))
    posted_date: str = Field(default="", validation_alias=AliasChoices("posted_date", "postedDate"))
    description: str = ""

    @field_validator("title", "company", "url")
    @classmethod
    def require_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("url")
    @classmethod
    def require_http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must be http(s)")
        return value


class RankResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fit_score: float = Field(default=0.0, validation_alias=AliasChoices("fit_score", "fitScore"))
    category_scores: dict[str, float] = Field(
        default_factory=dict, validation_alias=AliasChoices("category_scores", "categoryScores")
    )
    reasons: list[str] = Field(default_factory=list)
    must_haves: list[str] = Field(default_factory=list, validation_alias=AliasChoices("must_haves", "mustHaves"))
    blockers: list[str] = Field(default_factory=list)
    missing_keywords: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("missing_keywords", "missingKeywords")
    )

    @field_validator("fit_score")
    @classmethod
    def clamp_fit_score(cls, value: float) -> float:
        return max(0.0, min(100.0, float(value)))

    def to_fit(self) -> FitAssessment:
        return FitAssessment(
            reasons=self.reasons,
            must_haves=self.must_haves,
            blockers=self.blockers,
            category_scores=self.category_scores,
            missing_keywords=self.missing_keywords,
        )


class JobCandidate(BaseModel):
    url: str
    title: str
    company: str
    easy_apply: bool = False
    rank: float | None = None
    fit: FitAssessment = Field(default_factory=FitAssessment)
    description: str = ""
    profile: str = ""
    posted_date: str = ""

    @classmethod
    def from_ranked(cls, posting: JobPosting, result: RankResult, profile: str) -> JobCandidate:
        return cls(
            url=posting.url,
            title=posting.title,
            company=posting.company,
            easy_apply=posting.easy_apply,
            rank=result.fit_score,
            fit=result.to_fit(),
            description=posting.description,
            profile=profile,
            posted_date=posting.posted_date,
        )


class SkipDetail(BaseModel):
    title: str
    company: str
    reason: str
    current_status: str


class IngestResult(BaseModel):
    inserted: int = 0
    requeued: int = 0
    skipped: int = 0
    skipped_details: list[SkipDetail] = Field(default_factory=list)


class LeadProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    profile_url: str = Field(validation_alias=AliasChoices("profile_url", "profileUrl"))
    title: str = ""
    company: str = ""
    about: str = ""
    email: str = ""
    location: str = ""
    linkedin_id: str | None = Field(default=None, validation_alias=AliasChoices("linkedin_id", "linkedinId"))

    @field_validator("name", "profile_url")
    @classmethod
    def require_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class PatternSignal(BaseModel):
    type: str
    value: str
    confidence: float = 0.8

    @field_validator("confidence")
    @classmethod
    def validate_confidence(cls, value: float) -> float:
        if value < 0 or value > 1:
            raise ValueError("confidence must be between 0 and 1")
        return value


class SuggestedAdjustment(BaseModel):
    category: str
    adjustment: float
    reason: str = ""


class RejectionAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    patterns: list[PatternSignal] = Field(default_factory=list)
    suggested_adjustments: list[SuggestedAdjustment] = Field(
        default_factory=list,
        validation_alias=AliasChoices("suggested_adjustments", "suggestedAdjustments"),
    )


class FieldMapping(BaseModel):
    label: str
    key: str
    confidence: float
    source: MappingSource


class SearchOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profile: str | None = None
    keywords: str | None = None
    location: str | None = None
    remote: bool = False
    date_posted: DatePosted | None = None
    min_score: float | None = Field(default=None, ge=0, le=100)
    max_pages: int = Field(default=1, ge=1)
    start_page: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def require_profile_or_keywords(self) -> SearchOptions:
        if not (self.profile or self.keywords):
            raise ValueError("either profile or keywords is required")
        return self


class LeadScrapeOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profile: str = "default"
    titles: list[str] = Field(default_factory=list)
    max_profiles: int = Field(default=50, ge=1)
    start_page: int = Field(default=1, ge=1)


class ApplyOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    easy: bool = False
    external: bool = False
    job_id: str | None = None
    limit: int | None = Field(default=None, ge=1)
    dry_run: bool = False

    @model_validator(mode="after")
    def require_target(self) -> ApplyOptions:
        if not (self.easy or self.external or self.job_id):
            raise ValueError("one of easy, external or job_id is required")
        return self


class SearchPage(BaseModel):
    postings: list[dict[str, Any]] = Field(default_factory=list)
    has_next: bool = False

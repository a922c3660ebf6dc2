from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any, Protocol

from sqlalchemy.orm import Session

from kestrel.db.models import Job
from kestrel.types import (
    ApplyOutcome,
    FitAssessment,
    JobPosting,
    LeadScrapeOptions,
    RankResult,
    RejectionAnalysis,
    SearchOptions,
    SearchPage,
)


class JobScraper(Protocol):
    def fetch_page(self, options: SearchOptions, page: int) -> SearchPage: ...


class LeadScraper(Protocol):
    def iter_profiles(self, options: LeadScrapeOptions, *, after: str | None = None) -> Iterator[dict[str, Any]]: ...


class Ranker(Protocol):
    def rank_job(self, posting: JobPosting, *, profile: str, weights: dict[str, float]) -> RankResult: ...

    def analyze_rejection(
        self, *, reason: str, title: str, company: str, fit: FitAssessment
    ) -> RejectionAnalysis: ...


class Applier(Protocol):
    def apply(self, job: Job, *, session: Session, log: Callable[[str], None]) -> ApplyOutcome: ...

from __future__ import annotations

import os
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="kestrel-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'kestrel.db'}"
os.environ["DATA_DIR"] = str(_TEST_ROOT)
os.environ["FEED_DIR"] = str(_TEST_ROOT / "feeds")
os.environ["APP_ENV"] = "test"
os.environ["OPENAI_API_KEY"] = ""
os.environ["LOCAL_LLM_ENABLED"] = "false"
os.environ["FETCH_MISSING_DESCRIPTIONS"] = "false"

import pytest  # noqa: E402

from kestrel.core import runtime  # noqa: E402
from kestrel.core.rejections import keyword_analysis  # noqa: E402
from kestrel.db.base import Base  # noqa: E402
from kestrel.db.session import SessionLocal, engine  # noqa: E402
from kestrel.types import (  # noqa: E402
    FitAssessment,
    JobPosting,
    LeadScrapeOptions,
    RankResult,
    RejectionAnalysis,
    SearchOptions,
    SearchPage,
)


@pytest.fixture(autouse=True)
def reset_db() -> Iterator[None]:
    runtime.reset_runtime()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    runtime.reset_runtime()


@pytest.fixture()
def db():
    with SessionLocal() as session:
        yield session


def make_posting(index: int, **overrides: Any) -> dict[str, Any]:
    payload = {
        "title": f"Senior Backend Engineer {index}",
        "company": f"Company {index}",
        "url": f"https://jobs.example.com/view/{index}",
        "easy_apply": index % 2 == 0,
        "description": "C# .NET Azure microservices, Service Bus and Kubernetes.",
        "posted_date": "2026-10-01",
    }
    payload.update(overrides)
    return payload


def make_profile(index: int, **overrides: Any) -> dict[str, Any]:
    payload = {
        "name": f"Recruiter {index}",
        "title": "Technical Recruiter",
        "company": f"Company {index}",
        "profile_url": f"https://www.linkedin.com/in/recruiter-{index}/",
        "email": f"recruiter{index}@example.com",
    }
    payload.update(overrides)
    return payload


class FakeJobScraper:
    def __init__(self, pages: list[list[dict[str, Any]]]):
        self.pages = pages
        self.requested: list[int] = []

    def fetch_page(self, options: SearchOptions, page: int) -> SearchPage:
        self.requested.append(page)
        if page > len(self.pages):
            return SearchPage(postings=[], has_next=False)
        return SearchPage(postings=self.pages[page - 1], has_next=page < len(self.pages))


class FakeLeadScraper:
    def __init__(self, profiles: list[dict[str, Any]]):
        self.profiles = profiles
        self.cursors: list[str | None] = []

    def iter_profiles(self, options: LeadScrapeOptions, *, after: str | None = None) -> Iterator[dict[str, Any]]:
        self.cursors.append(after)
        skipping = after is not None
        for profile in self.profiles:
            if skipping:
                skipping = profile["profile_url"].rstrip("/") != after
                continue
            yield profile


class FakeRanker:
    """Scores every posting with ``score``; ``on_rank`` runs inside each call."""

    def __init__(self, score: float = 85.0, *, on_rank: Callable[[JobPosting], None] | None = None):
        self.score = score
        self.on_rank = on_rank
        self.ranked: list[str] = []
        self.weights_seen: list[dict[str, float]] = []

    def rank_job(self, posting: JobPosting, *, profile: str, weights: dict[str, float]) -> RankResult:
        self.ranked.append(posting.url)
        self.weights_seen.append(dict(weights))
        if self.on_rank is not None:
            self.on_rank(posting)
        return RankResult(
            fit_score=self.score,
            category_scores={"coreAzure": 90.0},
            reasons=["Azure match"],
            must_haves=["azure"],
        )

    def analyze_rejection(self, *, reason: str, title: str, company: str, fit: FitAssessment) -> RejectionAnalysis:
        return keyword_analysis(reason)


@pytest.fixture()
def job_scraper_factory() -> Callable[[list[list[dict[str, Any]]]], FakeJobScraper]:
    return FakeJobScraper


@pytest.fixture()
def lead_scraper_factory() -> Callable[[list[dict[str, Any]]], FakeLeadScraper]:
    return FakeLeadScraper


@pytest.fixture()
def ranker_factory() -> Callable[..., FakeRanker]:
    return FakeRanker


@pytest.fixture()
def posting() -> Callable[..., dict[str, Any]]:
    return make_posting


@pytest.fixture()
def lead_profile() -> Callable[..., dict[str, Any]]:
    return make_profile

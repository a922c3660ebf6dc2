from __future__ import annotations

from kestrel.config import Settings
from kestrel.core.profiles import base_weights
from kestrel.llm.router import LLMRouter
from kestrel.types import FitAssessment, JobPosting


def _offline_router() -> LLMRouter:
    return LLMRouter(settings=Settings(openai_api_key="", local_llm_enabled=False))


def test_llm_router_falls_back_to_heuristic_when_no_provider_available() -> None:
    posting = JobPosting(
        title="Senior .NET Engineer",
        company="Contoso",
        url="https://example.com/job",
        description="C# .NET Azure Functions, Service Bus, Kubernetes. Security clearance required.",
    )

    result = _offline_router().rank_job(posting, profile="core", weights=base_weights("core"))

    assert 0 <= result.fit_score <= 100
    assert result.fit_score > 0
    assert result.category_scores["coreAzure"] > 0
    assert "security clearance" in result.blockers


def test_heuristic_rank_contract_shape() -> None:
    posting = JobPosting(title="Data Analyst", company="Acme", url="https://example.com/2", description="SQL dashboards")

    result = _offline_router().rank_job(posting, profile="core", weights=base_weights("core"))

    assert set(result.to_fit().model_dump()) == {
        "reasons",
        "must_haves",
        "blockers",
        "category_scores",
        "missing_keywords",
    }
    assert result.blockers == []


def test_rejection_analysis_falls_back_to_keywords() -> None:
    analysis = _offline_router().analyze_rejection(
        reason="We went with someone else; requires 5+ years AWS and you are too junior",
        title="Cloud Engineer",
        company="Acme",
        fit=FitAssessment(),
    )

    assert ("technology", "AWS") in {(pattern.type, pattern.value) for pattern in analysis.patterns}
    assert [(item.category, item.adjustment) for item in analysis.suggested_adjustments] == [("seniority", 2)]


def test_label_mapping_without_provider_maps_nothing() -> None:
    assert _offline_router().map_labels(["Preferred start date"], ["email", "phone"]) == {}

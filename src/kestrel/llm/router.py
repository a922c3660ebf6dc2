from __future__ import annotations

import json
import logging
import re
from typing import Any

from kestrel.config import Settings, get_settings
from kestrel.core.profiles import CATEGORIES
from kestrel.core.rejections import keyword_analysis, merge_with_keywords
from kestrel.llm.prompts import LABEL_MAPPING_PROMPT, RANK_JOB_PROMPT, REJECTION_ANALYSIS_PROMPT
from kestrel.llm.providers import ProviderPool
from kestrel.types import FitAssessment, JobPosting, RankResult, RejectionAnalysis

logger = logging.getLogger(__name__)

BLOCKER_PHRASES = (
    "security clearance",
    "on-site only",
    "onsite only",
    "must be located",
    "no remote",
    "us citizens only",
)


class LLMRouter:
    """Ranker backed by OpenAI-compatible providers, with keyword heuristics as fallback."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.pool = ProviderPool(self.settings)

    def rank_job(self, posting: JobPosting, *, profile: str, weights: dict[str, float]) -> RankResult:
        prompt = RANK_JOB_PROMPT.format(
            profile=profile,
            weights_json=json.dumps({key: round(value, 2) for key, value in weights.items()}, indent=2),
            candidate_summary=self.settings.candidate_profile_summary or "(not provided)",
            title=posting.title,
            company=posting.company,
            description=posting.description[:12000],
        )
        data = self._call_json(task="rank", prompt=prompt)
        if not data:
            return heuristic_rank(posting, weights)

        try:
            return RankResult.model_validate(data)
        except Exception:
            logger.warning("Invalid ranking output for %s; falling back to heuristic", posting.url)
            return heuristic_rank(posting, weights)

    def analyze_rejection(self, *, reason: str, title: str, company: str, fit: FitAssessment) -> RejectionAnalysis:
        prompt = REJECTION_ANALYSIS_PROMPT.format(
            reason=reason,
            title=title,
            company=company,
            category_scores=json.dumps(fit.category_scores) if fit.category_scores else "N/A",
            fit_reasons="; ".join(fit.reasons) or "N/A",
            categories=", ".join(CATEGORIES),
        )
        data = self._call_json(task="rejection", prompt=prompt)
        if not data:
            return keyword_analysis(reason)

        try:
            analysis = RejectionAnalysis.model_validate(data)
        except Exception:
            logger.warning("Invalid rejection analysis output; using keyword analysis")
            return keyword_analysis(reason)
        return merge_with_keywords(analysis, reason)

    def map_labels(self, labels: list[str], keys: list[str]) -> dict[str, str]:
        if not labels:
            return {}
        prompt = LABEL_MAPPING_PROMPT.format(
            keys=", ".join(keys),
            labels="\n".join(f"{index}. {label}" for index, label in enumerate(labels, start=1)),
        )
        data = self._call_json(task="mapping", prompt=prompt, list_key="mappings")
        mapped: dict[str, str] = {}
        for item in data.get("mappings", []):
            if not isinstance(item, dict):
                continue
            label = str(item.get("label", ""))
            key = str(item.get("key", "unknown"))
            if label in labels:
                mapped[label] = key if key in keys else "unknown"
        return mapped

    def _provider_order(self, task: str) -> list[str]:
        primary = {
            "rank": self.settings.llm_router_rank_provider,
            "rejection": self.settings.llm_router_rejection_provider,
            "mapping": self.settings.llm_router_mapping_provider,
        }.get(task, self.settings.llm_router_default)
        return [primary, "openai" if primary == "local" else "local"]

    def _call_json(self, *, task: str, prompt: str, list_key: str | None = None) -> dict[str, Any]:
        for name in self._provider_order(task):
            provider = self.pool.get(name)
            if provider is None:
                continue
            try:
                return provider.complete_json(model=self.pool.model_for(name, task), prompt=prompt, list_key=list_key)
            except Exception as exc:
                logger.warning("LLM JSON call failed provider=%s task=%s error=%s", name, task, exc)
        return {}


def _mentions(text: str, term: str) -> bool:
    return re.search(rf"(?<![\w#.]){re.escape(term.lower())}(?![\w#])", text) is not None


def heuristic_rank(posting: JobPosting, weights: dict[str, float]) -> RankResult:
    text = f"{posting.title}\n{posting.description}".lower()
    category_scores: dict[str, float] = {}
    reasons: list[str] = []
    must_haves: list[str] = []
    missing: list[str] = []

    for key, category in CATEGORIES.items():
        must_hits = [term for term in category.must_have if _mentions(text, term)]
        preferred_hits = [term for term in category.preferred if _mentions(text, term)]
        if category.must_have:
            score = 70 * len(must_hits) / len(category.must_have) + 30 * len(preferred_hits) / max(
                len(category.preferred), 1
            )
        else:
            score = 100 * len(preferred_hits) / max(len(category.preferred), 1)
        category_scores[key] = round(min(100.0, score * 2), 2)

        if weights.get(key, 0) > 0:
            must_haves.extend(term for term in must_hits if term not in must_haves)
            missing.extend(term for term in category.must_have if term not in must_hits and term not in missing)
            if must_hits or preferred_hits:
                reasons.append(f"{category.name}: {', '.join((must_hits + preferred_hits)[:4])}")

    total_weight = sum(weight for weight in weights.values() if weight > 0) or 1.0
    fit_score = sum(category_scores.get(key, 0.0) * weight for key, weight in weights.items() if weight > 0)
    blockers = [phrase for phrase in BLOCKER_PHRASES if phrase in text]

    return RankResult(
        fit_score=round(fit_score / total_weight, 2),
        category_scores=category_scores,
        reasons=reasons,
        must_haves=must_haves,
        blockers=blockers,
        missing_keywords=missing[:10],
    )

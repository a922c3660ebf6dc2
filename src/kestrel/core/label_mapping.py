from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy.orm import Session

from kestrel.db.models import LabelMapping
from kestrel.db.repositories import Repository
from kestrel.types import FieldMapping

logger = logging.getLogger(__name__)

SUCCESS_REWARD = 0.05
FAILURE_PENALTY = 0.10
MIN_CONFIDENCE = 0.5
MAX_CONFIDENCE = 1.0
CACHE_THRESHOLD = 0.7
LLM_CONFIDENCE = 0.8

CANONICAL_KEYS: tuple[str, ...] = (
    "full_name",
    "first_name",
    "last_name",
    "email",
    "phone",
    "city",
    "work_authorization",
    "requires_sponsorship",
    "years_dotnet",
    "years_azure",
    "linkedin_url",
    "salary_expectation",
    "us_timezone",
    "why_fit",
    "unknown",
)

HEURISTICS: tuple[tuple[re.Pattern[str], str, float], ...] = (
    (re.compile(r"^first\s*name", re.I), "first_name", 0.99),
    (re.compile(r"^last\s*name", re.I), "last_name", 0.99),
    (re.compile(r"full\s*name|legal\s*name|first\s*and\s*last", re.I), "full_name", 0.99),
    (re.compile(r"e-?mail(\s*address)?", re.I), "email", 0.99),
    (re.compile(r"phone|mobile|telephone", re.I), "phone", 0.99),
    (re.compile(r"city|location|where.*located", re.I), "city", 0.98),
    (re.compile(r"work\s*authorization|authorized\s*to\s*work|legal.*work", re.I), "work_authorization", 0.99),
    (re.compile(r"require.*sponsor|sponsorship|visa\s*sponsor", re.I), "requires_sponsorship", 0.99),
    (re.compile(r"(years?|experience).*\.?net\b", re.I), "years_dotnet", 0.95),
    (re.compile(r"(years?|experience).*azure", re.I), "years_azure", 0.95),
    (re.compile(r"linkedin(\s*profile|\s*url)?", re.I), "linkedin_url", 0.99),
    (re.compile(r"(comp|salary|pay).*expect", re.I), "salary_expectation", 0.95),
    (re.compile(r"time\s*zone|timezone", re.I), "us_timezone", 0.98),
    (re.compile(r"why.*fit|why.*interested|why.*apply|cover\s*letter", re.I), "why_fit", 0.95),
)


class LabelMapper(Protocol):
    def map_labels(self, labels: list[str], keys: list[str]) -> dict[str, str]: ...


def normalize_label(label: str) -> str:
    return " ".join(label.strip().lower().split())


def compute_confidence(base: float, success_count: int, failure_count: int) -> float:
    value = base * (1 + success_count * SUCCESS_REWARD) * (1 - failure_count * FAILURE_PENALTY)
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, value))


@dataclass(slots=True)
class ResolvedMapping:
    label: str
    key: str
    locator: str
    base_confidence: float
    success_count: int
    failure_count: int
    field_type: str
    input_strategy: str
    last_seen_at: datetime | None

    @property
    def confidence(self) -> float:
        return compute_confidence(self.base_confidence, self.success_count, self.failure_count)

    @classmethod
    def from_row(cls, row: LabelMapping) -> ResolvedMapping:
        return cls(
            label=row.label,
            key=row.key,
            locator=row.locator,
            base_confidence=row.confidence,
            success_count=row.success_count,
            failure_count=row.failure_count,
            field_type=row.field_type,
            input_strategy=row.input_strategy,
            last_seen_at=row.last_seen_at,
        )

    def as_dict(self) -> dict:
        return {
            "label": self.label,
            "key": self.key,
            "locator": self.locator,
            "base_confidence": self.base_confidence,
            "confidence": round(self.confidence, 4),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "field_type": self.field_type,
            "input_strategy": self.input_strategy,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
        }


class LabelMappingLearner:
    """Learned label -> answer key cache used while filling application forms.

    Stored confidence is the base value only. The effective confidence is
    derived from it and the success/failure counters whenever a row is read.
    """

    def __init__(self, session: Session, *, mapper: LabelMapper | None = None):
        self.repo = Repository(session)
        self.mapper = mapper

    def lookup(self, label: str) -> ResolvedMapping | None:
        row = self.repo.get_label_mapping(normalize_label(label))
        return ResolvedMapping.from_row(row) if row else None

    def candidates_for_key(self, key: str) -> list[ResolvedMapping]:
        mappings = [ResolvedMapping.from_row(row) for row in self.repo.label_mappings_for_key(key)]
        return sorted(mappings, key=lambda mapping: mapping.confidence, reverse=True)

    def remember(
        self,
        label: str,
        key: str,
        *,
        confidence: float,
        locator: str | None = None,
        field_type: str | None = None,
        input_strategy: str | None = None,
    ) -> ResolvedMapping:
        row = self.repo.upsert_label_mapping(
            label=normalize_label(label),
            key=key,
            confidence=confidence,
            locator=locator,
            field_type=field_type,
            input_strategy=input_strategy,
        )
        return ResolvedMapping.from_row(row)

    def record_success(self, label: str, locator: str) -> ResolvedMapping | None:
        normalized = normalize_label(label)
        if not self.repo.increment_label_success(normalized, locator):
            logger.debug("record_success for unknown label %r", normalized)
            return None
        return self.lookup(normalized)

    def record_failure(self, label: str) -> ResolvedMapping | None:
        normalized = normalize_label(label)
        if not self.repo.increment_label_failure(normalized):
            logger.debug("record_failure for unknown label %r", normalized)
            return None
        return self.lookup(normalized)

    def map_labels(self, labels: list[str]) -> list[FieldMapping]:
        """Resolve labels via heuristics, then the learned cache, then the LLM."""
        results: dict[str, FieldMapping] = {}
        unmapped: list[str] = []

        for label in labels:
            heuristic = match_heuristic(label)
            if heuristic is not None:
                key, confidence = heuristic
                self.remember(label, key, confidence=confidence)
                results[label] = FieldMapping(label=label, key=key, confidence=confidence, source="heuristic")
                continue

            cached = self.lookup(label)
            if cached and cached.confidence > CACHE_THRESHOLD:
                results[label] = FieldMapping(label=label, key=cached.key, confidence=cached.confidence, source="cache")
                continue

            unmapped.append(label)

        if unmapped:
            keys = [key for key in CANONICAL_KEYS if key != "unknown"]
            llm_keys = self.mapper.map_labels(unmapped, keys) if self.mapper else {}
            for label in unmapped:
                key = llm_keys.get(label, "unknown")
                if key == "unknown":
                    results[label] = FieldMapping(label=label, key="unknown", confidence=0.0, source="llm")
                    continue
                self.remember(label, key, confidence=LLM_CONFIDENCE)
                results[label] = FieldMapping(label=label, key=key, confidence=LLM_CONFIDENCE, source="llm")

        return [results[label] for label in labels]

    def all_mappings(self) -> list[ResolvedMapping]:
        return [ResolvedMapping.from_row(row) for row in self.repo.list_label_mappings()]

    def clear(self) -> int:
        return self.repo.clear_label_mappings()


def match_heuristic(label: str) -> tuple[str, float] | None:
    text = label.strip()
    for pattern, key, confidence in HEURISTICS:
        if pattern.search(text):
            return key, confidence
    return None

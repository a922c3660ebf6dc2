from __future__ import annotations

import re
from dataclasses import dataclass

from kestrel.db.repositories import Repository
from kestrel.types import JobPosting, PatternSignal, RejectionAnalysis, SuggestedAdjustment

KEYWORD_CONFIDENCE = 0.8
TECHNOLOGY_CONFIDENCE = 0.9
FILTER_MIN_COUNT = 2

REJECTION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "seniority": (
        "too junior",
        "not senior enough",
        "need more experience",
        "junior level",
        "not enough experience",
        "lack experience",
        "entry level",
        "mid level",
        "need senior",
        "require senior",
        "senior required",
        "overqualified",
        "too senior",
    ),
    "tech_stack": (
        "wrong stack",
        "different tech",
        "not familiar with",
        "no experience with",
        "different technology",
        "tech stack",
        "technology stack",
        "not our stack",
        "unfamiliar with",
        "no knowledge of",
        "different framework",
    ),
    "location": (
        "location",
        "not remote",
        "office required",
        "must be in",
        "relocation",
        "on-site",
        "onsite",
        "in office",
        "office work",
        "geographic",
        "time zone",
        "timezone",
    ),
    "compensation": (
        "salary",
        "compensation",
        "pay",
        "budget",
        "rate",
        "cost",
        "too expensive",
        "over budget",
        "salary range",
        "salary expectations",
    ),
    "company": (
        "company culture",
        "not a fit",
        "team fit",
        "cultural fit",
        "company values",
        "team dynamics",
        "work environment",
    ),
}

TECH_TERMS: dict[str, str] = {
    "python": "Python",
    "java": "Java",
    "javascript": "JavaScript",
    "typescript": "TypeScript",
    "react": "React",
    "angular": "Angular",
    "vue": "Vue",
    "node.js": "Node.js",
    "spring": "Spring",
    "django": "Django",
    "flask": "Flask",
    "ruby": "Ruby",
    "php": "PHP",
    "golang": "Go",
    "rust": "Rust",
    "kubernetes": "Kubernetes",
    "docker": "Docker",
    "aws": "AWS",
    "azure": "Azure",
    "gcp": "GCP",
    "mongodb": "MongoDB",
    "postgresql": "PostgreSQL",
    "mysql": "MySQL",
    "redis": "Redis",
    "elasticsearch": "Elasticsearch",
    "kafka": "Kafka",
    "rabbitmq": "RabbitMQ",
    "graphql": "GraphQL",
    "grpc": "gRPC",
    "c#": "C#",
    ".net": ".NET",
}


def _contains_term(text: str, term: str) -> bool:
    return re.search(rf"(?<![\w#.]){re.escape(term)}(?![\w#])", text) is not None


def analyze_rejection_keywords(reason: str) -> list[PatternSignal]:
    lowered = reason.lower()
    patterns: list[PatternSignal] = []
    for pattern_type, phrases in REJECTION_KEYWORDS.items():
        for phrase in phrases:
            if _contains_term(lowered, phrase):
                patterns.append(PatternSignal(type=pattern_type, value=phrase, confidence=KEYWORD_CONFIDENCE))
    for display in extract_technologies(reason):
        patterns.append(PatternSignal(type="technology", value=display, confidence=TECHNOLOGY_CONFIDENCE))
    return patterns


def extract_technologies(reason: str) -> list[str]:
    lowered = reason.lower()
    found: list[str] = []
    for term, display in TECH_TERMS.items():
        if _contains_term(lowered, term) and display not in found:
            found.append(display)
    return found


def convert_patterns_to_adjustments(patterns: list[PatternSignal]) -> list[SuggestedAdjustment]:
    adjustments: list[SuggestedAdjustment] = []
    for pattern in patterns:
        value = pattern.value.lower()
        if pattern.type == "seniority":
            if "junior" in value or "not senior" in value or "not enough experience" in value:
                adjustments.append(
                    SuggestedAdjustment(category="seniority", adjustment=2, reason="Too junior - prioritizing more senior jobs")
                )
            elif "senior" in value or "overqualified" in value:
                adjustments.append(
                    SuggestedAdjustment(category="seniority", adjustment=-2, reason="Too senior - considering mid-level jobs")
                )
        elif pattern.type == "tech_stack":
            adjustments.append(
                SuggestedAdjustment(
                    category="coreAzure",
                    adjustment=-2,
                    reason=f"Wrong tech stack - avoiding {pattern.value}",
                )
            )
        elif pattern.type == "location":
            if "not remote" in value or "office required" in value:
                adjustments.append(
                    SuggestedAdjustment(
                        category="performance",
                        adjustment=1,
                        reason="Location issue - prioritizing remote jobs",
                    )
                )
        elif pattern.type == "compensation":
            if "too expensive" in value or "over budget" in value:
                adjustments.append(
                    SuggestedAdjustment(
                        category="seniority",
                        adjustment=-1,
                        reason="Compensation issue - considering mid-level roles",
                    )
                )
    return adjustments


def keyword_analysis(reason: str) -> RejectionAnalysis:
    patterns = analyze_rejection_keywords(reason)
    return RejectionAnalysis(patterns=patterns, suggested_adjustments=convert_patterns_to_adjustments(patterns))


def merge_with_keywords(analysis: RejectionAnalysis, reason: str) -> RejectionAnalysis:
    """Add keyword findings the model missed; model suggestions win per category."""
    keyword_patterns = analyze_rejection_keywords(reason)
    patterns = list(analysis.patterns)
    seen = {(pattern.type, pattern.value.lower()) for pattern in patterns}
    for pattern in keyword_patterns:
        if (pattern.type, pattern.value.lower()) not in seen:
            patterns.append(pattern)
            seen.add((pattern.type, pattern.value.lower()))

    adjustments = list(analysis.suggested_adjustments)
    categories = {adjustment.category for adjustment in adjustments}
    for adjustment in convert_patterns_to_adjustments(keyword_patterns):
        if adjustment.category not in categories:
            adjustments.append(adjustment)
            categories.add(adjustment.category)

    return RejectionAnalysis(patterns=patterns, suggested_adjustments=adjustments)


@dataclass(slots=True)
class CandidateFilter:
    kind: str
    values: frozenset[str]
    reason: str

    def blocks(self, posting: JobPosting) -> bool:
        if self.kind == "company":
            return posting.company.lower() in self.values
        if self.kind == "min_seniority":
            title = posting.title.lower()
            return any(word in title for word in ("junior", "entry", "associate"))
        text = f"{posting.title} {posting.description}".lower()
        return any(_contains_term(text, value) for value in self.values)


def build_candidate_filters(repo: Repository) -> list[CandidateFilter]:
    """Filters derived from patterns seen on at least two rejections."""
    filters: list[CandidateFilter] = []

    def repeated(pattern_type: str) -> frozenset[str]:
        return frozenset(
            pattern.pattern_value.lower()
            for pattern in repo.list_rejection_patterns(pattern_type)
            if pattern.count >= FILTER_MIN_COUNT
        )

    companies = repeated("company_name")
    if companies:
        filters.append(CandidateFilter("company", companies, "Company is blocked after repeated rejections"))

    keywords = repeated("keyword")
    if keywords:
        filters.append(CandidateFilter("keyword", keywords, "Job contains keywords tied to previous rejections"))

    technologies = repeated("technology")
    if technologies:
        filters.append(
            CandidateFilter("technology", technologies, "Job requires technology tied to previous rejections")
        )

    junior_signals = [
        pattern
        for pattern in repo.list_rejection_patterns("seniority")
        if "junior" in pattern.pattern_value or "not senior" in pattern.pattern_value
    ]
    if sum(pattern.count for pattern in junior_signals) >= FILTER_MIN_COUNT:
        filters.append(CandidateFilter("min_seniority", frozenset(), "Job is below the minimum seniority (senior)"))

    return filters


def blocking_reason(filters: list[CandidateFilter], posting: JobPosting) -> str | None:
    for candidate_filter in filters:
        if candidate_filter.blocks(posting):
            return candidate_filter.reason
    return None

from __future__ import annotations

import pytest

from kestrel.core.label_mapping import LLM_CONFIDENCE, LabelMappingLearner


class FakeMapper:
    def __init__(self, answers: dict[str, str]):
        self.answers = answers
        self.calls: list[list[str]] = []

    def map_labels(self, labels: list[str], keys: list[str]) -> dict[str, str]:
        self.calls.append(list(labels))
        assert "unknown" not in keys
        return {label: self.answers[label] for label in labels if label in self.answers}


def test_remember_normalizes_label_and_stores_base_confidence(db) -> None:
    learner = LabelMappingLearner(db)

    mapping = learner.remember("  Desired   SALARY ", "salary_expectation", confidence=0.8, locator="#salary")

    assert mapping.label == "desired salary"
    assert mapping.base_confidence == pytest.approx(0.8)
    assert learner.lookup("desired salary").locator == "#salary"


def test_feedback_changes_effective_not_stored_confidence(db) -> None:
    learner = LabelMappingLearner(db)
    learner.remember("Notice period", "unknown", confidence=0.8)

    learner.record_success("Notice period", "#notice")
    after_success = learner.record_success("notice period", "#notice-2")

    assert after_success.success_count == 2
    assert after_success.locator == "#notice-2"
    assert after_success.base_confidence == pytest.approx(0.8)
    assert after_success.confidence == pytest.approx(0.88)

    after_failure = learner.record_failure("Notice period")
    assert after_failure.failure_count == 1
    assert after_failure.confidence == pytest.approx(0.8 * 1.1 * 0.9)


def test_feedback_for_unknown_label_is_ignored(db) -> None:
    learner = LabelMappingLearner(db)

    assert learner.record_success("never seen", "#x") is None
    assert learner.record_failure("never seen") is None
    assert learner.all_mappings() == []


def test_remember_keeps_counters_and_optional_fields(db) -> None:
    learner = LabelMappingLearner(db)
    learner.remember("Start date", "unknown", confidence=0.8, locator="#start", field_type="date")
    learner.record_success("Start date", "#start")

    mapping = learner.remember("Start date", "unknown", confidence=0.9)

    assert mapping.success_count == 1
    assert mapping.locator == "#start"
    assert mapping.field_type == "date"
    assert mapping.base_confidence == pytest.approx(0.9)


def test_map_labels_uses_heuristics_then_cache_then_mapper(db) -> None:
    learner = LabelMappingLearner(db, mapper=FakeMapper({"Preferred pronouns": "unknown", "Your site": "linkedin_url"}))
    learner.remember("Years of Kubernetes", "years_azure", confidence=0.9)
    learner.remember("Low trust label", "phone", confidence=0.6)

    results = learner.map_labels(["First Name", "Years of Kubernetes", "Low trust label", "Your site"])

    assert [(result.key, result.source) for result in results] == [
        ("first_name", "heuristic"),
        ("years_azure", "cache"),
        ("unknown", "llm"),
        ("linkedin_url", "llm"),
    ]
    assert learner.mapper.calls == [["Low trust label", "Your site"]]
    assert learner.lookup("your site").base_confidence == pytest.approx(LLM_CONFIDENCE)
    assert learner.lookup("first name").key == "first_name"


def test_map_labels_without_mapper_returns_unknown(db) -> None:
    results = LabelMappingLearner(db).map_labels(["Favourite colour"])

    assert [(result.key, result.confidence, result.source) for result in results] == [("unknown", 0.0, "llm")]
    assert LabelMappingLearner(db).lookup("favourite colour") is None


def test_candidates_for_key_sorted_by_effective_confidence(db) -> None:
    learner = LabelMappingLearner(db)
    learner.remember("Salary A", "salary_expectation", confidence=0.9)
    learner.remember("Salary B", "salary_expectation", confidence=0.8)
    for _ in range(4):
        learner.record_success("Salary B", "#b")
    learner.record_failure("Salary A")

    assert [mapping.label for mapping in learner.candidates_for_key("salary_expectation")] == ["salary b", "salary a"]
    assert learner.clear() == 2

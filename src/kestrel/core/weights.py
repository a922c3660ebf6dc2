from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from kestrel.core.profiles import base_weights
from kestrel.db.models import WeightAdjustment
from kestrel.db.repositories import Repository

logger = logging.getLogger(__name__)

MAX_ADJUSTMENT = 5.0
MIN_WEIGHT = 0.1
MIN_EFFECTIVE_DELTA = 0.5


def normalize_weights(weights: dict[str, float]) -> dict[str, float]:
    total = sum(weights.values())
    if total <= 0 or abs(total - 100) < 0.01:
        return dict(weights)
    return {category: weight / total * 100 for category, weight in weights.items()}


def validate_weights(weights: dict[str, float]) -> list[str]:
    issues: list[str] = []
    total = sum(weights.values())
    if abs(total - 100) > 0.01:
        issues.append(f"total weight is {total:.2f}, expected 100")
    for category, weight in weights.items():
        if weight < 0:
            issues.append(f"category {category} has negative weight {weight}")
        if weight > 50:
            issues.append(f"category {category} has very high weight {weight}")
    return issues


class WeightManager:
    """Category weights for ranking: base distribution plus the learned ledger."""

    def __init__(self, session: Session):
        self.repo = Repository(session)

    def active_weights(self, profile: str | None = None) -> dict[str, float]:
        adjustments = self.repo.current_weight_adjustments(profile)
        adjusted = {
            category: max(MIN_WEIGHT, weight + adjustments[category]) if category in adjustments else weight
            for category, weight in base_weights(profile).items()
        }
        return normalize_weights(adjusted)

    def apply_adjustment(
        self,
        *,
        profile: str,
        category: str,
        adjustment: float,
        reason: str,
        rejection_id: str | None = None,
    ) -> WeightAdjustment | None:
        current = self.active_weights(profile)
        old_weight = current.get(category)
        if old_weight is None:
            logger.warning(
                "Skipping adjustment for unknown category=%s profile=%s (known: %s)",
                category,
                profile,
                ", ".join(sorted(current)),
            )
            return None

        clamped = max(-MAX_ADJUSTMENT, min(MAX_ADJUSTMENT, adjustment))
        if abs(clamped) < MIN_EFFECTIVE_DELTA:
            logger.info("Skipping small adjustment category=%s delta=%.2f reason=%s", category, clamped, reason)
            return None

        # the ledger keeps the requested delta; the floor is applied on read
        new_weight = old_weight + clamped
        entry = self.repo.save_weight_adjustment(
            search_profile=profile,
            profile_category=category,
            old_weight=old_weight,
            new_weight=new_weight,
            reason=reason,
            rejection_id=rejection_id,
        )
        logger.info(
            "Weight adjustment profile=%s category=%s %.2f -> %.2f (%s)",
            profile,
            category,
            old_weight,
            max(MIN_WEIGHT, new_weight),
            reason,
        )
        return entry

    def summary(self, profile: str | None = None) -> dict[str, Any]:
        adjustments = self.repo.current_weight_adjustments(profile)
        return {
            "profile": profile,
            "base_weights": base_weights(profile),
            "adjusted_weights": self.active_weights(profile),
            "adjustments": adjustments,
            "total_adjustment": sum(adjustments.values()),
        }

    def reset(self) -> int:
        removed = self.repo.reset_weight_adjustments()
        logger.info("Reset weight ledger removed=%s", removed)
        return removed

    def learning_stats(self) -> dict[str, Any]:
        history = self.repo.weight_adjustment_history(limit=1000)
        deltas = [entry.new_weight - entry.old_weight for entry in history]
        return {
            "total_adjustments": self.repo.count_weight_adjustments(),
            "categories_adjusted": sorted({entry.profile_category for entry in history}),
            "average_adjustment": sum(deltas) / len(deltas) if deltas else 0.0,
            "last_adjustment": history[0].created_at.isoformat() if history else None,
        }

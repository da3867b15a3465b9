"""Deterministic engagement scoring and temperature classification.

Computes a 0-100 engagement score from a deal's full activity history and
total session time, and maps the score to a cold/warm/hot temperature tier.
Both functions are pure: no I/O, no clock, no hidden state.

The score is always recomputed from the whole history (never incremented),
so it depends only on the multiset of activity actions and the session
total. Removing an activity and re-scoring yields the correct lower score.

Exports:
    EngagementScorer: Session-time + activity-weight scorer with breakdown.
    classify_temperature: Score -> ClientTemperature.
    ACTIVITY_WEIGHTS: Points per recorded activity action.
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from src.crm.deals.schemas import ActivityAction, ActivityRecord, ClientTemperature

MAX_SCORE = 100

# Session time earns one point per five minutes, capped at 40 points.
SECONDS_PER_SESSION_POINT = 300
MAX_SESSION_POINTS = 40

ACTIVITY_WEIGHTS: dict[str, int] = {
    ActivityAction.LINK_ACCESSED: 10,
    ActivityAction.PROPERTY_VIEWED: 5,
    ActivityAction.PROPERTY_LIKED: 15,
    ActivityAction.PROPERTY_SHARED: 20,
    ActivityAction.CONTACT_FORM_SUBMITTED: 25,
    ActivityAction.PHONE_CLICKED: 20,
    ActivityAction.EMAIL_CLICKED: 15,
}

HOT_THRESHOLD = 70
WARM_THRESHOLD = 30


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (2.5 -> 3, not 2)."""
    return math.floor(value + 0.5)


def classify_temperature(score: int | float) -> ClientTemperature:
    """Derive the client temperature from an engagement score.

    Thresholds:
        score >= 70 -> HOT
        score >= 30 -> WARM
        score < 30  -> COLD
    """
    if score >= HOT_THRESHOLD:
        return ClientTemperature.HOT
    if score >= WARM_THRESHOLD:
        return ClientTemperature.WARM
    return ClientTemperature.COLD


class EngagementScorer:
    """Compute the engagement score (0-100) from activities and session time.

    Components:
        session:    min(session_seconds / 300, 40)
        activities: sum of ACTIVITY_WEIGHTS per action (unknown actions = 0)

    Only the total is clamped to 100; the activity sum has no separate cap,
    so activity alone can reach 100 with zero session time.
    """

    def __init__(self, weights: dict[str, int] | None = None) -> None:
        self._weights = dict(weights) if weights is not None else dict(ACTIVITY_WEIGHTS)

    @staticmethod
    def _session_points(session_seconds: float) -> float:
        return min(max(session_seconds, 0) / SECONDS_PER_SESSION_POINT, MAX_SESSION_POINTS)

    def weight(self, action: str) -> int:
        """Points earned by one activity with the given action."""
        return self._weights.get(action, 0)

    def score_breakdown(
        self, activities: Iterable[ActivityRecord], session_seconds: float
    ) -> dict[str, float]:
        """Per-component contributions before clamping and rounding."""
        return {
            "session": self._session_points(session_seconds),
            "activities": float(sum(self.weight(a.action) for a in activities)),
        }

    def score(self, activities: Iterable[ActivityRecord], session_seconds: float) -> int:
        """Compute the bounded engagement score.

        Args:
            activities: Full activity history for the deal (order irrelevant).
            session_seconds: Total time spent across all sessions, in seconds.

        Returns:
            Integer score in [0, 100].
        """
        breakdown = self.score_breakdown(activities, session_seconds)
        raw_score = sum(breakdown.values())
        return round_half_up(max(0.0, min(float(MAX_SCORE), raw_score)))


__all__ = [
    "ACTIVITY_WEIGHTS",
    "EngagementScorer",
    "classify_temperature",
    "round_half_up",
]

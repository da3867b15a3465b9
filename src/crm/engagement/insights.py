"""Engagement insights for agents -- risk, urgency, next action, hot leads.

Pure helpers over Deal snapshots. The clock is passed in so results are
reproducible.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel

from src.crm.deals.schemas import ClientTemperature, Deal

HOT_LEAD_SCORE = 70
HOT_LEAD_RECENCY = timedelta(hours=24)
HOT_LEADS_LIMIT = 10
MAX_URGENCY = 10


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DealInsight(BaseModel):
    """Per-deal insight summary."""

    deal_id: str
    risk_level: RiskLevel
    next_best_action: str
    urgency: int


def risk_level(engagement_score: int) -> RiskLevel:
    """Risk of losing the deal: <30 high, <60 medium, otherwise low."""
    if engagement_score < 30:
        return RiskLevel.HIGH
    if engagement_score < 60:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def next_best_action(engagement_score: int) -> str:
    if engagement_score >= 80:
        return "Schedule immediate call"
    if engagement_score >= 50:
        return "Send personalized follow-up"
    if engagement_score >= 20:
        return "Share additional properties"
    return "Add to nurture sequence"


def _days_since(moment: datetime, now: datetime) -> float:
    return (now - moment).total_seconds() / 86400


def urgency(deal: Deal, now: datetime) -> int:
    """Urgency score from 1 to 10.

    Starts at 1 and adds points for temperature (hot 4, warm 2), score
    (>=80 3, >=50 2) and recency of the last activity (within 1 day 2,
    within 3 days 1).
    """
    points = 1

    if deal.client_temperature == ClientTemperature.HOT:
        points += 4
    elif deal.client_temperature == ClientTemperature.WARM:
        points += 2

    if deal.engagement_score >= 80:
        points += 3
    elif deal.engagement_score >= 50:
        points += 2

    if deal.last_activity_at is not None:
        days = _days_since(deal.last_activity_at, now)
        if days <= 1:
            points += 2
        elif days <= 3:
            points += 1

    return min(points, MAX_URGENCY)


def build_insight(deal: Deal, now: datetime) -> DealInsight:
    return DealInsight(
        deal_id=deal.id,
        risk_level=risk_level(deal.engagement_score),
        next_best_action=next_best_action(deal.engagement_score),
        urgency=urgency(deal, now),
    )


def is_hot_lead(deal: Deal, now: datetime) -> bool:
    """Hot by score, by temperature, or active in the last 24 hours."""
    if deal.engagement_score >= HOT_LEAD_SCORE:
        return True
    if deal.client_temperature == ClientTemperature.HOT:
        return True
    return deal.last_activity_at is not None and now - deal.last_activity_at <= HOT_LEAD_RECENCY


def hot_leads(deals: Iterable[Deal], now: datetime, limit: int = HOT_LEADS_LIMIT) -> list[Deal]:
    """Deals needing immediate attention, highest score first."""
    leads = [d for d in deals if is_hot_lead(d, now)]
    leads.sort(key=lambda d: d.engagement_score, reverse=True)
    return leads[:limit]


__all__ = [
    "DealInsight",
    "RiskLevel",
    "build_insight",
    "hot_leads",
    "is_hot_lead",
    "next_best_action",
    "risk_level",
    "urgency",
]

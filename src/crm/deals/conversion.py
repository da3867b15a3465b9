"""Link-to-deal conversion and snapshot enrichment.

A shared property collection link becomes a Deal the moment it is created.
The deal starts at stage CREATED, status ACTIVE, score 0 (so temperature
COLD) and carries an estimated commission value that is fixed for the rest
of its life.

Snapshot enrichment (reconcile_snapshot) rebuilds the telemetry-derived
fields of an existing deal from its full activity history: score, session
totals, last activity, stage (via derive_snapshot_stage), next follow-up
and tags. It is the periodic-reconciliation counterpart to the event path.

Exports:
    calculate_deal_value: Commission estimate for a property collection.
    create_deal_from_link: Build a new Deal from a link and its properties.
    calculate_next_follow_up: Follow-up instant from score and recency.
    generate_tags: Portfolio and engagement tags.
    reconcile_snapshot: Recompute telemetry fields of a deal.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

import structlog

from src.crm.config import get_settings
from src.crm.core.context import AgentContext
from src.crm.deals.schemas import (
    ActivityRecord,
    ClientInfo,
    Deal,
    LinkRecord,
    PropertyRecord,
    SessionAggregate,
)
from src.crm.deals.scoring import EngagementScorer, round_half_up
from src.crm.deals.state_machine import derive_snapshot_stage, is_closed

logger = structlog.get_logger(__name__)

# ── Tag Rules ───────────────────────────────────────────────────────────────

LARGE_PORTFOLIO_MIN_PROPERTIES = 6
LUXURY_PRICE = 1_000_000
FAMILY_MIN_BEDROOMS = 4
HOT_LEAD_TAG_SCORE = 80
HIGHLY_ENGAGED_MIN_SESSIONS = 4
SERIOUS_BUYER_MIN_SECONDS = 1801


def calculate_deal_value(
    properties: Sequence[PropertyRecord], commission_rate: float | None = None
) -> int:
    """Estimate the deal value as a commission on total listing price.

    Properties without a price contribute nothing. The rate defaults to
    Settings.COMMISSION_RATE (3%).
    """
    rate = get_settings().COMMISSION_RATE if commission_rate is None else commission_rate
    total = sum(p.price or 0 for p in properties)
    return round_half_up(total * rate)


def default_deal_name(link: LinkRecord, properties: Sequence[PropertyRecord]) -> str:
    return link.name or f"Property Collection - {len(properties)} properties"


def create_deal_from_link(
    agent: AgentContext,
    link: LinkRecord,
    properties: Sequence[PropertyRecord],
    client_info: ClientInfo | None = None,
) -> Deal:
    """Convert a shared link into a new Deal owned by the calling agent.

    The deal reuses the link id, so a link maps to exactly one deal.
    client_id stays None until the client identifies themselves.

    Args:
        agent: Agent the deal belongs to.
        link: Link being shared.
        properties: Properties in the collection (prices drive deal_value).
        client_info: Optional client identity captured at share time.

    Returns:
        New Deal at stage CREATED, status ACTIVE, score 0.
    """
    client = client_info or ClientInfo()
    deal = Deal(
        id=link.id,
        link_id=link.id,
        agent_id=agent.agent_id,
        deal_name=default_deal_name(link, properties),
        deal_value=calculate_deal_value(properties),
        client_name=client.name or None,
        client_email=client.email or None,
        client_phone=client.phone or None,
        property_ids=list(link.property_ids),
        property_count=len(properties),
        created_at=link.created_at,
        updated_at=link.created_at,
    )

    logger.info(
        "conversion.deal_created",
        deal_id=deal.id,
        agent_id=agent.agent_id,
        property_count=deal.property_count,
        deal_value=deal.deal_value,
    )
    return deal


def calculate_next_follow_up(
    engagement_score: int,
    last_activity_at: datetime | None,
    now: datetime | None = None,
) -> datetime | None:
    """Follow-up instant for a deal based on its engagement.

    score >= 80 -> 2 hours, score >= 50 -> 24 hours, score > 0 -> 3 days,
    otherwise one week. Deals with no activity get no follow-up.
    """
    if last_activity_at is None:
        return None

    now = now or datetime.now(timezone.utc)
    if engagement_score >= 80:
        delay = timedelta(hours=2)
    elif engagement_score >= 50:
        delay = timedelta(hours=24)
    elif engagement_score > 0:
        delay = timedelta(days=3)
    else:
        delay = timedelta(days=7)
    return now + delay


def generate_tags(
    properties: Sequence[PropertyRecord],
    engagement_score: int,
    session_count: int,
    total_time_spent: int,
) -> list[str]:
    """Derive portfolio and engagement tags for a deal."""
    tags: list[str] = []

    if len(properties) >= LARGE_PORTFOLIO_MIN_PROPERTIES:
        tags.append("large-portfolio")
    if any((p.price or 0) > LUXURY_PRICE for p in properties):
        tags.append("luxury")
    if any(p.bedrooms and p.bedrooms >= FAMILY_MIN_BEDROOMS for p in properties):
        tags.append("family")

    if engagement_score >= HOT_LEAD_TAG_SCORE:
        tags.append("hot-lead")
    if session_count >= HIGHLY_ENGAGED_MIN_SESSIONS:
        tags.append("highly-engaged")
    if total_time_spent >= SERIOUS_BUYER_MIN_SECONDS:
        tags.append("serious-buyer")

    return tags


def reconcile_snapshot(
    deal: Deal,
    activities: Sequence[ActivityRecord],
    aggregate: SessionAggregate,
    properties: Sequence[PropertyRecord] = (),
    scorer: EngagementScorer | None = None,
    now: datetime | None = None,
) -> Deal:
    """Recompute the telemetry-derived fields of a deal.

    Stage is recomputed wholesale by the snapshot policy and is not
    validated as a transition. Status only changes when the policy has an
    opinion (QUALIFIED); otherwise the current status is kept. Closed deals
    are returned unchanged.

    Returns:
        Updated copy of the deal.
    """
    if is_closed(deal):
        return deal

    now = now or datetime.now(timezone.utc)
    scorer = scorer or EngagementScorer()

    score = scorer.score(activities, aggregate.total_time_spent)
    last_activity_at = max((a.created_at for a in activities), default=None)
    stage, status = derive_snapshot_stage(score, aggregate.session_count, last_activity_at)

    updated = deal.model_copy(deep=True)
    updated.engagement_score = score
    updated.session_count = aggregate.session_count
    updated.total_time_spent = aggregate.total_time_spent
    updated.last_activity_at = last_activity_at
    updated.deal_stage = stage
    if status is not None:
        updated.deal_status = status
    updated.next_follow_up = calculate_next_follow_up(score, last_activity_at, now)
    updated.tags = generate_tags(
        properties, score, aggregate.session_count, aggregate.total_time_spent
    )
    updated.updated_at = now

    logger.info(
        "conversion.snapshot_reconciled",
        deal_id=deal.id,
        score=score,
        stage=stage.value,
        status=updated.deal_status.value,
    )
    return updated


__all__ = [
    "calculate_deal_value",
    "calculate_next_follow_up",
    "create_deal_from_link",
    "generate_tags",
    "reconcile_snapshot",
]

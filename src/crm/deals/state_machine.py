"""Deal stage and status state machine.

Two independent axes describe a deal:

- Stage: ordered pipeline position. Explicit progression may move forward
  (or stay put) but never backward.
- Status: business outcome. Moves are restricted to VALID_STATUS_TRANSITIONS;
  closed-won is terminal and closed-lost can only be reactivated. Closing a
  deal forces its stage to CLOSED.

A separate snapshot policy (derive_snapshot_stage) recomputes the stage from
current engagement telemetry. It does not validate a transition and is only
used for periodic reconciliation; the event path uses the incremental
mapping in engagement.orchestrator instead.

IMPORTANT: transition functions never mutate their input. They return an
updated copy so callers decide when to persist.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from src.crm.core.monitoring import deal_transitions_total
from src.crm.deals.schemas import Deal, DealStage, DealStatus

logger = structlog.get_logger(__name__)

# ── Stage Order ─────────────────────────────────────────────────────────────

STAGE_ORDER: tuple[DealStage, ...] = (
    DealStage.CREATED,
    DealStage.SHARED,
    DealStage.ACCESSED,
    DealStage.ENGAGED,
    DealStage.QUALIFIED,
    DealStage.ADVANCED,
    DealStage.CLOSED,
)

_STAGE_INDEX: dict[DealStage, int] = {stage: i for i, stage in enumerate(STAGE_ORDER)}

# ── Status Transition Rules ─────────────────────────────────────────────────

# Maps each status to the set of statuses it can transition TO.
# Self-transitions are always allowed and are not listed.
VALID_STATUS_TRANSITIONS: dict[DealStatus, frozenset[DealStatus]] = {
    DealStatus.ACTIVE: frozenset(
        {DealStatus.QUALIFIED, DealStatus.NURTURING, DealStatus.CLOSED_LOST}
    ),
    DealStatus.QUALIFIED: frozenset(
        {DealStatus.NURTURING, DealStatus.CLOSED_WON, DealStatus.CLOSED_LOST}
    ),
    DealStatus.NURTURING: frozenset(
        {DealStatus.QUALIFIED, DealStatus.CLOSED_WON, DealStatus.CLOSED_LOST}
    ),
    DealStatus.CLOSED_WON: frozenset(),  # Terminal status
    DealStatus.CLOSED_LOST: frozenset({DealStatus.ACTIVE}),  # Reactivation only
}

CLOSED_STATUSES: frozenset[DealStatus] = frozenset(
    {DealStatus.CLOSED_WON, DealStatus.CLOSED_LOST}
)

# Snapshot policy thresholds
SNAPSHOT_QUALIFIED_SCORE = 80
SNAPSHOT_ENGAGED_SCORE = 50


class InvalidTransitionError(ValueError):
    """Raised when a stage or status change violates the transition rules."""

    def __init__(
        self,
        kind: str,
        from_value: DealStage | DealStatus,
        to_value: DealStage | DealStatus,
        deal_id: str | None = None,
    ) -> None:
        self.kind = kind
        self.from_value = from_value
        self.to_value = to_value
        self.deal_id = deal_id
        super().__init__(
            f"Invalid {kind} transition for deal {deal_id or '<unknown>'}: "
            f"{from_value.value} -> {to_value.value}"
        )


# ── Validation ──────────────────────────────────────────────────────────────


def stage_index(stage: DealStage) -> int:
    """Position of a stage in STAGE_ORDER."""
    return _STAGE_INDEX[stage]


def is_forward_or_same(from_stage: DealStage, to_stage: DealStage) -> bool:
    return stage_index(to_stage) >= stage_index(from_stage)


def validate_stage_progression(
    from_stage: DealStage, to_stage: DealStage, deal_id: str | None = None
) -> None:
    """Validate that a stage move does not go backward.

    Raises:
        InvalidTransitionError: If to_stage precedes from_stage.
    """
    if not is_forward_or_same(from_stage, to_stage):
        raise InvalidTransitionError("stage", from_stage, to_stage, deal_id)


def is_valid_status_transition(from_status: DealStatus, to_status: DealStatus) -> bool:
    if from_status == to_status:
        return True
    return to_status in VALID_STATUS_TRANSITIONS[from_status]


def validate_status_transition(
    from_status: DealStatus, to_status: DealStatus, deal_id: str | None = None
) -> None:
    """Validate a status change against VALID_STATUS_TRANSITIONS.

    Raises:
        InvalidTransitionError: If the move is not in the allow-list.
    """
    if not is_valid_status_transition(from_status, to_status):
        raise InvalidTransitionError("status", from_status, to_status, deal_id)


def is_closed(deal: Deal) -> bool:
    """Whether the deal has reached a closed-won or closed-lost status."""
    return deal.deal_status in CLOSED_STATUSES


# ── State Machine ───────────────────────────────────────────────────────────


class DealStateMachine:
    """Validates and applies explicit stage and status transitions.

    Both operations return an updated copy of the deal with updated_at set;
    the input deal is left untouched. Same-value moves succeed as no-ops
    (the original deal object is returned).
    """

    def progress_stage(
        self, deal: Deal, to_stage: DealStage, now: datetime | None = None
    ) -> Deal:
        """Move a deal to a later (or the same) stage.

        Args:
            deal: Current deal.
            to_stage: Requested stage.
            now: Timestamp for updated_at (defaults to current UTC time).

        Returns:
            Updated deal copy, or the same deal for a same-stage no-op.

        Raises:
            InvalidTransitionError: If to_stage is behind the current stage.
        """
        try:
            validate_stage_progression(deal.deal_stage, to_stage, deal.id)
        except InvalidTransitionError:
            deal_transitions_total.labels(kind="stage", outcome="rejected").inc()
            logger.warning(
                "state_machine.stage_rejected",
                deal_id=deal.id,
                from_stage=deal.deal_stage.value,
                to_stage=to_stage.value,
            )
            raise

        if to_stage == deal.deal_stage:
            return deal

        updated = deal.model_copy(deep=True)
        updated.deal_stage = to_stage
        updated.updated_at = now or datetime.now(timezone.utc)
        deal_transitions_total.labels(kind="stage", outcome="applied").inc()
        logger.info(
            "state_machine.stage_progressed",
            deal_id=deal.id,
            from_stage=deal.deal_stage.value,
            to_stage=to_stage.value,
        )
        return updated

    def update_status(
        self, deal: Deal, to_status: DealStatus, now: datetime | None = None
    ) -> Deal:
        """Change a deal's status, forcing stage CLOSED when closing.

        Raises:
            InvalidTransitionError: If the status move is not allowed.
        """
        try:
            validate_status_transition(deal.deal_status, to_status, deal.id)
        except InvalidTransitionError:
            deal_transitions_total.labels(kind="status", outcome="rejected").inc()
            logger.warning(
                "state_machine.status_rejected",
                deal_id=deal.id,
                from_status=deal.deal_status.value,
                to_status=to_status.value,
            )
            raise

        if to_status == deal.deal_status:
            return deal

        updated = deal.model_copy(deep=True)
        updated.deal_status = to_status
        if to_status in CLOSED_STATUSES:
            updated.deal_stage = DealStage.CLOSED
        updated.updated_at = now or datetime.now(timezone.utc)
        deal_transitions_total.labels(kind="status", outcome="applied").inc()
        logger.info(
            "state_machine.status_updated",
            deal_id=deal.id,
            from_status=deal.deal_status.value,
            to_status=to_status.value,
            stage=updated.deal_stage.value,
        )
        return updated


# ── Snapshot Policy ─────────────────────────────────────────────────────────


def derive_snapshot_stage(
    engagement_score: int,
    session_count: int,
    last_activity_at: datetime | None,
) -> tuple[DealStage, DealStatus | None]:
    """Recompute stage (and possibly status) from current telemetry.

    Policy:
        no last activity        -> SHARED
        score >= 80             -> QUALIFIED (status QUALIFIED)
        50 <= score < 80        -> ENGAGED
        sessions > 0, score < 50 -> ACCESSED
        otherwise               -> SHARED

    Returns:
        Tuple of (stage, status) where status is None when the policy has
        no opinion about the status.
    """
    if last_activity_at is None:
        return DealStage.SHARED, None
    if engagement_score >= SNAPSHOT_QUALIFIED_SCORE:
        return DealStage.QUALIFIED, DealStatus.QUALIFIED
    if engagement_score >= SNAPSHOT_ENGAGED_SCORE:
        return DealStage.ENGAGED, None
    if session_count > 0:
        return DealStage.ACCESSED, None
    return DealStage.SHARED, None


# ── Stage Guidance ──────────────────────────────────────────────────────────

_STAGE_REQUIREMENTS: dict[DealStage, tuple[str, ...]] = {
    DealStage.CREATED: ("Property collection prepared", "Link generated"),
    DealStage.SHARED: ("Link shared with client", "Initial contact made"),
    DealStage.ACCESSED: ("Client accessed link", "Properties viewed"),
    DealStage.ENGAGED: ("Client engagement detected", "Properties liked/considered"),
    DealStage.QUALIFIED: ("Client qualification confirmed", "Budget verified"),
    DealStage.ADVANCED: ("Property showing completed", "Offer interest expressed"),
    DealStage.CLOSED: ("Deal finalized", "Commission secured"),
}


def stage_requirements(stage: DealStage) -> list[str]:
    """Checklist an agent should satisfy before leaving a stage."""
    return list(_STAGE_REQUIREMENTS[stage])


def next_suggested_stage(current: DealStage, engagement_score: int) -> DealStage | None:
    """Suggest the next stage for an agent to move a deal to.

    Engagement-gated stages (accessed, engaged, qualified) are only
    suggested once the score clears their bar. Returns None when no move
    is suggested, including for CLOSED.
    """
    if current == DealStage.CREATED:
        return DealStage.SHARED
    if current == DealStage.SHARED:
        return DealStage.ACCESSED if engagement_score > 0 else None
    if current == DealStage.ACCESSED:
        return DealStage.ENGAGED if engagement_score >= 30 else None
    if current == DealStage.ENGAGED:
        return DealStage.QUALIFIED if engagement_score >= 60 else None
    if current == DealStage.QUALIFIED:
        return DealStage.ADVANCED
    if current == DealStage.ADVANCED:
        return DealStage.CLOSED
    return None

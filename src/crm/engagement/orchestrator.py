"""Engagement event orchestrator.

Processes one client interaction against a deal: re-scores the deal from its
full activity history plus the new event, nudges the stage forward using
the event-incremental mapping, generates follow-up tasks when the change is
significant (plus the entry task of a newly reached stage), and persists the
result.

Persistence order is fixed: automated tasks are written first and the deal
is written last, in a single upsert. If a task write fails the deal is left
untouched and the error propagates to the caller. No locking is performed;
concurrent events for the same deal race and the last deal write wins.

Exports:
    EngagementOrchestrator: Event processing pipeline.
    incremental_stage: Stage an event action nudges a deal toward.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from src.crm.core.context import AgentContext
from src.crm.core.monitoring import track_engagement_event
from src.crm.deals.repository import ActivityStore, DealStore
from src.crm.deals.schemas import (
    DealStage,
    EngagementEvent,
    EngagementResult,
    EventAction,
)
from src.crm.deals.scoring import EngagementScorer
from src.crm.deals.state_machine import DealStateMachine, is_forward_or_same
from src.crm.tasks.rules import generate_tasks, stage_tasks, stage_trigger
from src.crm.tasks.schemas import Task
from src.crm.tasks.service import TaskService

logger = structlog.get_logger(__name__)

# Score gain (strictly greater) that makes an event worth new tasks.
SIGNIFICANT_SCORE_GAIN = 10

# ── Event-Incremental Stage Mapping ─────────────────────────────────────────

# action -> (target stage, stages it may be applied from)
_INCREMENTAL_STAGE_RULES: dict[str, tuple[DealStage, frozenset[DealStage]]] = {
    EventAction.VIEW: (DealStage.ACCESSED, frozenset({DealStage.CREATED})),
    EventAction.LIKE: (
        DealStage.ENGAGED,
        frozenset({DealStage.CREATED, DealStage.SHARED, DealStage.ACCESSED}),
    ),
    EventAction.CONSIDER: (
        DealStage.ENGAGED,
        frozenset({DealStage.CREATED, DealStage.SHARED, DealStage.ACCESSED}),
    ),
    EventAction.DETAIL: (DealStage.QUALIFIED, frozenset({DealStage.ENGAGED})),
}


def incremental_stage(current: DealStage, action: str) -> DealStage:
    """Stage a deal moves to after an event action (current if no move)."""
    rule = _INCREMENTAL_STAGE_RULES.get(action)
    if rule is None:
        return current

    target, allowed_from = rule
    if current in allowed_from and is_forward_or_same(current, target):
        return target
    return current


class EngagementOrchestrator:
    """Runs the per-event engagement pipeline against the stores.

    Args:
        deal_store: DealStore for loading and writing the deal.
        activity_store: ActivityStore providing history and session totals.
        task_service: TaskService persisting automated tasks.
        scorer: EngagementScorer (default weights if omitted).
        state_machine: DealStateMachine validating stage moves.
    """

    def __init__(
        self,
        deal_store: DealStore,
        activity_store: ActivityStore,
        task_service: TaskService,
        scorer: EngagementScorer | None = None,
        state_machine: DealStateMachine | None = None,
    ) -> None:
        self._deals = deal_store
        self._activities = activity_store
        self._tasks = task_service
        self._scorer = scorer or EngagementScorer()
        self._state_machine = state_machine or DealStateMachine()

    async def process_event(
        self,
        agent: AgentContext,
        deal_id: str,
        event: EngagementEvent,
    ) -> EngagementResult:
        """Apply one engagement event to a deal.

        Steps:
        1. Load the deal (missing deal -> neutral result, nothing written).
        2. Score the full activity history plus this event and session time.
        3. Compute the event-incremental stage and validate the move.
        4. Generate and persist tasks if the score rose by more than 10
           or the stage changed. A stage change also adds the entry task
           for the new stage (trigger "stage_<stage>").
        5. Persist the updated deal.

        Args:
            agent: Agent the event is processed for (attribution and logs).
            deal_id: Deal the event belongs to.
            event: The client interaction.

        Returns:
            EngagementResult describing what changed.

        Raises:
            PersistenceError: From any store, unchanged.
            InvalidTransitionError: If the stage move fails validation.
        """
        async with track_engagement_event(event.action) as tracker:
            deal = await self._deals.get(deal_id)
            if deal is None:
                tracker["outcome"] = "not_found"
                logger.info(
                    "orchestrator.deal_not_found",
                    deal_id=deal_id,
                    agent_id=agent.agent_id,
                    action=event.action,
                )
                return EngagementResult()

            now = datetime.now(timezone.utc)
            old_score = deal.engagement_score

            history = await self._activities.get_activities(deal_id)
            activities = [*history, event.to_activity()]
            aggregate = await self._activities.get_session_aggregate(deal_id)
            new_score = self._scorer.score(activities, aggregate.total_time_spent)

            candidate = incremental_stage(deal.deal_stage, event.action)
            updated = self._state_machine.progress_stage(deal, candidate, now=now)
            stage_changed = updated.deal_stage != deal.deal_stage
            if updated is deal:
                updated = deal.model_copy(deep=True)

            updated.engagement_score = new_score
            updated.session_count = aggregate.session_count
            updated.total_time_spent = aggregate.total_time_spent
            if deal.last_activity_at is None or event.occurred_at > deal.last_activity_at:
                updated.last_activity_at = event.occurred_at
            updated.updated_at = now

            tasks: list[Task] = []
            if new_score > old_score + SIGNIFICANT_SCORE_GAIN or stage_changed:
                specs = generate_tasks(event.action, updated)
                tasks = await self._tasks.create_automated_tasks(
                    updated, event.action, specs, now=now
                )
            if stage_changed:
                tasks += await self._tasks.create_automated_tasks(
                    updated,
                    stage_trigger(updated.deal_stage),
                    stage_tasks(updated),
                    now=now,
                )

            new_tasks_count = len(tasks)
            if tasks:
                due_dates = [t.due_date for t in tasks if t.due_date is not None]
                if due_dates:
                    updated.next_follow_up = min(due_dates)

            await self._deals.upsert(updated)

            if not stage_changed and new_score == old_score:
                tracker["outcome"] = "unchanged"

            logger.info(
                "orchestrator.event_processed",
                deal_id=deal_id,
                agent_id=agent.agent_id,
                action=event.action,
                old_score=old_score,
                new_score=new_score,
                stage=updated.deal_stage.value,
                stage_changed=stage_changed,
                new_tasks=new_tasks_count,
            )

            return EngagementResult(
                deal=updated,
                score_updated=new_score != old_score,
                new_tasks_count=new_tasks_count,
                stage_changed=stage_changed,
            )


__all__ = ["EngagementOrchestrator", "SIGNIFICANT_SCORE_GAIN", "incremental_stage"]

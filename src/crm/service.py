"""CRMService -- the engine's library surface.

Wires the stores into the orchestrator, scheduler, state machine and task
service, and exposes the operations callers use. Every call takes an
explicit AgentContext naming the agent it acts for; the context is used for
ownership of new records and for log attribution, not for authorization.

Missing deals are reported as None (or an empty result), never raised.
Transition and validation errors are raised; store errors propagate
unchanged.

Usage::

    service = CRMService(
        deal_store=InMemoryDealRepository(),
        activity_store=InMemoryActivityRepository(),
        task_store=InMemoryTaskRepository(),
    )
    agent = AgentContext(agent_id="agent-1")
    deal = await service.create_deal_from_link(agent, link, properties)
    result = await service.process_engagement_event(
        agent, deal.id, EngagementEvent(action="like")
    )
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone

import structlog

from src.crm.core.context import AgentContext
from src.crm.deals.conversion import create_deal_from_link, reconcile_snapshot
from src.crm.deals.repository import ActivityStore, DealStore, TaskStore
from src.crm.deals.schemas import (
    ClientInfo,
    Deal,
    DealStage,
    DealStatus,
    EngagementEvent,
    EngagementResult,
    LinkRecord,
    PropertyRecord,
)
from src.crm.deals.scoring import EngagementScorer
from src.crm.deals.state_machine import DealStateMachine
from src.crm.engagement.insights import DealInsight, build_insight, hot_leads
from src.crm.engagement.orchestrator import EngagementOrchestrator
from src.crm.engagement.scheduler import FollowUpScheduler, FollowUpSummary
from src.crm.tasks.rules import (
    AUTOMATION_TRIGGER,
    automation_tasks,
    generate_tasks,
    stage_tasks,
    stage_trigger,
)
from src.crm.tasks.schemas import Task, TaskCreate, TaskStatus, TaskTrigger
from src.crm.tasks.service import TaskService

logger = structlog.get_logger(__name__)


class CRMService:
    """Facade over the deal lifecycle and engagement automation engine.

    Args:
        deal_store: DealStore backend.
        activity_store: ActivityStore backend.
        task_store: TaskStore backend.
        scorer: EngagementScorer shared by the orchestrator and reconciliation.
        follow_up_concurrency: Scheduler fan-out bound (defaults to settings).
    """

    def __init__(
        self,
        deal_store: DealStore,
        activity_store: ActivityStore,
        task_store: TaskStore,
        scorer: EngagementScorer | None = None,
        follow_up_concurrency: int | None = None,
    ) -> None:
        self._deals = deal_store
        self._activities = activity_store
        self._scorer = scorer or EngagementScorer()
        self._state_machine = DealStateMachine()
        self._task_service = TaskService(task_store)
        self._orchestrator = EngagementOrchestrator(
            deal_store=deal_store,
            activity_store=activity_store,
            task_service=self._task_service,
            scorer=self._scorer,
            state_machine=self._state_machine,
        )
        self.scheduler = FollowUpScheduler(
            deal_store=deal_store,
            task_service=self._task_service,
            concurrency=follow_up_concurrency,
        )

    # ── Deals ───────────────────────────────────────────────────────────────

    async def create_deal_from_link(
        self,
        agent: AgentContext,
        link: LinkRecord,
        properties: Sequence[PropertyRecord],
        client_info: ClientInfo | None = None,
    ) -> Deal:
        """Convert a shared link into a persisted Deal owned by the agent.

        The initial link_created follow-up task is written before the deal.
        """
        deal = create_deal_from_link(agent, link, properties, client_info)
        await self._task_service.create_automated_tasks(
            deal,
            TaskTrigger.LINK_CREATED,
            generate_tasks(TaskTrigger.LINK_CREATED, deal),
        )
        await self._deals.upsert(deal)
        logger.info("crm.deal_created", deal_id=deal.id, agent_id=agent.agent_id)
        return deal

    async def get_deal(self, agent: AgentContext, deal_id: str) -> Deal | None:
        return await self._deals.get(deal_id)

    async def progress_deal_stage(
        self, agent: AgentContext, deal_id: str, new_stage: DealStage
    ) -> Deal | None:
        """Move a deal forward in the pipeline.

        Entering a new stage writes that stage's task (trigger
        "stage_<stage>") before the deal is saved.

        Returns:
            The updated deal, or None if the deal does not exist.

        Raises:
            InvalidTransitionError: If new_stage is behind the current stage.
        """
        deal = await self._deals.get(deal_id)
        if deal is None:
            logger.info("crm.deal_not_found", deal_id=deal_id, agent_id=agent.agent_id)
            return None

        updated = self._state_machine.progress_stage(deal, new_stage)
        if updated is deal:
            return updated

        if updated.deal_stage != deal.deal_stage:
            tasks = await self._task_service.create_automated_tasks(
                updated, stage_trigger(updated.deal_stage), stage_tasks(updated)
            )
            due_dates = [t.due_date for t in tasks if t.due_date is not None]
            if due_dates:
                updated.next_follow_up = min(due_dates)
        await self._deals.upsert(updated)
        return updated

    async def update_deal_status(
        self, agent: AgentContext, deal_id: str, new_status: DealStatus
    ) -> Deal | None:
        """Change a deal's status (closing forces stage CLOSED).

        Returns:
            The updated deal, or None if the deal does not exist.

        Raises:
            InvalidTransitionError: If the status move is not allowed.
        """
        deal = await self._deals.get(deal_id)
        if deal is None:
            logger.info("crm.deal_not_found", deal_id=deal_id, agent_id=agent.agent_id)
            return None

        updated = self._state_machine.update_status(deal, new_status)
        if updated is not deal:
            await self._deals.upsert(updated)
        return updated

    async def reconcile_deal(
        self,
        agent: AgentContext,
        deal_id: str,
        properties: Sequence[PropertyRecord] = (),
    ) -> Deal | None:
        """Rebuild a deal's telemetry fields from its activity history.

        Uses the snapshot stage policy. Returns None for an unknown deal.
        """
        deal = await self._deals.get(deal_id)
        if deal is None:
            return None

        activities = await self._activities.get_activities(deal_id)
        aggregate = await self._activities.get_session_aggregate(deal_id)
        updated = reconcile_snapshot(
            deal, activities, aggregate, properties, scorer=self._scorer
        )
        if updated is not deal:
            await self._deals.upsert(updated)
        return updated

    # ── Engagement ──────────────────────────────────────────────────────────

    async def process_engagement_event(
        self, agent: AgentContext, deal_id: str, event: EngagementEvent
    ) -> EngagementResult:
        return await self._orchestrator.process_event(agent, deal_id, event)

    async def schedule_engagement_follow_ups(
        self, agent: AgentContext | None = None
    ) -> FollowUpSummary:
        """Run one follow-up scan, limited to the agent's deals if given."""
        return await self.scheduler.schedule_follow_ups(agent.agent_id if agent else None)

    async def get_hot_leads(
        self, agent: AgentContext, now: datetime | None = None
    ) -> list[Deal]:
        """The agent's deals needing immediate attention, best first (max 10)."""
        deals = await self._deals.list_deals(agent.agent_id)
        return hot_leads(deals, now or datetime.now(timezone.utc))

    async def get_engagement_insights(
        self,
        agent: AgentContext,
        deal_ids: Sequence[str],
        now: datetime | None = None,
    ) -> dict[str, DealInsight]:
        """Risk, next action and urgency per deal. Unknown deals are omitted."""
        now = now or datetime.now(timezone.utc)
        insights: dict[str, DealInsight] = {}
        for deal_id in deal_ids:
            deal = await self._deals.get(deal_id)
            if deal is None:
                continue
            insights[deal_id] = build_insight(deal, now)
        return insights

    # ── Tasks ───────────────────────────────────────────────────────────────

    async def create_task(self, agent: AgentContext, data: TaskCreate) -> Task:
        return await self._task_service.create_task(agent, data)

    async def update_task_status(
        self,
        agent: AgentContext,
        task_id: str,
        status: TaskStatus,
        notes: str | None = None,
    ) -> Task | None:
        return await self._task_service.update_task_status(task_id, status, notes)

    async def list_tasks(self, agent: AgentContext, deal_id: str) -> list[Task]:
        return await self._task_service.list_tasks(deal_id)

    async def run_task_automation(
        self, agent: AgentContext, deal_id: str, now: datetime | None = None
    ) -> list[Task]:
        """Evaluate the condition rules, stage task and score tier for a deal.

        Matching tasks are persisted with trigger "automation". Closed and
        unknown deals yield an empty list.
        """
        deal = await self._deals.get(deal_id)
        if deal is None:
            logger.info("crm.deal_not_found", deal_id=deal_id, agent_id=agent.agent_id)
            return []

        now = now or datetime.now(timezone.utc)
        specs = automation_tasks(deal, now)
        tasks = await self._task_service.create_automated_tasks(
            deal, AUTOMATION_TRIGGER, specs, now=now
        )
        logger.info(
            "crm.task_automation_run",
            deal_id=deal_id,
            agent_id=agent.agent_id,
            created=len(tasks),
        )
        return tasks


__all__ = ["CRMService"]

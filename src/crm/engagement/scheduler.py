"""Staleness-based follow-up scheduler.

Scans open deals, decides which have gone quiet for too long given their
stage, and asks the rule engine for the matching follow-up tasks. Each deal
is processed independently: a failure on one deal is counted and logged
and the scan moves on. Only a failure to enumerate deals aborts the run.

Per-deal work fans out concurrently, bounded by FOLLOW_UP_CONCURRENCY.
stop() cancels between deals: deals whose processing has not started when
stop() is called are left untouched and are not counted.

run_periodic() wraps a scan in an asyncio background loop in the same way
the other background loops in this codebase run: sleep, run, log failures,
exit cleanly on cancellation.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel

from src.crm.config import get_settings
from src.crm.core.monitoring import follow_up_deals_total, follow_up_runs_total
from src.crm.deals.repository import DealStore
from src.crm.deals.schemas import ClientTemperature, Deal, DealStage
from src.crm.deals.state_machine import is_closed
from src.crm.tasks.rules import generate_tasks
from src.crm.tasks.schemas import TaskTrigger
from src.crm.tasks.service import TaskService

logger = structlog.get_logger(__name__)

# ── Staleness Rules ─────────────────────────────────────────────────────────

# Days since last activity after which a deal in a stage needs a follow-up.
STALENESS_THRESHOLD_DAYS: dict[DealStage, float] = {
    DealStage.CREATED: 2,
    DealStage.SHARED: 2,
    DealStage.ACCESSED: 1,
    DealStage.ENGAGED: 1,
    DealStage.QUALIFIED: 0.5,
}
DEFAULT_STALENESS_THRESHOLD_DAYS = 3

URGENT_AFTER_DAYS = 1
NURTURE_AFTER_DAYS = 7
REGULAR_AFTER_DAYS = 3


class FollowUpSummary(BaseModel):
    """Counts from one scheduler run."""

    scheduled: int = 0
    skipped: int = 0
    errors: int = 0


def days_since_activity(deal: Deal, now: datetime) -> float | None:
    """Fractional days since the deal's last activity, None if never active."""
    if deal.last_activity_at is None:
        return None
    return (now - deal.last_activity_at).total_seconds() / 86400


def needs_follow_up(deal: Deal, now: datetime) -> bool:
    """Whether an open deal is stale for its stage. Never-active deals always are."""
    days = days_since_activity(deal, now)
    if days is None:
        return True
    threshold = STALENESS_THRESHOLD_DAYS.get(deal.deal_stage, DEFAULT_STALENESS_THRESHOLD_DAYS)
    return days >= threshold


def determine_follow_up_type(deal: Deal, now: datetime) -> TaskTrigger | None:
    """Pick the follow-up trigger for a stale deal.

    Precedence: never active -> INITIAL_FOLLOW_UP; hot and >= 1 day ->
    URGENT_FOLLOW_UP; >= 7 days -> NURTURE_SEQUENCE; >= 3 days ->
    REGULAR_FOLLOW_UP; otherwise None (skip).
    """
    days = days_since_activity(deal, now)
    if days is None:
        return TaskTrigger.INITIAL_FOLLOW_UP
    if deal.client_temperature == ClientTemperature.HOT and days >= URGENT_AFTER_DAYS:
        return TaskTrigger.URGENT_FOLLOW_UP
    if days >= NURTURE_AFTER_DAYS:
        return TaskTrigger.NURTURE_SEQUENCE
    if days >= REGULAR_AFTER_DAYS:
        return TaskTrigger.REGULAR_FOLLOW_UP
    return None


class FollowUpScheduler:
    """Schedules follow-up tasks for stale deals.

    Args:
        deal_store: DealStore used to enumerate and update deals.
        task_service: TaskService persisting generated tasks.
        concurrency: Max deals processed at once (defaults to settings).
    """

    def __init__(
        self,
        deal_store: DealStore,
        task_service: TaskService,
        concurrency: int | None = None,
    ) -> None:
        self._deals = deal_store
        self._tasks = task_service
        self._concurrency = concurrency or get_settings().FOLLOW_UP_CONCURRENCY
        self._stop_event = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Stop scheduling; deals not yet started are left untouched."""
        self._stop_event.set()
        logger.info("scheduler.stop_requested")

    def resume(self) -> None:
        self._stop_event.clear()

    async def schedule_follow_ups(
        self,
        agent_id: str | None = None,
        now: datetime | None = None,
    ) -> FollowUpSummary:
        """Run one follow-up scan over open deals.

        Args:
            agent_id: Only scan this agent's deals (all deals if None).
            now: Reference instant for staleness (defaults to current UTC).

        Returns:
            FollowUpSummary with scheduled, skipped and errored deal counts.

        Raises:
            PersistenceError: If the deal set cannot be enumerated.
        """
        now = now or datetime.now(timezone.utc)

        try:
            deals = await self._deals.list_deals(agent_id)
        except Exception:
            follow_up_runs_total.labels(outcome="error").inc()
            logger.error("scheduler.enumeration_failed", agent_id=agent_id, exc_info=True)
            raise

        candidates = [d for d in deals if not is_closed(d) and needs_follow_up(d, now)]
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(deal: Deal) -> str | None:
            async with semaphore:
                if self.stopped:
                    return None
                return await self._schedule_deal(deal, now)

        results = await asyncio.gather(*(_bounded(d) for d in candidates))

        summary = FollowUpSummary(
            scheduled=results.count("scheduled"),
            skipped=results.count("skipped"),
            errors=results.count("error"),
        )
        follow_up_runs_total.labels(
            outcome="stopped" if self.stopped else "completed"
        ).inc()
        logger.info(
            "scheduler.run_completed",
            agent_id=agent_id,
            candidates=len(candidates),
            scheduled=summary.scheduled,
            skipped=summary.skipped,
            errors=summary.errors,
            stopped=self.stopped,
        )
        return summary

    async def _schedule_deal(self, deal: Deal, now: datetime) -> str:
        """Schedule follow-ups for one deal; returns scheduled, skipped or error."""
        try:
            trigger = determine_follow_up_type(deal, now)
            if trigger is None:
                follow_up_deals_total.labels(result="skipped").inc()
                return "skipped"

            specs = generate_tasks(trigger, deal)
            tasks = await self._tasks.create_automated_tasks(deal, trigger, specs, now=now)

            due_dates = [t.due_date for t in tasks if t.due_date is not None]
            if due_dates:
                updated = deal.model_copy(deep=True)
                updated.next_follow_up = min(due_dates)
                updated.updated_at = now
                await self._deals.upsert(updated)

            follow_up_deals_total.labels(result="scheduled").inc()
            logger.info(
                "scheduler.follow_up_scheduled",
                deal_id=deal.id,
                trigger=trigger.value,
                tasks=len(tasks),
            )
            return "scheduled"
        except Exception:
            follow_up_deals_total.labels(result="error").inc()
            logger.warning("scheduler.deal_failed", deal_id=deal.id, exc_info=True)
            return "error"

    async def run_periodic(
        self,
        interval_seconds: float | None = None,
        agent_id: str | None = None,
    ) -> None:
        """Background loop running a scan every interval until stopped or cancelled."""
        interval = interval_seconds or get_settings().FOLLOW_UP_SCAN_INTERVAL_SECONDS
        logger.info("scheduler.periodic_started", interval_seconds=interval)

        while not self.stopped:
            try:
                await asyncio.sleep(interval)
                if self.stopped:
                    break
                await self.schedule_follow_ups(agent_id)
            except asyncio.CancelledError:
                logger.info("scheduler.periodic_cancelled")
                break
            except Exception:
                logger.warning("scheduler.periodic_run_failed", exc_info=True)

        logger.info("scheduler.periodic_stopped")


__all__ = [
    "FollowUpScheduler",
    "FollowUpSummary",
    "days_since_activity",
    "determine_follow_up_type",
    "needs_follow_up",
]

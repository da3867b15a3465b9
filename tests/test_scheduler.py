"""Tests for FollowUpScheduler and its staleness rules.

Tests cover:
- needs_follow_up: per-stage thresholds, never-active deals
- days_since_activity: offset-aware activity times measured in UTC
- determine_follow_up_type: precedence of initial/urgent/nurture/regular
- schedule_follow_ups: summary counts, closed deals excluded, agent filter,
  next_follow_up persisted, per-deal error isolation, enumeration failure
- stop(): deals not yet started are untouched and uncounted
- run_periodic: repeated runs, clean stop and cancellation
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.crm.deals.repository import (
    InMemoryDealRepository,
    InMemoryTaskRepository,
    PersistenceError,
)
from src.crm.deals.schemas import DealStage, DealStatus
from src.crm.engagement.scheduler import (
    FollowUpScheduler,
    FollowUpSummary,
    days_since_activity,
    determine_follow_up_type,
    needs_follow_up,
)
from src.crm.tasks.schemas import TaskCreate, TaskTrigger, TaskType
from src.crm.tasks.service import TaskService
from tests.factories import NOW, make_deal


def _ago(**kwargs) -> datetime:
    return NOW - timedelta(**kwargs)


# ── Test Doubles ────────────────────────────────────────────────────────────


class FlakyTaskRepository(InMemoryTaskRepository):
    """Task store that fails for one deal id."""

    def __init__(self, failing_deal_id: str) -> None:
        super().__init__()
        self._failing = failing_deal_id

    async def create(self, data: TaskCreate):
        if data.deal_id == self._failing:
            raise PersistenceError(f"cannot write task for {data.deal_id}")
        return await super().create(data)


class UnavailableDealRepository(InMemoryDealRepository):
    async def list_deals(self, agent_id=None):
        raise PersistenceError("deal store offline")


# ── Staleness rule tests ────────────────────────────────────────────────────


class TestNeedsFollowUp:
    """Tests for needs_follow_up."""

    def test_never_active_always_stale(self) -> None:
        assert needs_follow_up(make_deal(deal_stage=DealStage.ENGAGED), NOW)

    @pytest.mark.parametrize(
        ("stage", "threshold_hours"),
        [
            (DealStage.CREATED, 48),
            (DealStage.SHARED, 48),
            (DealStage.ACCESSED, 24),
            (DealStage.ENGAGED, 24),
            (DealStage.QUALIFIED, 12),
            (DealStage.ADVANCED, 72),
        ],
    )
    def test_stage_thresholds(self, stage: DealStage, threshold_hours: int) -> None:
        at_threshold = make_deal(deal_stage=stage, last_activity_at=_ago(hours=threshold_hours))
        just_before = make_deal(
            deal_stage=stage, last_activity_at=_ago(hours=threshold_hours, seconds=-60)
        )
        assert needs_follow_up(at_threshold, NOW)
        assert not needs_follow_up(just_before, NOW)


class TestOffsetActivity:
    """Staleness uses the real elapsed time whatever the stored offset."""

    # 14:00+03:00 on Mar 1 is 11:00 UTC, 25 hours before NOW
    ACTIVITY = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=3)))

    def test_days_since_activity(self) -> None:
        deal = make_deal(last_activity_at=self.ACTIVITY)
        assert days_since_activity(deal, NOW) == pytest.approx(25 / 24)

    def test_stale_past_engaged_threshold(self) -> None:
        deal = make_deal(deal_stage=DealStage.ENGAGED, last_activity_at=self.ACTIVITY)
        assert needs_follow_up(deal, NOW)

    def test_hot_deal_urgent(self) -> None:
        deal = make_deal(engagement_score=85, last_activity_at=self.ACTIVITY)
        assert determine_follow_up_type(deal, NOW) == TaskTrigger.URGENT_FOLLOW_UP

    def test_never_active_has_no_age(self) -> None:
        assert days_since_activity(make_deal(), NOW) is None


class TestDetermineFollowUpType:
    """Tests for determine_follow_up_type precedence."""

    def test_never_active_initial(self) -> None:
        assert determine_follow_up_type(make_deal(), NOW) == TaskTrigger.INITIAL_FOLLOW_UP

    def test_hot_one_day_urgent(self) -> None:
        deal = make_deal(engagement_score=80, last_activity_at=_ago(days=1))
        assert determine_follow_up_type(deal, NOW) == TaskTrigger.URGENT_FOLLOW_UP

    def test_hot_beats_nurture(self) -> None:
        deal = make_deal(engagement_score=90, last_activity_at=_ago(days=10))
        assert determine_follow_up_type(deal, NOW) == TaskTrigger.URGENT_FOLLOW_UP

    def test_week_nurture(self) -> None:
        deal = make_deal(engagement_score=40, last_activity_at=_ago(days=7))
        assert determine_follow_up_type(deal, NOW) == TaskTrigger.NURTURE_SEQUENCE

    def test_three_days_regular(self) -> None:
        deal = make_deal(engagement_score=40, last_activity_at=_ago(days=3))
        assert determine_follow_up_type(deal, NOW) == TaskTrigger.REGULAR_FOLLOW_UP

    def test_recent_warm_none(self) -> None:
        deal = make_deal(engagement_score=40, last_activity_at=_ago(days=2))
        assert determine_follow_up_type(deal, NOW) is None

    def test_hot_under_a_day_none(self) -> None:
        deal = make_deal(engagement_score=95, last_activity_at=_ago(hours=20))
        assert determine_follow_up_type(deal, NOW) is None


# ── schedule_follow_ups tests ───────────────────────────────────────────────


def _pipeline() -> list:
    return [
        make_deal(id="never", deal_stage=DealStage.SHARED),
        make_deal(
            id="hot",
            deal_stage=DealStage.ENGAGED,
            engagement_score=80,
            last_activity_at=_ago(hours=36),
        ),
        make_deal(
            id="quiet-week",
            deal_stage=DealStage.ACCESSED,
            engagement_score=40,
            last_activity_at=_ago(days=8),
        ),
        make_deal(id="quiet", deal_stage=DealStage.CREATED, last_activity_at=_ago(days=4)),
        make_deal(
            id="stale-qualified",
            deal_stage=DealStage.QUALIFIED,
            engagement_score=50,
            last_activity_at=_ago(days=1),
        ),
        make_deal(id="fresh", deal_stage=DealStage.ENGAGED, last_activity_at=_ago(hours=12)),
        make_deal(
            id="won",
            deal_stage=DealStage.CLOSED,
            deal_status=DealStatus.CLOSED_WON,
        ),
    ]


class TestScheduleFollowUps:
    """Tests for FollowUpScheduler.schedule_follow_ups."""

    @pytest.mark.asyncio
    async def test_summary_counts(self, task_service: TaskService) -> None:
        scheduler = FollowUpScheduler(InMemoryDealRepository(_pipeline()), task_service)

        summary = await scheduler.schedule_follow_ups(now=NOW)

        assert summary == FollowUpSummary(scheduled=4, skipped=1, errors=0)

    @pytest.mark.asyncio
    async def test_tasks_match_follow_up_type(
        self, task_service: TaskService, task_store: InMemoryTaskRepository
    ) -> None:
        scheduler = FollowUpScheduler(InMemoryDealRepository(_pipeline()), task_service)
        await scheduler.schedule_follow_ups(now=NOW)

        expected = {
            "never": "initial_follow_up",
            "hot": "urgent_follow_up",
            "quiet-week": "nurture_sequence",
            "quiet": "regular_follow_up",
        }
        for deal_id, trigger in expected.items():
            tasks = await task_store.list_for_deal(deal_id)
            assert [t.trigger_type for t in tasks] == [trigger]

        assert (await task_store.list_for_deal("hot"))[0].type == TaskType.URGENT_FOLLOW_UP
        for untouched in ("stale-qualified", "fresh", "won"):
            assert await task_store.list_for_deal(untouched) == []

    @pytest.mark.asyncio
    async def test_next_follow_up_persisted(self, task_service: TaskService) -> None:
        deal_store = InMemoryDealRepository(_pipeline())
        scheduler = FollowUpScheduler(deal_store, task_service)

        await scheduler.schedule_follow_ups(now=NOW)

        hot = await deal_store.get("hot")
        fresh = await deal_store.get("fresh")
        assert hot is not None and hot.next_follow_up == NOW + timedelta(hours=2)
        assert fresh is not None and fresh.next_follow_up is None

    @pytest.mark.asyncio
    async def test_agent_filter(self, task_service: TaskService) -> None:
        deals = [
            make_deal(id="mine"),
            make_deal(id="theirs", link_id="theirs", agent_id="agent-2"),
        ]
        scheduler = FollowUpScheduler(InMemoryDealRepository(deals), task_service)

        summary = await scheduler.schedule_follow_ups(agent_id="agent-2", now=NOW)

        assert summary.scheduled == 1

    @pytest.mark.asyncio
    async def test_per_deal_error_isolated(self) -> None:
        deals = [make_deal(id=f"deal-{i}") for i in range(3)]
        task_service = TaskService(FlakyTaskRepository(failing_deal_id="deal-1"))
        scheduler = FollowUpScheduler(InMemoryDealRepository(deals), task_service)

        summary = await scheduler.schedule_follow_ups(now=NOW)

        assert summary == FollowUpSummary(scheduled=2, skipped=0, errors=1)

    @pytest.mark.asyncio
    async def test_enumeration_failure_raises(self, task_service: TaskService) -> None:
        scheduler = FollowUpScheduler(UnavailableDealRepository(), task_service)

        with pytest.raises(PersistenceError, match="deal store offline"):
            await scheduler.schedule_follow_ups(now=NOW)

    @pytest.mark.asyncio
    async def test_empty_store(self, task_service: TaskService) -> None:
        scheduler = FollowUpScheduler(InMemoryDealRepository(), task_service)
        assert await scheduler.schedule_follow_ups(now=NOW) == FollowUpSummary()


# ── Cancellation tests ──────────────────────────────────────────────────────


class TestStop:
    """Tests for stop() between deals."""

    @pytest.mark.asyncio
    async def test_stopped_before_run(
        self, task_service: TaskService, task_store: InMemoryTaskRepository
    ) -> None:
        scheduler = FollowUpScheduler(InMemoryDealRepository(_pipeline()), task_service)
        scheduler.stop()

        summary = await scheduler.schedule_follow_ups(now=NOW)

        assert summary == FollowUpSummary()
        assert await task_store.list_for_deal("never") == []

    @pytest.mark.asyncio
    async def test_stop_mid_run_leaves_remaining_deals(self) -> None:
        deals = [make_deal(id=f"deal-{i}") for i in range(4)]
        scheduler: FollowUpScheduler

        class StoppingTaskRepository(InMemoryTaskRepository):
            async def create(self, data: TaskCreate):
                scheduler.stop()
                return await super().create(data)

        task_store = StoppingTaskRepository()
        scheduler = FollowUpScheduler(
            InMemoryDealRepository(deals), TaskService(task_store), concurrency=1
        )

        summary = await scheduler.schedule_follow_ups(now=NOW)

        assert summary.scheduled == 1
        written = [t for i in range(4) for t in await task_store.list_for_deal(f"deal-{i}")]
        assert len(written) == 1

    @pytest.mark.asyncio
    async def test_resume_allows_new_runs(self, task_service: TaskService) -> None:
        scheduler = FollowUpScheduler(InMemoryDealRepository([make_deal()]), task_service)
        scheduler.stop()
        scheduler.resume()

        summary = await scheduler.schedule_follow_ups(now=NOW)

        assert summary.scheduled == 1


class TestRunPeriodic:
    """Tests for the periodic background loop."""

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self, task_service: TaskService) -> None:
        scheduler = FollowUpScheduler(InMemoryDealRepository(), task_service)
        calls: list[str | None] = []

        async def fake_run(agent_id=None, now=None):
            calls.append(agent_id)
            if len(calls) == 2:
                scheduler.stop()
            return FollowUpSummary()

        scheduler.schedule_follow_ups = fake_run  # type: ignore[method-assign]

        await asyncio.wait_for(scheduler.run_periodic(0.01, agent_id="agent-1"), timeout=2)

        assert calls == ["agent-1", "agent-1"]

    @pytest.mark.asyncio
    async def test_run_failure_does_not_end_loop(self, task_service: TaskService) -> None:
        scheduler = FollowUpScheduler(InMemoryDealRepository(), task_service)
        calls = 0

        async def failing_run(agent_id=None, now=None):
            nonlocal calls
            calls += 1
            if calls == 3:
                scheduler.stop()
            raise PersistenceError("offline")

        scheduler.schedule_follow_ups = failing_run  # type: ignore[method-assign]

        await asyncio.wait_for(scheduler.run_periodic(0.01), timeout=2)

        assert calls == 3

    @pytest.mark.asyncio
    async def test_cancellation_exits_cleanly(self, task_service: TaskService) -> None:
        scheduler = FollowUpScheduler(InMemoryDealRepository(), task_service)

        loop_task = asyncio.create_task(scheduler.run_periodic(60))
        await asyncio.sleep(0.01)
        loop_task.cancel()
        await asyncio.wait_for(loop_task, timeout=2)

        assert loop_task.done()

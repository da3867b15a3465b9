"""Store contracts for deals, activities and tasks, plus in-memory stores.

The engine only talks to storage through the async protocols below, so any
backend that implements them can be plugged in. Lookups of missing records
return None (or an empty list); backend failures are raised as
PersistenceError and propagate unchanged through the engine.

The in-memory implementations copy models on the way in and out so callers
never share mutable state with the store.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Protocol

import structlog

from src.crm.deals.schemas import ActivityRecord, Deal, SessionAggregate
from src.crm.tasks.schemas import Task, TaskCreate

logger = structlog.get_logger(__name__)


class PersistenceError(RuntimeError):
    """Raised by a store when a read or write fails in the backend."""


# ── Store Protocols ─────────────────────────────────────────────────────────


class DealStore(Protocol):
    async def get(self, deal_id: str) -> Deal | None: ...
    async def upsert(self, deal: Deal) -> None: ...
    async def list_deals(self, agent_id: str | None = None) -> list[Deal]: ...


class ActivityStore(Protocol):
    async def get_activities(self, deal_id: str) -> list[ActivityRecord]: ...
    async def get_session_aggregate(self, deal_id: str) -> SessionAggregate: ...


class TaskStore(Protocol):
    async def create(self, data: TaskCreate) -> Task: ...
    async def get(self, task_id: str) -> Task | None: ...
    async def update(self, task: Task) -> None: ...
    async def list_for_deal(self, deal_id: str) -> list[Task]: ...


# ── In-Memory Stores ────────────────────────────────────────────────────────


class InMemoryDealRepository:
    """Dict-backed DealStore."""

    def __init__(self, deals: Iterable[Deal] = ()) -> None:
        self._deals: dict[str, Deal] = {d.id: d.model_copy(deep=True) for d in deals}

    async def get(self, deal_id: str) -> Deal | None:
        deal = self._deals.get(deal_id)
        return deal.model_copy(deep=True) if deal else None

    async def upsert(self, deal: Deal) -> None:
        self._deals[deal.id] = deal.model_copy(deep=True)

    async def list_deals(self, agent_id: str | None = None) -> list[Deal]:
        return [
            d.model_copy(deep=True)
            for d in self._deals.values()
            if agent_id is None or d.agent_id == agent_id
        ]


class InMemoryActivityRepository:
    """Dict-backed ActivityStore keyed by deal id."""

    def __init__(self) -> None:
        self._activities: dict[str, list[ActivityRecord]] = {}
        self._sessions: dict[str, SessionAggregate] = {}

    def add_activity(self, deal_id: str, activity: ActivityRecord) -> None:
        self._activities.setdefault(deal_id, []).append(activity)

    def set_session_aggregate(self, deal_id: str, aggregate: SessionAggregate) -> None:
        self._sessions[deal_id] = aggregate

    async def get_activities(self, deal_id: str) -> list[ActivityRecord]:
        return list(self._activities.get(deal_id, []))

    async def get_session_aggregate(self, deal_id: str) -> SessionAggregate:
        return self._sessions.get(deal_id, SessionAggregate()).model_copy()


class InMemoryTaskRepository:
    """Dict-backed TaskStore assigning uuid ids on create."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    async def create(self, data: TaskCreate) -> Task:
        task = Task(
            id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc),
            **data.model_dump(),
        )
        self._tasks[task.id] = task
        return task.model_copy()

    async def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy() if task else None

    async def update(self, task: Task) -> None:
        if task.id not in self._tasks:
            logger.warning("task_store.update_missing", task_id=task.id)
            raise PersistenceError(f"Task {task.id} does not exist")
        self._tasks[task.id] = task.model_copy()

    async def list_for_deal(self, deal_id: str) -> list[Task]:
        return [t.model_copy() for t in self._tasks.values() if t.deal_id == deal_id]


__all__ = [
    "ActivityStore",
    "DealStore",
    "InMemoryActivityRepository",
    "InMemoryDealRepository",
    "InMemoryTaskRepository",
    "PersistenceError",
    "TaskStore",
]

"""Task creation, automated task persistence and status updates.

TaskService sits between the engine and a TaskStore. Manual tasks are
validated before anything is written; automated tasks come from rule-engine
TaskSpecs and get their absolute due dates resolved at persistence time.

The completion timestamp invariant lives here: completed_at is set when a
task moves to COMPLETED and cleared on any other status.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone

import structlog

from src.crm.core.context import AgentContext
from src.crm.core.monitoring import automated_tasks_created_total, bounded_label
from src.crm.deals.repository import TaskStore
from src.crm.deals.schemas import Deal
from src.crm.tasks.schemas import Task, TaskCreate, TaskSpec, TaskStatus
from src.crm.tasks.rules import TRIGGER_METRIC_LABELS

logger = structlog.get_logger(__name__)

MANUAL_TRIGGER = "manual"


class TaskValidationError(ValueError):
    """Raised when a task payload is missing required fields."""

    def __init__(self, missing_fields: list[str]) -> None:
        self.missing_fields = missing_fields
        super().__init__(f"Missing required fields: {' and '.join(missing_fields)}")


class TaskService:
    """Creates and updates agent tasks through a TaskStore.

    Args:
        task_store: Backend implementing the TaskStore protocol.
    """

    def __init__(self, task_store: TaskStore) -> None:
        self._store = task_store

    @staticmethod
    def validate(data: TaskCreate) -> None:
        """Raise TaskValidationError if deal_id or title is blank."""
        missing = [name for name in ("deal_id", "title") if not getattr(data, name).strip()]
        if missing:
            raise TaskValidationError(missing)

    async def create_task(self, agent: AgentContext, data: TaskCreate) -> Task:
        """Create a manual task on behalf of an agent.

        Manual tasks are never automated; the calling agent owns the task
        unless the payload names one.

        Raises:
            TaskValidationError: Before persistence, if deal_id or title is missing.
        """
        self.validate(data)

        payload = data.model_copy(
            update={
                "agent_id": data.agent_id or agent.agent_id,
                "is_automated": False,
                "trigger_type": data.trigger_type or MANUAL_TRIGGER,
            }
        )
        task = await self._store.create(payload)

        logger.info(
            "tasks.created",
            task_id=task.id,
            deal_id=task.deal_id,
            agent_id=task.agent_id,
            type=task.type.value,
        )
        return task

    async def create_automated_tasks(
        self,
        deal: Deal,
        trigger: str,
        specs: Sequence[TaskSpec],
        now: datetime | None = None,
    ) -> list[Task]:
        """Persist rule-engine output as automated tasks for a deal.

        Tasks are written one at a time in the order given. A store failure
        propagates immediately; tasks already written stay written.

        Returns:
            Persisted tasks in input order.
        """
        now = now or datetime.now(timezone.utc)
        trigger_label = getattr(trigger, "value", trigger)
        metric_label = bounded_label(trigger_label, TRIGGER_METRIC_LABELS)
        created: list[Task] = []

        for spec in specs:
            task = await self._store.create(
                TaskCreate(
                    deal_id=deal.id,
                    agent_id=deal.agent_id,
                    title=spec.title,
                    description=spec.description,
                    type=spec.type,
                    priority=spec.priority,
                    is_automated=True,
                    trigger_type=trigger_label,
                    due_date=spec.due_date_from(now),
                )
            )
            automated_tasks_created_total.labels(trigger=metric_label).inc()
            created.append(task)

        if created:
            logger.info(
                "tasks.automated_created",
                deal_id=deal.id,
                trigger=trigger_label,
                count=len(created),
            )
        return created

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Task | None:
        """Move a task to a new status.

        Returns:
            The updated task, or None if no task has this id.
        """
        task = await self._store.get(task_id)
        if task is None:
            return None

        updated = task.model_copy(
            update={
                "status": status,
                "completed_at": (now or datetime.now(timezone.utc))
                if status == TaskStatus.COMPLETED
                else None,
                "notes": notes or task.notes,
            }
        )
        await self._store.update(updated)

        logger.info(
            "tasks.status_updated",
            task_id=task_id,
            from_status=task.status.value,
            to_status=status.value,
        )
        return updated

    async def list_tasks(self, deal_id: str) -> list[Task]:
        return await self._store.list_for_deal(deal_id)


__all__ = ["MANUAL_TRIGGER", "TaskService", "TaskValidationError"]

"""Pydantic schemas for agent tasks -- rule output, creation payloads, stored tasks.

Defines:
- Enums: TaskType, TaskPriority, TaskStatus, TaskTrigger
- TaskSpec: ephemeral rule-engine output with a relative due offset
- TaskCreate: payload handed to a TaskStore for persistence
- Task: persisted task with id, status and completion timestamp
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import AwareDatetime, BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class TaskType(str, Enum):
    """Kind of work an agent task represents."""

    CALL = "call"
    EMAIL = "email"
    TEXT_MESSAGE = "text_message"
    SHOWING = "showing"
    FOLLOW_UP = "follow_up"
    URGENT_CALL = "urgent_call"
    URGENT_FOLLOW_UP = "urgent_follow_up"
    PREPARATION = "preparation"
    FEEDBACK_COLLECTION = "feedback_collection"
    APPOINTMENT_SCHEDULING = "appointment_scheduling"
    MONITORING = "monitoring"
    ANALYSIS = "analysis"
    CONSULTATION = "consultation"
    DOCUMENTATION = "documentation"
    NURTURE = "nurture"
    GENERAL = "general"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISMISSED = "dismissed"


class TaskTrigger(str, Enum):
    """Named situations the rule engine knows how to respond to.

    The last four are produced only by the follow-up scheduler.
    """

    HIGH_ENGAGEMENT = "high_engagement"
    LINK_ACCESSED = "link_accessed"
    MULTIPLE_LIKES = "multiple_likes"
    COLD_LEAD = "cold_lead"
    FIRST_SHOWING_ATTENDED = "first_showing_attended"
    LINK_CREATED = "link_created"
    URGENT_FOLLOW_UP = "urgent_follow_up"
    REGULAR_FOLLOW_UP = "regular_follow_up"
    NURTURE_SEQUENCE = "nurture_sequence"
    INITIAL_FOLLOW_UP = "initial_follow_up"


# ── Task Schemas ────────────────────────────────────────────────────────────


class TaskSpec(BaseModel):
    """Unpersisted task description produced by the rule engine.

    due_in is an offset from the moment the task is persisted, so rule
    output stays independent of the clock.
    """

    title: str
    description: str = ""
    type: TaskType
    priority: TaskPriority
    due_in: timedelta | None = None

    def due_date_from(self, now: datetime) -> datetime | None:
        """Absolute due date for this spec relative to now."""
        if self.due_in is None:
            return None
        return now + self.due_in


class TaskCreate(BaseModel):
    """Payload for persisting a task (manual or automated)."""

    deal_id: str = ""
    agent_id: str | None = None
    title: str = ""
    description: str = ""
    type: TaskType = TaskType.GENERAL
    priority: TaskPriority = TaskPriority.MEDIUM
    is_automated: bool = False
    trigger_type: str | None = None
    due_date: AwareDatetime | None = None
    notes: str | None = None


class Task(BaseModel):
    """Persisted agent task.

    completed_at is set exactly when status is COMPLETED.
    """

    id: str
    deal_id: str
    agent_id: str | None = None
    title: str
    description: str = ""
    type: TaskType = TaskType.GENERAL
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    is_automated: bool = False
    trigger_type: str | None = None
    due_date: AwareDatetime | None = None
    created_at: AwareDatetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: AwareDatetime | None = None
    notes: str | None = None

"""Pydantic schemas for the deal lifecycle -- deals, engagement inputs, conversion inputs.

Defines all structured types the engine passes between components:
- Enums: DealStage, DealStatus, ClientTemperature, ActivityAction, EventAction
- Deal: the CRM record for a shared property collection
- Engagement inputs: ActivityRecord, SessionAggregate, EngagementEvent
- Conversion inputs: LinkRecord, PropertyRecord, ClientInfo
- EngagementResult: outcome of processing one engagement event

All timestamps are timezone-aware (pydantic AwareDatetime); naive values
are rejected when a model is built or a Deal field is assigned.

Stage and status are closed enums so the transition tables in
state_machine can be checked for exhaustiveness.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, computed_field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class DealStage(str, Enum):
    """Ordered pipeline position of a deal (created first, closed last)."""

    CREATED = "created"
    SHARED = "shared"
    ACCESSED = "accessed"
    ENGAGED = "engaged"
    QUALIFIED = "qualified"
    ADVANCED = "advanced"
    CLOSED = "closed"


class DealStatus(str, Enum):
    """Business-outcome classification of a deal."""

    ACTIVE = "active"
    QUALIFIED = "qualified"
    NURTURING = "nurturing"
    CLOSED_WON = "closed-won"
    CLOSED_LOST = "closed-lost"


class ClientTemperature(str, Enum):
    """Categorical engagement tier derived from the engagement score."""

    COLD = "cold"
    WARM = "warm"
    HOT = "hot"


class ActivityAction(str, Enum):
    """Recorded client activities that carry an engagement weight."""

    LINK_ACCESSED = "link_accessed"
    PROPERTY_VIEWED = "property_viewed"
    PROPERTY_LIKED = "property_liked"
    PROPERTY_SHARED = "property_shared"
    CONTACT_FORM_SUBMITTED = "contact_form_submitted"
    PHONE_CLICKED = "phone_clicked"
    EMAIL_CLICKED = "email_clicked"


class EventAction(str, Enum):
    """Swipe-session interactions that can nudge a deal's stage forward."""

    VIEW = "view"
    LIKE = "like"
    DISLIKE = "dislike"
    CONSIDER = "consider"
    DETAIL = "detail"


# ── Deal ────────────────────────────────────────────────────────────────────


class Deal(BaseModel):
    """CRM record for a shared property collection and its prospective client.

    client_temperature is computed from engagement_score on every read, so
    the pair can never disagree. deal_value is fixed at conversion time.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str
    link_id: str
    agent_id: str
    deal_name: str = ""
    deal_status: DealStatus = DealStatus.ACTIVE
    deal_stage: DealStage = DealStage.CREATED
    deal_value: int = Field(default=0, ge=0)

    # Client identity
    client_id: str | None = None
    client_name: str | None = None
    client_email: str | None = None
    client_phone: str | None = None

    # Property portfolio
    property_ids: list[str] = Field(default_factory=list)
    property_count: int = 0

    # Engagement
    engagement_score: int = Field(default=0, ge=0, le=100)
    session_count: int = Field(default=0, ge=0)
    total_time_spent: int = Field(default=0, ge=0)
    last_activity_at: AwareDatetime | None = None
    next_follow_up: AwareDatetime | None = None

    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: AwareDatetime = Field(default_factory=_utcnow)
    updated_at: AwareDatetime = Field(default_factory=_utcnow)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def client_temperature(self) -> ClientTemperature:
        from src.crm.deals.scoring import classify_temperature

        return classify_temperature(self.engagement_score)


# ── Engagement Inputs ───────────────────────────────────────────────────────


class ActivityRecord(BaseModel):
    """One recorded client activity on a deal's link."""

    action: str
    created_at: AwareDatetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionAggregate(BaseModel):
    """Session totals for a deal's link."""

    session_count: int = Field(default=0, ge=0)
    total_time_spent: int = Field(default=0, ge=0, description="Seconds across all sessions")


class EngagementEvent(BaseModel):
    """A single client interaction to be processed by the orchestrator."""

    action: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    client_id: str | None = None
    deal_id: str | None = None
    occurred_at: AwareDatetime = Field(default_factory=_utcnow)

    def to_activity(self) -> ActivityRecord:
        """Represent this event as an activity for re-scoring."""
        return ActivityRecord(
            action=self.action,
            created_at=self.occurred_at,
            metadata=self.metadata,
        )


class EngagementResult(BaseModel):
    """Outcome of processing one engagement event."""

    deal: Deal | None = None
    score_updated: bool = False
    new_tasks_count: int = 0
    stage_changed: bool = False


# ── Conversion Inputs ───────────────────────────────────────────────────────


class PropertyRecord(BaseModel):
    """Property listed in a shared collection (only fields the engine reads)."""

    id: str
    price: float | None = None
    bedrooms: int | None = None


class LinkRecord(BaseModel):
    """Shared property collection link that becomes a deal."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str | None = None
    code: str | None = None
    agent_id: str | None = None
    property_ids: list[str] = Field(default_factory=list)
    created_at: AwareDatetime = Field(default_factory=_utcnow)


class ClientInfo(BaseModel):
    """Optional client identity captured when the link is shared."""

    name: str | None = None
    email: str | None = None
    phone: str | None = None

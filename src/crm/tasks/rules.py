"""Task rule engine -- maps a trigger and a deal snapshot to task specs.

Rules are declared as data in TASK_RULES: each trigger lists task templates
with a type, a priority (or None for the temperature-based default) and a
due offset. generate_tasks is pure: the same trigger and deal always yield
the same specs, and no clock is read (due dates are offsets).

Raw event actions ("view", "like", ...) are not triggers. They dispatch to
HIGH_ENGAGEMENT for hot or very high scoring deals and to a generic
engagement follow-up otherwise.

Alongside the trigger table sit three condition-driven tables:
AUTOMATION_RULES (deal filters on stage, status, score range and days since
activity), STAGE_TASKS (one task on entering each stage) and
ENGAGEMENT_TIERS (one task per score tier). automation_tasks runs all three.

Exports:
    TASK_RULES: Trigger -> task templates.
    SCHEDULER_TRIGGERS: Triggers produced only by the follow-up scheduler.
    generate_tasks: Produce TaskSpecs for a trigger and deal.
    default_priority: Temperature-based default priority.
    resolve_due_date: Absolute due date for a spec.
    AUTOMATION_RULES / rule_matches: Condition-based rules and their filter.
    stage_tasks / engagement_tier_tasks / automation_tasks: Deal-state tasks.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel

from src.crm.core.monitoring import ENGAGEMENT_ACTION_LABELS
from src.crm.deals.schemas import ClientTemperature, Deal, DealStage, DealStatus
from src.crm.deals.scoring import round_half_up
from src.crm.deals.state_machine import is_closed
from src.crm.tasks.schemas import TaskPriority, TaskSpec, TaskTrigger, TaskType

HIGH_ENGAGEMENT_SCORE = 80


class TaskTemplate(BaseModel):
    """One task a rule emits. priority=None means temperature default."""

    title: str
    description: str
    type: TaskType
    priority: TaskPriority | None = None
    due_in: timedelta | None = None


# ── Rule Table ──────────────────────────────────────────────────────────────

TASK_RULES: dict[TaskTrigger, tuple[TaskTemplate, ...]] = {
    TaskTrigger.HIGH_ENGAGEMENT: (
        TaskTemplate(
            title="Hot Lead - Call immediately",
            description="{client} is highly engaged with {deal_name} (score {score}). "
            "Call right away.",
            type=TaskType.URGENT_CALL,
            priority=TaskPriority.URGENT,
            due_in=timedelta(hours=1),
        ),
        TaskTemplate(
            title="Hot Lead - Send curated shortlist",
            description="Send {client} a shortlist based on the properties they engaged with.",
            type=TaskType.EMAIL,
            priority=TaskPriority.HIGH,
            due_in=timedelta(hours=4),
        ),
    ),
    TaskTrigger.LINK_ACCESSED: (
        TaskTemplate(
            title="Check-in call",
            description="{client} opened {deal_name}. Check in about first impressions.",
            type=TaskType.CALL,
            due_in=timedelta(hours=24),
        ),
    ),
    TaskTrigger.MULTIPLE_LIKES: (
        TaskTemplate(
            title="Schedule Showing",
            description="{client} liked several properties. Offer a showing.",
            type=TaskType.SHOWING,
            priority=TaskPriority.HIGH,
            due_in=timedelta(hours=24),
        ),
        TaskTemplate(
            title="Follow up on liked properties",
            description="Discuss the liked properties in {deal_name} with {client}.",
            type=TaskType.FOLLOW_UP,
            due_in=timedelta(hours=48),
        ),
    ),
    TaskTrigger.COLD_LEAD: (
        TaskTemplate(
            title="Re-engagement email",
            description="Engagement on {deal_name} has dropped. Send fresh listings.",
            type=TaskType.EMAIL,
            priority=TaskPriority.LOW,
            due_in=timedelta(hours=72),
        ),
    ),
    TaskTrigger.FIRST_SHOWING_ATTENDED: (
        TaskTemplate(
            title="Request Showing Feedback",
            description="Ask {client} for feedback on the first showing.",
            type=TaskType.FEEDBACK_COLLECTION,
            priority=TaskPriority.HIGH,
            due_in=timedelta(hours=4),
        ),
        TaskTemplate(
            title="Plan Next Steps",
            description="Agree next steps with {client} after the showing.",
            type=TaskType.FOLLOW_UP,
            due_in=timedelta(hours=24),
        ),
    ),
    TaskTrigger.LINK_CREATED: (
        TaskTemplate(
            title="Follow up on shared property link",
            description="Check whether {client} has opened {deal_name}.",
            type=TaskType.FOLLOW_UP,
            priority=TaskPriority.MEDIUM,
            due_in=timedelta(hours=24),
        ),
    ),
    TaskTrigger.URGENT_FOLLOW_UP: (
        TaskTemplate(
            title="Urgent follow-up",
            description="Hot lead {client} has gone quiet on {deal_name}. Reach out now.",
            type=TaskType.URGENT_FOLLOW_UP,
            priority=TaskPriority.URGENT,
            due_in=timedelta(hours=2),
        ),
    ),
    TaskTrigger.REGULAR_FOLLOW_UP: (
        TaskTemplate(
            title="Follow up with client",
            description="No activity on {deal_name} for a few days. Touch base with {client}.",
            type=TaskType.FOLLOW_UP,
            due_in=timedelta(hours=24),
        ),
    ),
    TaskTrigger.NURTURE_SEQUENCE: (
        TaskTemplate(
            title="Nurture email",
            description="{client} has been inactive for a week. "
            "Add to the nurture sequence with new listings.",
            type=TaskType.EMAIL,
            priority=TaskPriority.LOW,
            due_in=timedelta(hours=72),
        ),
    ),
    TaskTrigger.INITIAL_FOLLOW_UP: (
        TaskTemplate(
            title="Follow up on shared link",
            description="{deal_name} has not been opened yet. Confirm {client} received it.",
            type=TaskType.FOLLOW_UP,
            due_in=timedelta(hours=24),
        ),
    ),
}

SCHEDULER_TRIGGERS: frozenset[TaskTrigger] = frozenset(
    {
        TaskTrigger.URGENT_FOLLOW_UP,
        TaskTrigger.REGULAR_FOLLOW_UP,
        TaskTrigger.NURTURE_SEQUENCE,
        TaskTrigger.INITIAL_FOLLOW_UP,
    }
)

_KNOWN_TRIGGERS: frozenset[str] = frozenset(t.value for t in TaskTrigger)

# ── Condition-Based Automation ──────────────────────────────────────────────


class AutomationConditions(BaseModel):
    """Deal filters for an automation rule. None means no filter.

    Ranges are inclusive. days_since_activity counts whole days (rounded)
    and is only checked for deals that have had activity.
    """

    stages: frozenset[DealStage] | None = None
    statuses: frozenset[DealStatus] | None = None
    score_range: tuple[int, int] | None = None
    days_since_activity: tuple[int, int] | None = None


class AutomationRule(BaseModel):
    """Named rule: when a deal matches the conditions, emit the template."""

    id: str
    name: str
    conditions: AutomationConditions
    template: TaskTemplate
    is_active: bool = True


AUTOMATION_RULES: tuple[AutomationRule, ...] = (
    AutomationRule(
        id="hot-lead-immediate",
        name="Hot Lead Immediate Contact",
        conditions=AutomationConditions(score_range=(80, 100)),
        template=TaskTemplate(
            title="Hot Lead - Call Now",
            description="High engagement score ({score}) requires immediate contact.",
            type=TaskType.URGENT_CALL,
            priority=TaskPriority.URGENT,
            due_in=timedelta(0),
        ),
    ),
    AutomationRule(
        id="qualified-followup",
        name="Qualified Lead Follow-up",
        conditions=AutomationConditions(
            stages=frozenset({DealStage.QUALIFIED}), days_since_activity=(1, 3)
        ),
        template=TaskTemplate(
            title="Qualified lead check-in",
            description="{client} is qualified but has gone quiet. Follow up.",
            type=TaskType.FOLLOW_UP,
            priority=TaskPriority.HIGH,
            due_in=timedelta(hours=2),
        ),
    ),
    AutomationRule(
        id="warm-lead-followup",
        name="Warm Lead Follow-up",
        conditions=AutomationConditions(score_range=(50, 79)),
        template=TaskTemplate(
            title="Warm Lead - Follow up within 48 hours",
            description="Moderate engagement on {deal_name}. Schedule a follow-up call.",
            type=TaskType.FOLLOW_UP,
            priority=TaskPriority.HIGH,
            due_in=timedelta(hours=24),
        ),
    ),
    AutomationRule(
        id="cold-lead-nurture",
        name="Cold Lead Nurture",
        conditions=AutomationConditions(score_range=(1, 49)),
        template=TaskTemplate(
            title="Cold Lead - Add to nurture campaign",
            description="Low engagement score ({score}). Consider a nurture sequence.",
            type=TaskType.EMAIL,
            priority=TaskPriority.LOW,
            due_in=timedelta(days=7),
        ),
    ),
)

# One task per pipeline stage, emitted when a deal enters the stage.
STAGE_TASKS: dict[DealStage, TaskTemplate] = {
    DealStage.CREATED: TaskTemplate(
        title="Prepare property collection",
        description="Review and tune the property selection in {deal_name}.",
        type=TaskType.PREPARATION,
        priority=TaskPriority.MEDIUM,
        due_in=timedelta(hours=1),
    ),
    DealStage.SHARED: TaskTemplate(
        title="Monitor link activity",
        description="Watch for {client} opening {deal_name}.",
        type=TaskType.MONITORING,
        priority=TaskPriority.LOW,
        due_in=timedelta(days=1),
    ),
    DealStage.ACCESSED: TaskTemplate(
        title="Analyze browsing behavior",
        description="Review which properties in {deal_name} caught {client}'s interest.",
        type=TaskType.ANALYSIS,
        priority=TaskPriority.MEDIUM,
        due_in=timedelta(hours=6),
    ),
    DealStage.ENGAGED: TaskTemplate(
        title="Schedule consultation call",
        description="Set up a call with {client} to go through their preferences.",
        type=TaskType.CONSULTATION,
        priority=TaskPriority.HIGH,
        due_in=timedelta(days=1),
    ),
    DealStage.QUALIFIED: TaskTemplate(
        title="Prepare property showings",
        description="Coordinate viewings for the properties {client} is interested in.",
        type=TaskType.SHOWING,
        priority=TaskPriority.HIGH,
        due_in=timedelta(days=2),
    ),
    DealStage.ADVANCED: TaskTemplate(
        title="Prepare offer documentation",
        description="Get paperwork ready for a possible offer from {client}.",
        type=TaskType.DOCUMENTATION,
        priority=TaskPriority.HIGH,
        due_in=timedelta(days=1),
    ),
}

# (minimum score, template), highest tier first. Score 0 gets nothing.
ENGAGEMENT_TIERS: tuple[tuple[int, TaskTemplate], ...] = (
    (
        80,
        TaskTemplate(
            title="HOT LEAD ({score}/100) - Priority contact",
            description="{client} is highly engaged. Immediate follow-up required.",
            type=TaskType.URGENT_FOLLOW_UP,
            priority=TaskPriority.URGENT,
            due_in=timedelta(minutes=30),
        ),
    ),
    (
        50,
        TaskTemplate(
            title="Warm lead ({score}/100) - Follow up today",
            description="{client} is showing moderate interest. Follow up within 24 hours.",
            type=TaskType.FOLLOW_UP,
            priority=TaskPriority.HIGH,
            due_in=timedelta(days=1),
        ),
    ),
    (
        1,
        TaskTemplate(
            title="Cold lead ({score}/100) - Nurture",
            description="{client} showed minimal engagement. Add to a nurture sequence.",
            type=TaskType.NURTURE,
            priority=TaskPriority.LOW,
            due_in=timedelta(days=3),
        ),
    ),
)

AUTOMATION_TRIGGER = "automation"


def stage_trigger(stage: DealStage) -> str:
    """Trigger label recorded on tasks created because a deal entered a stage."""
    return f"stage_{stage.value}"


# Bounded set of trigger values used as metric labels.
TRIGGER_METRIC_LABELS: frozenset[str] = frozenset(
    {
        *_KNOWN_TRIGGERS,
        *(stage_trigger(stage) for stage in DealStage),
        *ENGAGEMENT_ACTION_LABELS,
        AUTOMATION_TRIGGER,
    }
)

_ENGAGEMENT_FOLLOW_UP = TaskTemplate(
    title="Follow up on recent activity",
    description="{client} interacted with {deal_name} (score {score}). Follow up.",
    type=TaskType.FOLLOW_UP,
    due_in=timedelta(hours=24),
)

_TEMPERATURE_PRIORITY: dict[ClientTemperature, TaskPriority] = {
    ClientTemperature.HOT: TaskPriority.HIGH,
    ClientTemperature.WARM: TaskPriority.MEDIUM,
    ClientTemperature.COLD: TaskPriority.LOW,
}


def default_priority(temperature: ClientTemperature) -> TaskPriority:
    """Priority for templates that do not pin one: hot high, warm medium, cold low."""
    return _TEMPERATURE_PRIORITY[temperature]


def _resolve_templates(trigger: str, deal: Deal) -> tuple[TaskTemplate, ...]:
    if trigger in _KNOWN_TRIGGERS:
        return TASK_RULES[TaskTrigger(trigger)]

    if (
        deal.client_temperature == ClientTemperature.HOT
        or deal.engagement_score >= HIGH_ENGAGEMENT_SCORE
    ):
        return TASK_RULES[TaskTrigger.HIGH_ENGAGEMENT]
    return (_ENGAGEMENT_FOLLOW_UP,)


def _render(template: TaskTemplate, deal: Deal) -> TaskSpec:
    values = {
        "client": deal.client_name or "Client",
        "deal_name": deal.deal_name or deal.id,
        "score": deal.engagement_score,
    }
    return TaskSpec(
        title=template.title.format(**values),
        description=template.description.format(**values),
        type=template.type,
        priority=template.priority or default_priority(deal.client_temperature),
        due_in=template.due_in,
    )


def generate_tasks(trigger: str, deal: Deal) -> list[TaskSpec]:
    """Produce the task specs a trigger calls for on a deal.

    Args:
        trigger: A TaskTrigger value or a raw event action.
        deal: Deal snapshot (temperature and score drive priorities).

    Returns:
        List of TaskSpecs, never empty.
    """
    return [_render(template, deal) for template in _resolve_templates(trigger, deal)]


def resolve_due_date(spec: TaskSpec, now: datetime) -> datetime | None:
    """Absolute due date for a spec persisted at now."""
    return spec.due_date_from(now)


def whole_days_since(moment: datetime, now: datetime) -> int:
    return round_half_up(abs((now - moment).total_seconds()) / 86400)


def rule_matches(rule: AutomationRule, deal: Deal, now: datetime) -> bool:
    """Whether a deal satisfies every condition of a rule."""
    conditions = rule.conditions

    if conditions.stages is not None and deal.deal_stage not in conditions.stages:
        return False
    if conditions.statuses is not None and deal.deal_status not in conditions.statuses:
        return False

    if conditions.score_range is not None:
        low, high = conditions.score_range
        if not low <= deal.engagement_score <= high:
            return False

    if conditions.days_since_activity is not None and deal.last_activity_at is not None:
        low, high = conditions.days_since_activity
        if not low <= whole_days_since(deal.last_activity_at, now) <= high:
            return False

    return True


def stage_tasks(deal: Deal) -> list[TaskSpec]:
    """Task for the stage the deal is in (none for CLOSED)."""
    template = STAGE_TASKS.get(deal.deal_stage)
    return [_render(template, deal)] if template else []


def engagement_tier_tasks(deal: Deal) -> list[TaskSpec]:
    """Task for the deal's score tier: >=80 hot, >=50 warm, >0 cold."""
    for min_score, template in ENGAGEMENT_TIERS:
        if deal.engagement_score >= min_score:
            return [_render(template, deal)]
    return []


def automation_tasks(
    deal: Deal,
    now: datetime,
    rules: tuple[AutomationRule, ...] = AUTOMATION_RULES,
) -> list[TaskSpec]:
    """Full automation pass for a deal.

    Emits, in order: one task per active matching rule, the stage task and
    the score-tier task. Closed deals get nothing.

    Args:
        deal: Deal snapshot.
        now: Reference instant for days-since-activity conditions.
        rules: Rule set to evaluate (defaults to AUTOMATION_RULES).
    """
    if is_closed(deal):
        return []

    specs = [
        _render(rule.template, deal)
        for rule in rules
        if rule.is_active and rule_matches(rule, deal, now)
    ]
    specs.extend(stage_tasks(deal))
    specs.extend(engagement_tier_tasks(deal))
    return specs


__all__ = [
    "AUTOMATION_RULES",
    "AUTOMATION_TRIGGER",
    "ENGAGEMENT_TIERS",
    "SCHEDULER_TRIGGERS",
    "STAGE_TASKS",
    "TASK_RULES",
    "TRIGGER_METRIC_LABELS",
    "AutomationConditions",
    "AutomationRule",
    "TaskTemplate",
    "automation_tasks",
    "default_priority",
    "engagement_tier_tasks",
    "generate_tasks",
    "resolve_due_date",
    "rule_matches",
    "stage_tasks",
    "stage_trigger",
]

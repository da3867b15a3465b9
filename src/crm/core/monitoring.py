"""Prometheus metrics for the deal lifecycle engine.

Provides:
- Counters for processed engagement events, automated tasks and transitions
- Counters for follow-up scheduler runs and per-deal results
- track_engagement_event(): Async context manager timing one event
- bounded_label(): Collapses free-form label values outside a known set
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator, Collection
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import Counter, Histogram

from src.crm.deals.schemas import ActivityAction, EventAction

# ── Label Bounds ─────────────────────────────────────────────────────────────

# Free-form values outside a known set collapse to this label so the number
# of time series stays fixed.
OTHER_LABEL = "other"

ENGAGEMENT_ACTION_LABELS: frozenset[str] = frozenset(
    {*(a.value for a in EventAction), *(a.value for a in ActivityAction)}
)


def bounded_label(value: str, allowed: Collection[str]) -> str:
    """value (as a plain string) if it is in allowed, otherwise OTHER_LABEL."""
    value = getattr(value, "value", value)
    return value if value in allowed else OTHER_LABEL


# ── Engagement Metrics ───────────────────────────────────────────────────────

engagement_events_total = Counter(
    "crm_engagement_events_total",
    "Total client engagement events processed",
    ["action", "outcome"],
)

engagement_event_duration_seconds = Histogram(
    "crm_engagement_event_duration_seconds",
    "Engagement event processing duration in seconds",
    ["action"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

automated_tasks_created_total = Counter(
    "crm_automated_tasks_created_total",
    "Total automated tasks persisted from rule engine output",
    ["trigger"],
)

# ── Pipeline Metrics ─────────────────────────────────────────────────────────

deal_transitions_total = Counter(
    "crm_deal_transitions_total",
    "Stage and status transition attempts",
    ["kind", "outcome"],
)

# ── Scheduler Metrics ────────────────────────────────────────────────────────

follow_up_runs_total = Counter(
    "crm_follow_up_runs_total",
    "Follow-up scheduler runs",
    ["outcome"],
)

follow_up_deals_total = Counter(
    "crm_follow_up_deals_total",
    "Per-deal follow-up scheduling results",
    ["result"],
)


@asynccontextmanager
async def track_engagement_event(action: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks engagement event metrics.

    Usage:
        async with track_engagement_event("like") as tracker:
            result = await orchestrator.process_event(...)
            tracker["outcome"] = "applied"

    Records duration in the histogram and the event count labelled with the
    outcome set on the tracker (``error`` if the body raised). Actions outside
    ENGAGEMENT_ACTION_LABELS are labelled ``other``.
    """
    action = bounded_label(action, ENGAGEMENT_ACTION_LABELS)
    tracker: dict[str, Any] = {"outcome": "applied"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["outcome"] = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        engagement_event_duration_seconds.labels(action=action).observe(duration)
        engagement_events_total.labels(
            action=action,
            outcome=tracker["outcome"],
        ).inc()

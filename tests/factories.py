"""Model factories shared across test modules."""

from __future__ import annotations

from datetime import datetime, timezone

from src.crm.deals.schemas import Deal

AGENT_ID = "agent-1"
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_deal(**overrides) -> Deal:
    """Create a Deal with sensible defaults."""
    defaults = {
        "id": "deal-1",
        "link_id": "deal-1",
        "agent_id": AGENT_ID,
        "deal_name": "Harbour View Collection",
        "client_name": "Dana Reyes",
        "created_at": NOW,
        "updated_at": NOW,
    }
    defaults.update(overrides)
    return Deal(**defaults)

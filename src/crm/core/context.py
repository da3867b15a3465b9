"""Explicit agent context threaded through every engine call.

The AgentContext identifies the real-estate agent on whose behalf an
operation runs. It is passed as a plain argument rather than read from
ambient state, so every call site shows which agent it acts for.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class AgentContext:
    """Immutable agent context for one engine call."""

    agent_id: str
    agent_name: str | None = None

    def __post_init__(self) -> None:
        if not self.agent_id:
            raise ValueError("AgentContext requires a non-empty agent_id")

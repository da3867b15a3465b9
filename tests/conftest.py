"""Shared test fixtures for the deal lifecycle engine.

Provides:
- An agent context for engine calls
- Fresh in-memory deal, activity and task stores
- A TaskService wired to the in-memory task store
"""

from __future__ import annotations

import pytest

from src.crm.core.context import AgentContext
from src.crm.deals.repository import (
    InMemoryActivityRepository,
    InMemoryDealRepository,
    InMemoryTaskRepository,
)
from src.crm.tasks.service import TaskService
from tests.factories import AGENT_ID


@pytest.fixture
def agent() -> AgentContext:
    return AgentContext(agent_id=AGENT_ID, agent_name="Sam Carter")


@pytest.fixture
def deal_store() -> InMemoryDealRepository:
    return InMemoryDealRepository()


@pytest.fixture
def activity_store() -> InMemoryActivityRepository:
    return InMemoryActivityRepository()


@pytest.fixture
def task_store() -> InMemoryTaskRepository:
    return InMemoryTaskRepository()


@pytest.fixture
def task_service(task_store: InMemoryTaskRepository) -> TaskService:
    return TaskService(task_store)

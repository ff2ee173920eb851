from __future__ import annotations

from typing import Any

import pytest

from incidentflow.core.config import Settings
from incidentflow.jobs.context import JobContext
from support import FakeCapability, FakeQueue, FakeRepository


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url=None, otel_enabled=False)


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def make_context(settings: Settings, repository: FakeRepository, queue: FakeQueue):
    def build(capability: FakeCapability | None = None, **named: FakeCapability) -> JobContext:
        registry: dict[str, Any] = dict(named)
        if capability is not None:
            registry.setdefault("openai", capability)
        return JobContext(settings=settings, repository=repository, queue=queue, capabilities=registry)

    return build

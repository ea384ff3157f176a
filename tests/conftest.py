"""Shared fixtures: isolated in-memory stores and a controllable clock."""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from ctxmem.config.models import Config, TierConfig
from ctxmem.context.manager import ContextManager
from ctxmem.context.models import ContextRecord
from ctxmem.services.compression.token_counter import TokenCounter
from ctxmem.services.context_store import ContextStore
from ctxmem.services.storage import MEMORY_URL, StorageService


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def _make_record(
    context_id: str,
    project_key: str = "proj-A",
    *,
    at: datetime,
    access_count: int = 0,
    payload: str = "payload",
    original_tokens: int = 100,
    compressed_tokens: int = 60,
    created_at: datetime | None = None,
) -> ContextRecord:
    """Build a record last accessed at ``at``."""
    return ContextRecord(
        id=context_id,
        project_key=project_key,
        compressed_payload=payload,
        algorithm="whitespace",
        strategy="conservative",
        original_tokens=original_tokens,
        compressed_tokens=compressed_tokens,
        compression_ratio=round(1 - compressed_tokens / original_tokens, 4) if original_tokens else 0.0,
        created_at=created_at or at,
        last_accessed_at=at,
        access_count=access_count,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="session")
def token_counter():
    return TokenCounter()


@pytest_asyncio.fixture
async def storage():
    """Fresh in-memory database per test."""
    service = StorageService(MEMORY_URL)
    await service.initialize()
    yield service
    await service.close()


@pytest.fixture
def store(storage, clock):
    return ContextStore(storage, clock=clock)


@pytest_asyncio.fixture
async def manager(storage, clock, token_counter):
    """Context manager over an in-memory store with default thresholds."""
    manager = ContextManager(
        storage,
        Config(),
        token_counter=token_counter,
        clock=clock,
        session_id="test-session",
    )
    await manager.initialize()
    return manager


@pytest_asyncio.fixture
async def small_manager(storage, clock, token_counter):
    """Context manager whose L0 cache holds three entries."""
    config = Config(tiers=TierConfig(l0_max_entries=3))
    manager = ContextManager(
        storage,
        config,
        token_counter=token_counter,
        clock=clock,
        session_id="test-session",
    )
    await manager.initialize()
    return manager


@pytest.fixture
def make_record():
    """Factory for records with explicit access times."""
    return _make_record

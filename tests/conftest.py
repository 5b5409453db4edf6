import asyncio
import dataclasses
from typing import List, Optional

import pytest

from jobfeed.adapters import AdapterRegistry, BaseAdapter
from jobfeed.cache import MemoryCache
from jobfeed.config import CONSTRAINED_RUNTIME_MARKERS, Settings
from jobfeed.database import DatabaseManager, SourceEnum
from jobfeed.models import UnifiedJob
from jobfeed.store import JobStore


def make_job(n: int, source: str = 'remotive', **overrides) -> UnifiedJob:
    fields = dict(
        title=f"Golang Developer {n}",
        company=f"Acme {n}",
        location='Remote',
        description='Backend golang developer role',
        source=source,
        external_id=f"ext-{n}",
        is_remote=True,
    )
    fields.update(overrides)
    return UnifiedJob(**fields)


class FakeAdapter(BaseAdapter):
    """Scriptable adapter: returns copies of `jobs`, optionally after a delay, an error or never."""

    def __init__(self, source: SourceEnum, jobs: Optional[List[UnifiedJob]] = None, delay: float = 0,
                 error: Optional[Exception] = None, hang: bool = False, fast: bool = True,
                 paid: bool = False, available: bool = True):
        super().__init__()
        self.source = source
        self.label = f"Fake{source.value}"
        self.jobs = list(jobs or [])
        self.delay = delay
        self.error = error
        self.hang = hang
        self.fast = fast
        self.paid = paid
        self._available = available
        self.calls = 0
        self.active = 0
        self.max_active = 0

    @property
    def available(self):
        return self._available

    async def fetch(self, options):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.hang:
                await asyncio.Event().wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error:
                raise self.error
            return [dataclasses.replace(job) for job in self.jobs]
        finally:
            self.active -= 1


@pytest.fixture(autouse=True)
def unconstrained_runtime(monkeypatch):
    for marker in CONSTRAINED_RUNTIME_MARKERS:
        monkeypatch.delenv(marker, raising=False)


@pytest.fixture
def settings():
    return Settings(
        database_url='sqlite://',
        cache_backend='memory',
        cache_timeout_ms=1000,
        store_timeout_ms=2000,
        jit_timeout_ms=300,
        fallback_timeout_ms=300,
        refresh_entry_timeout_ms=300,
        refresh_batch_pause_seconds=0,
        log_file=None,
    )


@pytest.fixture
def db():
    manager = DatabaseManager('sqlite://')
    manager.create_tables()
    yield manager
    manager.engine.dispose()


@pytest.fixture
def store(db):
    return JobStore(db)


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def registry():
    return AdapterRegistry()

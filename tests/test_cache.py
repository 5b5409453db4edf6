import asyncio

import pytest

from jobfeed.cache import DatabaseCache, MemoryCache, build_cache
from jobfeed.config import Settings
from jobfeed.database import DatabaseManager
from jobfeed.models import SearchSpecification

ONE_MS_IN_HOURS = 1 / 3_600_000


@pytest.fixture(params=['memory', 'database'])
def backend(request, db):
    if request.param == 'memory':
        return MemoryCache()
    return DatabaseCache(db)


@pytest.fixture
def spec():
    return SearchSpecification.normalize(keywords="golang developer", location="remote")


async def test_round_trip(backend, spec):
    assert await backend.set(spec, [3, 1, 2], ttl_hours=1)
    assert await backend.get(spec) == [3, 1, 2]


async def test_equal_specs_hit_the_same_entry(backend, spec):
    await backend.set(spec, [7])
    assert await backend.get(SearchSpecification.normalize(keywords=" Golang  Developer", location="REMOTE")) == [7]


async def test_unknown_spec_is_a_miss(backend, spec):
    assert await backend.get(spec) is None


async def test_entry_past_ttl_is_absent(backend, spec):
    await backend.set(spec, [1, 2], ttl_hours=ONE_MS_IN_HOURS)
    await asyncio.sleep(0.01)
    assert await backend.get(spec) is None


async def test_empty_result_is_not_cached(backend, spec):
    assert await backend.set(spec, []) is False
    assert await backend.get(spec) is None


async def test_overwrite_replaces_whole_entry(backend, spec):
    await backend.set(spec, [1, 2, 3])
    await backend.set(spec, [9])
    assert await backend.get(spec) == [9]


async def test_invalidate(backend, spec):
    await backend.set(spec, [1])
    await backend.invalidate(spec)
    assert await backend.get(spec) is None


async def test_clear_expired(backend, spec):
    await backend.set(spec, [1], ttl_hours=ONE_MS_IN_HOURS)
    await backend.set(spec.with_page(2), [2], ttl_hours=1)
    await asyncio.sleep(0.01)
    assert await backend.clear_expired() == 1
    stats = await backend.stats()
    assert stats['total_entries'] == 1
    assert stats['active_entries'] == 1


async def test_memory_cache_counts_hits(spec):
    cache = MemoryCache()
    await cache.set(spec, [1])
    await cache.get(spec)
    await cache.get(spec)
    assert (await cache.stats())['total_hits'] == 2


async def test_database_cache_counts_hits_in_background(db, spec):
    cache = DatabaseCache(db)
    await cache.set(spec, [1])
    assert await cache.get(spec) == [1]
    for _ in range(50):
        if (await cache.stats())['total_hits'] == 1:
            break
        await asyncio.sleep(0.01)
    assert (await cache.stats())['total_hits'] == 1


async def test_broken_backend_reads_as_miss(spec):
    # No tables created, every query fails
    cache = DatabaseCache(DatabaseManager('sqlite://'))
    assert await cache.get(spec) is None
    assert await cache.set(spec, [1]) is False


def test_build_cache_picks_backend(db):
    assert isinstance(build_cache(Settings(cache_backend='memory'), db), MemoryCache)
    assert isinstance(build_cache(Settings(cache_backend='database'), db), DatabaseCache)
    assert build_cache(Settings(cache_ttl_hours=2), db).default_ttl_hours == 2


@pytest.fixture(params=['memory', 'database'])
def small_backend(request, db):
    if request.param == 'memory':
        return MemoryCache(max_entries=2)
    return DatabaseCache(db, max_entries=2)


async def _fill(cache, *keywords):
    specs = [SearchSpecification.normalize(keywords=k) for k in keywords]
    for n, s in enumerate(specs, start=1):
        await cache.set(s, [n])
    return specs


async def _wait_for_hits(cache, expected):
    for _ in range(50):
        if (await cache.stats())['total_hits'] >= expected:
            return
        await asyncio.sleep(0.01)


async def test_size_limit_evicts_least_popular_first(small_backend):
    cache = small_backend
    python, golang = await _fill(cache, 'python', 'golang')
    await cache.get(python)
    await _wait_for_hits(cache, 1)

    rust, = await _fill(cache, 'rust')
    await cache.enforce_size_limit()

    assert (await cache.stats())['total_entries'] == 2
    assert await cache.get(python) == [1]
    assert await cache.get(golang) is None
    assert await cache.get(rust) == [1]


async def test_popular_orders_live_entries_by_hits(backend):
    python, golang = await _fill(backend, 'python', 'golang')
    for _ in range(2):
        await backend.get(golang)
    await backend.get(python)
    await _wait_for_hits(backend, 3)

    top = await backend.popular(limit=1)
    assert top == [{'search_params': golang.to_params(), 'hit_count': 2}]


async def test_maintain_clears_expired_and_caps_size(small_backend, spec):
    cache = small_backend
    await cache.set(spec, [1], ttl_hours=ONE_MS_IN_HOURS)
    await _fill(cache, 'python', 'golang')
    await asyncio.sleep(0.01)

    await cache.maintain()
    stats = await cache.stats()
    assert stats['total_entries'] == 2
    assert stats['active_entries'] == 2


def test_build_cache_passes_size_cap(db):
    assert build_cache(Settings(cache_backend='memory', cache_max_entries=5), db).max_entries == 5

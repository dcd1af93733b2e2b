from __future__ import annotations

import asyncio

import httpx
import pytest

from cursor_query.cache import CacheStore, EntryState
from cursor_query.config import CacheConfig
from cursor_query.errors import FetchError, FetchErrorKind
from cursor_query.fetcher import FetchCoordinator
from cursor_query.keys import build

KEY = build("orders.list", {"first": 20})


class GatedFetch:
    """A fetch_fn that blocks until released and counts its calls."""

    def __init__(self, value="page"):
        self.value = value
        self.calls: list[dict] = []
        self.gate = asyncio.Event()
        self.cancelled = False
        self.error: BaseException | None = None

    async def __call__(self, params):
        self.calls.append(dict(params))
        try:
            await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return f"{self.value}-{len(self.calls)}"


def _coordinator(**config) -> FetchCoordinator:
    config.setdefault("ttl_ms", 60_000)
    return FetchCoordinator(CacheStore(CacheConfig(**config)))


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_fetch():
    coordinator = _coordinator()
    fetch = GatedFetch()

    loads = [asyncio.ensure_future(coordinator.load(KEY, fetch)) for _ in range(3)]
    await asyncio.sleep(0)
    assert coordinator.is_fetching(KEY)
    assert coordinator.store.get(KEY).state is EntryState.FETCHING

    fetch.gate.set()
    results = await asyncio.gather(*loads)

    assert results == ["page-1"] * 3
    assert fetch.calls == [{"first": 20}]
    assert not coordinator.is_fetching(KEY)
    assert coordinator.store.get(KEY).state is EntryState.FRESH


@pytest.mark.asyncio
async def test_fresh_entry_is_served_without_fetching():
    coordinator = _coordinator()
    fetch = GatedFetch()
    fetch.gate.set()

    assert await coordinator.load(KEY, fetch) == "page-1"
    assert await coordinator.ensure_query_data(KEY, fetch) == "page-1"
    assert len(fetch.calls) == 1


@pytest.mark.asyncio
async def test_transport_failure_reaches_every_waiter_as_fetch_error():
    coordinator = _coordinator()
    fetch = GatedFetch()
    fetch.error = httpx.ConnectError("connection refused")

    loads = [asyncio.ensure_future(coordinator.load(KEY, fetch)) for _ in range(2)]
    await asyncio.sleep(0)
    fetch.gate.set()
    results = await asyncio.gather(*loads, return_exceptions=True)

    assert all(isinstance(r, FetchError) for r in results)
    assert results[0] is results[1]
    assert results[0].kind is FetchErrorKind.NETWORK
    assert results[0].retryable
    entry = coordinator.store.get(KEY)
    assert entry.state is EntryState.ERROR
    assert entry.error is results[0]
    assert len(fetch.calls) == 1


@pytest.mark.asyncio
async def test_load_after_error_fetches_again():
    coordinator = _coordinator()
    fetch = GatedFetch()
    fetch.gate.set()
    fetch.error = FetchError(FetchErrorKind.SERVER_REJECTED, "nope", status=500)

    with pytest.raises(FetchError):
        await coordinator.load(KEY, fetch)

    fetch.error = None
    assert await coordinator.load(KEY, fetch) == "page-2"
    assert coordinator.store.get(KEY).state is EntryState.FRESH


@pytest.mark.asyncio
async def test_programming_errors_propagate_unchanged():
    coordinator = _coordinator()
    fetch = GatedFetch()
    fetch.gate.set()
    fetch.error = KeyError("nodes")

    with pytest.raises(KeyError):
        await coordinator.load(KEY, fetch)
    assert coordinator.store.get(KEY).state is EntryState.ERROR


@pytest.mark.asyncio
async def test_cancelling_every_waiter_abandons_the_fetch():
    coordinator = _coordinator()
    fetch = GatedFetch()

    load = asyncio.ensure_future(coordinator.load(KEY, fetch))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    load.cancel()
    with pytest.raises(asyncio.CancelledError):
        await load
    await asyncio.sleep(0)

    assert fetch.cancelled
    assert not coordinator.is_fetching(KEY)
    entry = coordinator.store.get(KEY)
    assert entry.state is EntryState.IDLE
    assert not entry.has_value


@pytest.mark.asyncio
async def test_cancelling_one_waiter_keeps_the_fetch_for_the_others():
    coordinator = _coordinator()
    fetch = GatedFetch()

    first = asyncio.ensure_future(coordinator.load(KEY, fetch))
    second = asyncio.ensure_future(coordinator.load(KEY, fetch))
    await asyncio.sleep(0)
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    assert coordinator.is_fetching(KEY)
    fetch.gate.set()
    assert await second == "page-1"
    assert not fetch.cancelled


@pytest.mark.asyncio
async def test_abandoned_fetch_keeps_stale_value():
    coordinator = _coordinator()
    fetch = GatedFetch()
    fetch.gate.set()
    await coordinator.load(KEY, fetch)
    coordinator.store.invalidate(KEY)

    fetch.gate.clear()
    load = asyncio.ensure_future(coordinator.load(KEY, fetch))
    await asyncio.sleep(0)
    load.cancel()
    with pytest.raises(asyncio.CancelledError):
        await load

    entry = coordinator.store.get(KEY)
    assert entry.state is EntryState.STALE
    assert entry.value == "page-1"


@pytest.mark.asyncio
async def test_explicit_cancel_rejects_waiters_with_cancelled_error():
    coordinator = _coordinator()
    fetch = GatedFetch()

    load = asyncio.ensure_future(coordinator.load(KEY, fetch))
    await asyncio.sleep(0)
    assert coordinator.cancel(KEY)

    with pytest.raises(FetchError) as excinfo:
        await load
    assert excinfo.value.kind is FetchErrorKind.CANCELLED
    assert not excinfo.value.retryable
    assert coordinator.store.get(KEY).state is EntryState.IDLE
    assert not coordinator.cancel(KEY)


@pytest.mark.asyncio
async def test_evict_revokes_the_running_fetch():
    coordinator = _coordinator()
    fetch = GatedFetch()

    load = asyncio.ensure_future(coordinator.load(KEY, fetch))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert coordinator.evict("orders") == 1

    with pytest.raises(FetchError) as excinfo:
        await load
    assert excinfo.value.kind is FetchErrorKind.CANCELLED
    assert not coordinator.is_fetching(KEY)
    assert coordinator.store.get(KEY) is None

    fetch.gate.set()
    await asyncio.sleep(0)
    assert fetch.cancelled
    assert coordinator.store.get(KEY) is None

    assert await coordinator.load(KEY, fetch) == "page-2"
    assert coordinator.store.get(KEY).state is EntryState.FRESH


@pytest.mark.asyncio
async def test_allow_stale_returns_cached_value_and_revalidates():
    coordinator = _coordinator()
    fetch = GatedFetch()
    fetch.gate.set()
    await coordinator.load(KEY, fetch)
    coordinator.store.invalidate(KEY)

    fetch.gate.clear()
    assert await coordinator.load(KEY, fetch, allow_stale=True) == "page-1"
    assert coordinator.is_fetching(KEY)

    fetch.gate.set()
    assert await coordinator.load(KEY, fetch) == "page-2"
    assert len(fetch.calls) == 2


@pytest.mark.asyncio
async def test_allow_stale_waits_once_past_the_window():
    store = CacheStore(CacheConfig(ttl_ms=60_000, stale_while_revalidate_ms=0))
    coordinator = FetchCoordinator(store)
    fetch = GatedFetch()
    fetch.gate.set()
    await coordinator.load(KEY, fetch)
    store.invalidate(KEY)
    store.get(KEY).stale_since -= 1.0

    assert await coordinator.load(KEY, fetch, allow_stale=True) == "page-2"


@pytest.mark.asyncio
async def test_invalidate_then_load_refetches_exactly_once():
    coordinator = _coordinator()
    fetch = GatedFetch()
    fetch.gate.set()
    await coordinator.load(KEY, fetch)

    assert coordinator.store.invalidate("orders") == 1
    assert coordinator.store.get(KEY).state is EntryState.STALE

    results = await asyncio.gather(
        coordinator.load(KEY, fetch), coordinator.load(KEY, fetch)
    )
    assert results == ["page-2", "page-2"]
    assert len(fetch.calls) == 2


@pytest.mark.asyncio
async def test_invalidation_during_fetch_marks_result_stale():
    coordinator = _coordinator()
    fetch = GatedFetch()

    load = asyncio.ensure_future(coordinator.load(KEY, fetch))
    await asyncio.sleep(0)
    coordinator.store.invalidate("orders")
    fetch.gate.set()
    assert await load == "page-1"

    assert coordinator.store.get(KEY).state is EntryState.STALE
    assert await coordinator.load(KEY, fetch) == "page-2"


@pytest.mark.asyncio
async def test_refetch_ignores_freshness():
    coordinator = _coordinator()
    fetch = GatedFetch()
    fetch.gate.set()
    await coordinator.load(KEY, fetch)
    assert await coordinator.refetch(KEY, fetch) == "page-2"


@pytest.mark.asyncio
async def test_close_cancels_in_flight_fetches():
    coordinator = _coordinator()
    fetch = GatedFetch()
    load = asyncio.ensure_future(coordinator.load(KEY, fetch))
    await asyncio.sleep(0)

    await coordinator.close()
    with pytest.raises(FetchError):
        await load
    assert coordinator.in_flight() == []


@pytest.mark.asyncio
async def test_late_result_of_abandoned_fetch_is_dropped():
    coordinator = _coordinator()
    release = asyncio.Event()
    finished = asyncio.Event()

    async def stubborn(params):
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            # ignores cancellation and answers anyway
            await release.wait()
        finished.set()
        return "late"

    load = asyncio.ensure_future(coordinator.load(KEY, stubborn))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    load.cancel()
    with pytest.raises(asyncio.CancelledError):
        await load

    release.set()
    await finished.wait()
    await asyncio.sleep(0)

    entry = coordinator.store.get(KEY)
    assert entry.state is EntryState.IDLE
    assert not entry.has_value

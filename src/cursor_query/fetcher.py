from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from .cache import CacheStore, EntryState
from .errors import FetchError
from .keys import QueryKey, Scalar

logger = logging.getLogger(__name__)

FetchFn = Callable[[Mapping[str, Scalar]], Awaitable[Any]]


@dataclass(eq=False)
class InFlightRequest:
    key: QueryKey
    version: int
    task: asyncio.Task | None = None
    waiters: set[asyncio.Future] = field(default_factory=set)
    abandoned: bool = False

    def resolve(self, value: Any) -> None:
        for waiter in self.waiters:
            if not waiter.done():
                waiter.set_result(value)
        self.waiters.clear()

    def reject(self, error: BaseException) -> None:
        for waiter in self.waiters:
            if not waiter.done():
                waiter.set_exception(error)
        self.waiters.clear()


class FetchCoordinator:
    """Collapses concurrent loads of one key into a single fetch.

    Results and errors go back into the ``CacheStore`` under the version token
    issued when the fetch started, so a superseded or abandoned fetch can never
    overwrite newer data. Nothing here retries; a failed load surfaces as
    ``FetchError`` and retrying is the caller's decision.
    """

    def __init__(self, store: CacheStore):
        self._store = store
        self._in_flight: dict[QueryKey, InFlightRequest] = {}

    @property
    def store(self) -> CacheStore:
        return self._store

    def is_fetching(self, key: QueryKey) -> bool:
        return key in self._in_flight

    def in_flight(self) -> list[QueryKey]:
        return list(self._in_flight)

    async def load(
        self,
        key: QueryKey,
        fetch_fn: FetchFn,
        *,
        allow_stale: bool = False,
    ) -> Any:
        self._store.sweep()
        entry = self._store.get(key)
        if entry is not None and entry.state is EntryState.FRESH:
            return entry.value

        request = self._in_flight.get(key)
        if request is None:
            request = self._start(key, fetch_fn)
        else:
            logger.debug("Joining in-flight fetch for %s", key)

        if allow_stale:
            entry = self._store.get(key)
            if entry is not None and self._store.is_within_stale_window(entry):
                return entry.value

        return await self._wait(request)

    # route loaders call it by this name
    ensure_query_data = load

    async def refetch(self, key: QueryKey, fetch_fn: FetchFn) -> Any:
        self._store.invalidate(key)
        return await self.load(key, fetch_fn)

    def cancel(self, key: QueryKey) -> bool:
        """Abort the fetch for ``key``; its waiters get ``FetchError(CANCELLED)``."""
        request = self._in_flight.get(key)
        if request is None or request.task is None:
            return False
        request.task.cancel()
        return True

    def evict(self, target: QueryKey | str) -> int:
        """Drop matching entries and revoke their running fetches.

        Waiters of a revoked fetch get ``FetchError(CANCELLED)``; the fetch
        result, should it still arrive, is discarded.
        """
        for request in [r for r in self._in_flight.values() if r.key.matches(target)]:
            self._abandon(request)
            request.reject(FetchError.cancelled(f"{request.key} was evicted"))
        return self._store.evict(target)

    async def close(self) -> None:
        tasks = [r.task for r in self._in_flight.values() if r.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _start(self, key: QueryKey, fetch_fn: FetchFn) -> InFlightRequest:
        version = self._store.mark_fetching(key)
        request = InFlightRequest(key=key, version=version)
        self._in_flight[key] = request
        logger.debug("Starting fetch for %s (version %s)", key, version)
        request.task = asyncio.ensure_future(self._run(request, fetch_fn))
        request.task.add_done_callback(lambda task: self._on_done(request, task))
        return request

    async def _wait(self, request: InFlightRequest) -> Any:
        waiter = asyncio.get_running_loop().create_future()
        request.waiters.add(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            request.waiters.discard(waiter)
            if not request.waiters:
                self._abandon(request)
            raise

    def _abandon(self, request: InFlightRequest) -> None:
        if request.abandoned or request.task is None or request.task.done():
            return
        logger.debug("All waiters left %s; abandoning fetch", request.key)
        request.abandoned = True
        self._store.abandon(request.key, request.version)
        self._finish(request)
        request.task.cancel()

    async def _run(self, request: InFlightRequest, fetch_fn: FetchFn) -> None:
        key = request.key
        try:
            value = await fetch_fn(key.params)
        except Exception as exc:
            error = FetchError.from_exception(exc) or exc
            self._store.mark_error(key, error, request.version)
            self._finish(request)
            logger.debug("Fetch for %s failed: %r", key, error)
            request.reject(error)
        else:
            self._store.put(key, value, request.version)
            self._finish(request)
            request.resolve(value)

    def _on_done(self, request: InFlightRequest, task: asyncio.Task) -> None:
        # also covers tasks cancelled before their first step
        if not task.cancelled() or request.abandoned:
            return
        self._store.abandon(request.key, request.version)
        self._finish(request)
        request.reject(FetchError.cancelled(f"Fetch for {request.key} was cancelled"))

    def _finish(self, request: InFlightRequest) -> None:
        if self._in_flight.get(request.key) is request:
            del self._in_flight[request.key]

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .errors import FetchError
from .fetcher import FetchCoordinator, FetchFn
from .keys import QueryKey
from .pagination import PaginationController

logger = logging.getLogger(__name__)


class PrefetchGateway:
    """Speculative loads triggered by route loaders and hover intent.

    Prefetches go through the coordinator, so they share the in-flight fetch
    of any real request for the same key. Their failures are logged and
    dropped; the real request will fetch again and surface the error.
    """

    def __init__(self, coordinator: FetchCoordinator, *, preload_delay_ms: int | None = None):
        self._coordinator = coordinator
        if preload_delay_ms is None:
            preload_delay_ms = coordinator.store.config.preload_delay_ms
        self.preload_delay_ms = preload_delay_ms
        self._tasks: set[asyncio.Task] = set()
        self._intents: dict[QueryKey, asyncio.Task] = {}

    def prefetch(self, key: QueryKey, fetch_fn: FetchFn) -> asyncio.Task:
        task = asyncio.ensure_future(self._prefetch(key, fetch_fn))
        self._track(task)
        return task

    async def ensure_query_data(self, key: QueryKey, fetch_fn: FetchFn) -> Any:
        return await self._coordinator.load(key, fetch_fn)

    def on_intent(self, key: QueryKey, fetch_fn: FetchFn) -> asyncio.Task:
        """Prefetch ``key`` once the intent has lasted ``preload_delay_ms``."""
        pending = self._intents.get(key)
        if pending is not None and not pending.done():
            return pending
        task = asyncio.ensure_future(self._delayed(key, fetch_fn))
        self._intents[key] = task
        self._track(task)
        task.add_done_callback(lambda _: self._forget_intent(key, task))
        return task

    def cancel_intent(self, key: QueryKey) -> bool:
        task = self._intents.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def prefetch_next_page(self, controller: PaginationController) -> asyncio.Task | None:
        key = controller.next_page_key()
        if key is None:
            return None
        return self.prefetch(key, controller.fetch_fn)

    def pending(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._intents.clear()

    async def _delayed(self, key: QueryKey, fetch_fn: FetchFn) -> None:
        await asyncio.sleep(self.preload_delay_ms / 1000.0)
        await self._prefetch(key, fetch_fn)

    async def _prefetch(self, key: QueryKey, fetch_fn: FetchFn) -> None:
        try:
            await self._coordinator.load(key, fetch_fn)
        except FetchError as exc:
            logger.warning("Prefetch of %s failed: %s", key, exc)
        except Exception:
            logger.warning("Prefetch of %s raised", key, exc_info=True)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _forget_intent(self, key: QueryKey, task: asyncio.Task) -> None:
        if self._intents.get(key) is task:
            del self._intents[key]

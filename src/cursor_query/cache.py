from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Mapping

from .config import CacheConfig
from .keys import QueryKey

logger = logging.getLogger(__name__)

Listener = Callable[["CacheEntry"], None]


class EntryState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    FRESH = "fresh"
    STALE = "stale"
    ERROR = "error"


@dataclass
class CacheEntry:
    key: QueryKey
    state: EntryState = EntryState.IDLE
    value: Any = None
    has_value: bool = False
    updated_at: float | None = None
    stale_since: float | None = None
    error: BaseException | None = None
    # token of the last accepted write
    version: int = 0
    # tokens below the floor were revoked and can no longer write
    floor: int = 0
    # writes with tokens below this land stale (issued before an invalidation)
    stale_below: int = 0
    issued: int = 0
    fetch_version: int | None = None
    listeners: list[Listener] = field(default_factory=list, repr=False)
    refs: int = 0

    @property
    def is_referenced(self) -> bool:
        return self.refs > 0 or bool(self.listeners)

    @property
    def is_fetching(self) -> bool:
        return self.fetch_version is not None


class CacheStore:
    """Per-session mapping of query keys to cache entries.

    Every mutation funnels through ``put``, ``mark_fetching``, ``mark_error``,
    ``abandon``, ``invalidate`` and ``evict``. None of them suspend, so under a
    single event loop they never interleave.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        ttl_overrides: Mapping[str, int] | None = None,
    ):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[QueryKey, CacheEntry] = {}
        # resource prefix -> ttl_ms
        self._ttl_overrides: dict[str, int] = {}
        # last token issued to a fetch that never wrote before its entry was evicted
        self._revoked: dict[QueryKey, int] = {}
        for prefix, ttl_ms in (ttl_overrides or {}).items():
            self.set_ttl(prefix, ttl_ms)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: QueryKey) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[CacheEntry]:
        return iter(list(self._entries.values()))

    def now(self) -> float:
        return self._clock()

    def set_ttl(self, resource_prefix: str, ttl_ms: int) -> None:
        """Override ``ttl_ms`` for every key under ``resource_prefix``."""
        if ttl_ms < 0:
            raise ValueError("ttl_ms must not be negative")
        self._ttl_overrides[resource_prefix] = ttl_ms

    def ttl_for(self, key: QueryKey) -> int:
        # the most specific prefix wins
        best: str | None = None
        for prefix in self._ttl_overrides:
            if key.matches(prefix) and (best is None or len(prefix) > len(best)):
                best = prefix
        return self.config.ttl_ms if best is None else self._ttl_overrides[best]

    def get(self, key: QueryKey) -> CacheEntry | None:
        """Pure lookup; reports an expired fresh entry as stale."""
        entry = self._entries.get(key)
        if entry is not None:
            self._expire(entry)
        return entry

    def peek(self, key: QueryKey) -> Any:
        entry = self.get(key)
        if entry is None or not entry.has_value:
            return None
        return entry.value

    def mark_fetching(self, key: QueryKey) -> int:
        entry = self._entry(key)
        token = self._next_token(entry)
        entry.fetch_version = token
        self._transition(entry, EntryState.FETCHING)
        return token

    def put(self, key: QueryKey, value: Any, version: int) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("Dropping write for evicted %s (version %s)", key, version)
            return False
        if version < entry.version or version < entry.floor:
            logger.debug(
                "Dropping superseded write for %s (version %s, current %s, floor %s)",
                key,
                version,
                entry.version,
                entry.floor,
            )
            return False

        now = self._clock()
        entry.value = value
        entry.has_value = True
        entry.version = version
        entry.issued = max(entry.issued, version)
        entry.updated_at = now
        entry.error = None

        if entry.fetch_version is not None and entry.fetch_version > version:
            # a newer fetch is still running and owns the state
            entry.stale_since = now
            self._notify(entry)
            return True
        entry.fetch_version = None
        if version < entry.stale_below:
            entry.stale_since = now
            self._transition(entry, EntryState.STALE, force=True)
        else:
            entry.stale_since = None
            self._transition(entry, EntryState.FRESH, force=True)
        return True

    def seed(self, key: QueryKey, value: Any) -> bool:
        """Write ``value`` only when the entry holds nothing yet."""
        entry = self._entry(key)
        if entry.has_value:
            return False
        if entry.is_fetching:
            # the in-flight fetch keeps ownership of the next write
            entry.value = value
            entry.has_value = True
            entry.updated_at = self._clock()
            self._notify(entry)
            return True
        return self.put(key, value, self._next_token(entry))

    def mark_error(self, key: QueryKey, error: BaseException, version: int) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if version < entry.version or version < entry.floor:
            return False
        if entry.fetch_version is not None and entry.fetch_version > version:
            return False
        entry.error = error
        entry.fetch_version = None
        self._transition(entry, EntryState.ERROR, force=True)
        return True

    def abandon(self, key: QueryKey, version: int) -> None:
        """Revoke ``version`` and roll a fetching entry back to stale or idle."""
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.floor = max(entry.floor, version + 1)
        if entry.fetch_version != version:
            return
        entry.fetch_version = None
        if entry.state is not EntryState.FETCHING:
            return
        if entry.has_value:
            entry.stale_since = entry.stale_since or self._clock()
            self._transition(entry, EntryState.STALE)
        else:
            self._transition(entry, EntryState.IDLE)

    def invalidate(self, target: QueryKey | str) -> int:
        """Force matching entries stale; cached values stay readable."""
        now = self._clock()
        entries = self._matching(target)
        for entry in entries:
            entry.stale_below = entry.issued + 1
            if entry.state is EntryState.FETCHING or not entry.has_value:
                continue
            entry.stale_since = now
            self._transition(entry, EntryState.STALE)
        return len(entries)

    def evict(self, target: QueryKey | str) -> int:
        doomed = [entry.key for entry in self._matching(target)]
        for key in doomed:
            self._drop(key).listeners.clear()
            logger.debug("Evicted %s", key)
        return len(doomed)

    def sweep(self) -> int:
        """Drop unreferenced entries that stayed stale past the grace period."""
        grace = self.config.eviction_grace_ms
        if grace is None:
            return 0
        now = self._clock()
        doomed = []
        for entry in list(self._entries.values()):
            self._expire(entry)
            if entry.is_referenced or entry.is_fetching:
                continue
            if entry.state is EntryState.FRESH:
                continue
            since = entry.stale_since if entry.stale_since is not None else entry.updated_at
            if since is None or (now - since) * 1000.0 > grace:
                doomed.append(entry.key)
        for key in doomed:
            self._drop(key)
            logger.debug("Swept %s", key)
        return len(doomed)

    def subscribe(self, key: QueryKey, on_change: Listener) -> Callable[[], None]:
        entry = self._entry(key)
        entry.listeners.append(on_change)

        def unsubscribe() -> None:
            current = self._entries.get(key)
            if current is not None and on_change in current.listeners:
                current.listeners.remove(on_change)

        return unsubscribe

    def retain(self, key: QueryKey) -> CacheEntry:
        entry = self._entry(key)
        entry.refs += 1
        return entry

    def release(self, key: QueryKey) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.refs > 0:
            entry.refs -= 1

    def clear(self) -> None:
        for key in list(self._entries):
            self._drop(key)

    def is_within_stale_window(self, entry: CacheEntry) -> bool:
        if not entry.has_value:
            return False
        window = self.config.stale_while_revalidate_ms
        if window is None or entry.stale_since is None:
            return True
        return (self._clock() - entry.stale_since) * 1000.0 <= window

    def _entry(self, key: QueryKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            revoked = self._revoked.pop(key, None)
            if revoked is not None:
                entry.issued = revoked
                entry.floor = revoked + 1
            self._entries[key] = entry
        return entry

    def _drop(self, key: QueryKey) -> CacheEntry:
        entry = self._entries.pop(key)
        if entry.issued > entry.version:
            self._revoked[key] = entry.issued
        return entry

    @staticmethod
    def _next_token(entry: CacheEntry) -> int:
        entry.issued = max(entry.issued, entry.version, entry.floor) + 1
        return entry.issued

    def _matching(self, target: QueryKey | str) -> list[CacheEntry]:
        if isinstance(target, QueryKey):
            entry = self._entries.get(target)
            return [entry] if entry is not None else []
        return [entry for entry in self._entries.values() if entry.key.matches(target)]

    def _expire(self, entry: CacheEntry) -> None:
        if entry.state is not EntryState.FRESH or entry.updated_at is None:
            return
        ttl = self.ttl_for(entry.key)
        if (self._clock() - entry.updated_at) * 1000.0 > ttl:
            entry.stale_since = entry.updated_at + ttl / 1000.0
            self._transition(entry, EntryState.STALE)

    def _transition(self, entry: CacheEntry, state: EntryState, *, force: bool = False) -> None:
        if entry.state is state and not force:
            return
        entry.state = state
        self._notify(entry)

    def _notify(self, entry: CacheEntry) -> None:
        for listener in list(entry.listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("Cache listener failed for %s", entry.key)

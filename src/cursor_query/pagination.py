from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import (
    FetchError,
    FetchErrorKind,
    InvalidKeyShape,
    NoNextPage,
    NoPreviousPage,
    PaginationError,
)
from .fetcher import FetchCoordinator, FetchFn
from .keys import QueryKey, build
from .params import CURSOR_PARAMS, validate_params

logger = logging.getLogger(__name__)


class PageInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_next_page: bool = Field(
        False, alias="hasNextPage", description="More items after endCursor"
    )
    has_previous_page: bool = Field(
        False, alias="hasPreviousPage", description="More items before startCursor"
    )
    start_cursor: Optional[str] = Field(
        None, alias="startCursor", description="Cursor of the first node"
    )
    end_cursor: Optional[str] = Field(
        None, alias="endCursor", description="Cursor of the last node"
    )

    @field_validator("has_next_page", "has_previous_page", mode="before")
    @classmethod
    def _unknown_means_no_more(cls, value: Any) -> Any:
        return False if value is None else value


class Connection(BaseModel):
    """One page of a cursor-paginated resource."""

    model_config = ConfigDict(populate_by_name=True)

    nodes: list[Any] = Field(default_factory=list, description="Items on this page")
    page_info: PageInfo = Field(
        default_factory=PageInfo, alias="pageInfo", description="Page boundaries"
    )
    total_count: Optional[int] = Field(
        None, alias="totalCount", description="Total items, when reported"
    )

    @field_validator("nodes", "page_info", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any, info) -> Any:
        if value is None:
            return [] if info.field_name == "nodes" else {}
        return value

    @classmethod
    def coerce(cls, value: Any) -> Connection:
        if isinstance(value, Connection):
            return value
        if value is None:
            return cls()
        return cls.model_validate(value)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class PaginationState(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    LOADED = "loaded"
    LOADING_NEXT = "loading_next"
    LOADING_PREVIOUS = "loading_previous"
    ERROR = "error"


_LOADING_STATES = frozenset(
    {PaginationState.LOADING, PaginationState.LOADING_NEXT, PaginationState.LOADING_PREVIOUS}
)


@dataclass(frozen=True)
class PageBoundary:
    key: QueryKey
    start_cursor: str | None
    end_cursor: str | None
    has_next_page: bool
    has_previous_page: bool

    @classmethod
    def from_connection(cls, key: QueryKey, connection: Connection) -> PageBoundary:
        info = connection.page_info
        return cls(
            key=key,
            start_cursor=info.start_cursor,
            end_cursor=info.end_cursor,
            has_next_page=info.has_next_page,
            has_previous_page=info.has_previous_page,
        )


@dataclass
class PageWindow:
    base_params: dict[str, Any]
    pages: list[PageBoundary] = field(default_factory=list)
    current_index: int = -1

    @property
    def page_size(self) -> int:
        return self.base_params["first"]

    @property
    def current(self) -> PageBoundary | None:
        if 0 <= self.current_index < len(self.pages):
            return self.pages[self.current_index]
        return None

    @property
    def has_next_page(self) -> bool:
        current = self.current
        if current is None:
            return False
        if self.current_index < len(self.pages) - 1:
            return True
        return current.has_next_page and current.end_cursor is not None

    @property
    def has_previous_page(self) -> bool:
        current = self.current
        if current is None:
            return False
        if self.current_index > 0:
            return True
        return current.has_previous_page and current.start_cursor is not None


def _validate_base_params(
    base_params: Mapping[str, Any], schema: type | None = None
) -> dict[str, Any]:
    params = dict(base_params)
    if schema is not None:
        validate_params(schema, params)
    cursors = sorted(CURSOR_PARAMS & set(params))
    if cursors:
        raise InvalidKeyShape(
            f"base params must not contain cursor parameters: {', '.join(cursors)}"
        )
    first = params.get("first")
    if isinstance(first, bool) or not isinstance(first, int) or first < 1:
        raise InvalidKeyShape(f"page size 'first' must be a positive integer, got {first!r}")
    return params


class PaginationController:
    """Cursor pagination over one resource for one open view.

    The window keeps every visited page boundary so back navigation reuses the
    cached page when it is still there. Only the page on screen holds a cache
    reference; the rest may be evicted, in which case going back re-fetches
    with ``before`` the current start cursor.
    """

    def __init__(
        self,
        coordinator: FetchCoordinator,
        resource: str,
        fetch_fn: FetchFn,
        *,
        schema: type | None = None,
    ):
        self._coordinator = coordinator
        self._store = coordinator.store
        self.resource = resource
        self._fetch_fn = fetch_fn
        self._schema = schema
        self._window: PageWindow | None = None
        self._state = PaginationState.EMPTY
        self._held: QueryKey | None = None
        self.error: BaseException | None = None

    @property
    def state(self) -> PaginationState:
        return self._state

    @property
    def fetch_fn(self) -> FetchFn:
        return self._fetch_fn

    @property
    def window(self) -> PageWindow | None:
        return self._window

    @property
    def page_index(self) -> int:
        return self._window.current_index if self._window else -1

    @property
    def current_page(self) -> Connection | None:
        if self._window is None or self._window.current is None:
            return None
        value = self._store.peek(self._window.current.key)
        return Connection.coerce(value) if value is not None else None

    def has_next_page(self) -> bool:
        return self._window is not None and self._window.has_next_page

    def has_previous_page(self) -> bool:
        return self._window is not None and self._window.has_previous_page

    def is_loading(self) -> bool:
        return self._state in _LOADING_STATES

    async def load_first_page(self, base_params: Mapping[str, Any]) -> Connection:
        params = _validate_base_params(base_params, self._schema)
        if self.is_loading():
            raise PaginationError(f"{self.resource} is already loading a page")
        if self._window is None or self._window.base_params != params:
            self.reset()
            self._window = PageWindow(base_params=params)
        window = self._window

        key = build(self.resource, params)
        connection = await self._load(window, key, PaginationState.LOADING)
        if self._window is not window:
            return connection
        window.pages = [PageBoundary.from_connection(key, connection)]
        window.current_index = 0
        self._settle(key)
        return connection

    async def go_to_next_page(self) -> Connection:
        window = self._window
        if window is None or self.is_loading() or not window.has_next_page:
            raise NoNextPage(f"{self.resource} has no next page")

        index = window.current_index + 1
        if index < len(window.pages):
            key = window.pages[index].key
        else:
            key = self._base_key(window).with_params(after=window.current.end_cursor)

        connection = self._cached(key)
        if connection is None:
            connection = await self._load(window, key, PaginationState.LOADING_NEXT)
            if self._window is not window:
                return connection
        boundary = PageBoundary.from_connection(key, connection)
        if index < len(window.pages):
            window.pages[index] = boundary
        else:
            window.pages.append(boundary)
        window.current_index = index
        self._settle(key)
        return connection

    async def go_to_previous_page(self) -> Connection:
        window = self._window
        if window is None or self.is_loading() or not window.has_previous_page:
            raise NoPreviousPage(f"{self.resource} has no previous page")

        index = window.current_index - 1
        connection = None
        if index >= 0:
            key = window.pages[index].key
            connection = self._cached(key)
        if connection is None:
            # the earlier page was evicted or never loaded; fetch backwards
            key = (
                self._base_key(window)
                .without("first")
                .with_params(last=window.page_size, before=window.current.start_cursor)
            )
            connection = await self._load(window, key, PaginationState.LOADING_PREVIOUS)
            if self._window is not window:
                return connection
        boundary = PageBoundary.from_connection(key, connection)
        if index >= 0:
            window.pages[index] = boundary
        else:
            window.pages.insert(0, boundary)
            index = 0
        window.current_index = index
        self._settle(key)
        return connection

    def next_page_key(self) -> QueryKey | None:
        window = self._window
        if window is None or not window.has_next_page:
            return None
        index = window.current_index + 1
        if index < len(window.pages):
            return window.pages[index].key
        return self._base_key(window).with_params(after=window.current.end_cursor)

    async def refetch(self) -> Connection:
        window = self._window
        if window is None or window.current is None:
            raise PaginationError(f"{self.resource} has no loaded page to refetch")
        key = window.current.key
        self._store.invalidate(key)
        connection = await self._load(window, key, PaginationState.LOADING)
        if self._window is not window:
            return connection
        window.pages[window.current_index] = PageBoundary.from_connection(key, connection)
        self._settle(key)
        return connection

    def update_base_params(self, base_params: Mapping[str, Any]) -> None:
        params = _validate_base_params(base_params, self._schema)
        if self._window is not None and self._window.base_params == params:
            return
        self.reset()

    def reset(self) -> None:
        if self._window is not None:
            logger.debug("Resetting %s page window", self.resource)
        self._hold(None)
        self._window = None
        self._state = PaginationState.EMPTY
        self.error = None

    def close(self) -> None:
        self.reset()

    async def _load(self, window: PageWindow, key: QueryKey, state: PaginationState) -> Connection:
        previous = self._state
        self._state = state
        try:
            value = await self._coordinator.load(key, self._fetch_fn)
        except FetchError as exc:
            if self._window is window:
                if exc.kind is FetchErrorKind.CANCELLED:
                    self._state = previous
                else:
                    self._state = PaginationState.ERROR
                    self.error = exc
            raise
        except Exception as exc:
            if self._window is window:
                self._state = PaginationState.ERROR
                self.error = exc
            raise
        except BaseException:
            # cancelled navigation leaves the window where it was
            if self._window is window:
                self._state = previous
            raise
        return Connection.coerce(value)

    def _base_key(self, window: PageWindow) -> QueryKey:
        return build(self.resource, window.base_params)

    def _cached(self, key: QueryKey) -> Connection | None:
        entry = self._store.get(key)
        if entry is None or not entry.has_value:
            return None
        return Connection.coerce(entry.value)

    def _settle(self, key: QueryKey) -> None:
        self._hold(key)
        self._state = PaginationState.LOADED
        self.error = None

    def _hold(self, key: QueryKey | None) -> None:
        if self._held is not None:
            self._store.release(self._held)
        self._held = key
        if key is not None:
            self._store.retain(key)

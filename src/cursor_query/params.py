from __future__ import annotations

import re
from dataclasses import dataclass, fields
from typing import Any, Mapping

from .errors import InvalidKeyShape

DEFAULT_PAGE_SIZE = 20

CURSOR_PARAMS = frozenset({"after", "before", "last"})

_NUMERIC_ID = re.compile(r"-?\d+")


@dataclass(frozen=True)
class PaginationParams:
    first: int | None = DEFAULT_PAGE_SIZE
    after: str | None = None
    before: str | None = None
    last: int | None = None

    def params(self) -> dict[str, Any]:
        """Non-None fields as GraphQL variables."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    @classmethod
    def allowed_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))


@dataclass(frozen=True)
class OrdersParams(PaginationParams):
    pass


@dataclass(frozen=True)
class ProductsParams(PaginationParams):
    pass


@dataclass(frozen=True)
class CategoriesParams(PaginationParams):
    pass


@dataclass(frozen=True)
class StoresParams(PaginationParams):
    pass


@dataclass(frozen=True)
class CollectionsParams(PaginationParams):
    pass


@dataclass(frozen=True)
class DetailParams:
    id: str | int

    def __post_init__(self):
        # numeric ids arrive as strings from some list queries
        if isinstance(self.id, str) and _NUMERIC_ID.fullmatch(self.id.strip()):
            object.__setattr__(self, "id", int(self.id))

    def params(self) -> dict[str, Any]:
        return {"id": self.id}

    @classmethod
    def allowed_names(cls) -> frozenset[str]:
        return frozenset({"id"})


def validate_params(schema: type, params: Mapping[str, Any]) -> None:
    """Reject parameter names the resource schema does not declare."""
    allowed = schema.allowed_names()
    unknown = sorted(set(params) - allowed)
    if unknown:
        raise InvalidKeyShape(
            f"{schema.__name__} does not accept parameter(s): {', '.join(unknown)}"
        )

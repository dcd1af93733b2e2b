from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from .errors import InvalidKeyShape

Scalar = Union[str, int, float, bool, None]

_SEGMENT_SEP = "."


def _check_scalar(name: str, value: Any) -> Scalar:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidKeyShape(f"parameter {name!r} must be finite, got {value!r}")
        return value
    raise InvalidKeyShape(
        f"parameter {name!r} must be a string, number, boolean or None, "
        f"got {type(value).__name__}"
    )


@dataclass(frozen=True, eq=False)
class QueryKey:
    """Canonical identity of one fetch: a resource name plus scalar params.

    Equality and hashing use the canonical serialization, so ``1``, ``1.0``
    and ``True`` produce distinct keys even though Python compares them equal.
    """

    resource: str
    items: tuple[tuple[str, Scalar], ...]
    canonical: str = field(init=False, repr=False)

    def __post_init__(self):
        payload = [self.resource, [[name, value] for name, value in self.items]]
        object.__setattr__(
            self,
            "canonical",
            json.dumps(payload, separators=(",", ":"), ensure_ascii=False),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, QueryKey):
            return NotImplemented
        return self.canonical == other.canonical

    def __hash__(self) -> int:
        return hash(self.canonical)

    def __str__(self) -> str:
        return self.canonical

    @property
    def params(self) -> dict[str, Scalar]:
        return dict(self.items)

    def get(self, name: str, default: Scalar = None) -> Scalar:
        for item_name, value in self.items:
            if item_name == name:
                return value
        return default

    def with_params(self, **updates: Scalar) -> QueryKey:
        merged = self.params
        merged.update(updates)
        return build(self.resource, merged)

    def without(self, *names: str) -> QueryKey:
        return build(
            self.resource,
            {name: value for name, value in self.items if name not in names},
        )

    def matches(self, target: QueryKey | str) -> bool:
        """True if ``target`` is this key or a resource prefix covering it."""
        if isinstance(target, QueryKey):
            return self == target
        return resource_matches(self.resource, target)


def resource_matches(resource: str, prefix: str) -> bool:
    if resource == prefix:
        return True
    return resource.startswith(prefix + _SEGMENT_SEP)


def build(resource_name: str, params: Mapping[str, Any] | None = None) -> QueryKey:
    """Build a canonical key; parameter order never affects the result."""
    if not isinstance(resource_name, str) or not resource_name:
        raise InvalidKeyShape("resource name must be a non-empty string")
    if params is None:
        params = {}
    if not isinstance(params, Mapping):
        raise InvalidKeyShape(
            f"params must be a mapping, got {type(params).__name__}"
        )

    items = []
    for name, value in params.items():
        if not isinstance(name, str) or not name:
            raise InvalidKeyShape(f"parameter names must be non-empty strings, got {name!r}")
        items.append((name, _check_scalar(name, value)))
    items.sort(key=lambda item: item[0])
    return QueryKey(resource=resource_name, items=tuple(items))

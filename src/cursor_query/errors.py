from __future__ import annotations

from enum import Enum
from typing import Any

import httpx


class CursorQueryError(Exception):
    """Base class for every error raised by cursor_query."""


class InvalidKeyShape(CursorQueryError, ValueError):
    """A query key or parameter set that cannot be canonicalized."""


class FetchErrorKind(str, Enum):
    NETWORK = "network"
    SERVER_REJECTED = "server_rejected"
    CANCELLED = "cancelled"


# code -> (user message, retryable, requires auth)
_GRAPHQL_CODES: dict[str, tuple[str, bool, bool]] = {
    "AUTH_NOT_AUTHORIZED": (
        "You do not have permission to access this resource.",
        False,
        True,
    ),
    "AUTH_UNAUTHENTICATED": (
        "Your session has expired. Please log in again.",
        False,
        True,
    ),
    "BAD_USER_INPUT": (
        "Invalid request. Please check your input and try again.",
        False,
        False,
    ),
    "FORBIDDEN": (
        "Access denied. You do not have permission to perform this action.",
        False,
        True,
    ),
    "NOT_FOUND": ("The requested resource could not be found.", False, False),
    "INTERNAL_SERVER_ERROR": (
        "A server error occurred. Please try again later.",
        True,
        False,
    ),
}

_CODE_ALIASES = {
    "UNAUTHENTICATED": "AUTH_UNAUTHENTICATED",
    "BAD_REQUEST": "BAD_USER_INPUT",
}

_AUTH_STATUSES = {401, 403}


def normalize_graphql_code(code: str | None) -> str:
    if code is None:
        return "UNKNOWN"
    code = _CODE_ALIASES.get(code, code)
    return code if code in _GRAPHQL_CODES else "UNKNOWN"


def _code_info(code: str) -> tuple[str, bool, bool]:
    return _GRAPHQL_CODES.get(
        normalize_graphql_code(code),
        ("Something went wrong. Please try again later.", True, False),
    )


class FetchError(CursorQueryError):
    """A failed fetch, shared by every waiter of the request that produced it."""

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.code = code
        self.details = details or {}

    def __repr__(self) -> str:
        return (
            f"FetchError(kind={self.kind.value!r}, message={self.message!r}, "
            f"status={self.status!r}, code={self.code!r})"
        )

    @property
    def retryable(self) -> bool:
        """Whether a user-initiated retry can reasonably succeed."""
        if self.kind is FetchErrorKind.NETWORK:
            return True
        if self.kind is FetchErrorKind.CANCELLED:
            return False
        if self.code is not None:
            return _code_info(self.code)[1]
        return self.status is not None and self.status >= 500

    @property
    def requires_auth(self) -> bool:
        if self.status in _AUTH_STATUSES:
            return True
        if self.code is not None:
            return _code_info(self.code)[2]
        return False

    @property
    def user_message(self) -> str:
        if self.kind is FetchErrorKind.NETWORK:
            return (
                "Unable to connect to the server. Please check your internet "
                "connection and try again."
            )
        if self.kind is FetchErrorKind.CANCELLED:
            return ""
        if self.code is not None:
            return _code_info(self.code)[0]
        return "Something went wrong. Please try again later."

    @classmethod
    def from_exception(cls, exc: BaseException) -> FetchError | None:
        """Classify a transport exception, or return None for anything else."""
        if isinstance(exc, FetchError):
            return exc
        if isinstance(exc, httpx.HTTPStatusError):
            response = exc.response
            return cls(
                FetchErrorKind.SERVER_REJECTED,
                f"{response.status_code} {response.reason_phrase} - {response.text}",
                status=response.status_code,
            )
        if isinstance(exc, (httpx.TransportError, OSError, TimeoutError)):
            return cls(FetchErrorKind.NETWORK, f"Network error: {exc}")
        return None

    @classmethod
    def cancelled(cls, message: str = "Fetch was cancelled") -> FetchError:
        return cls(FetchErrorKind.CANCELLED, message)


class PaginationError(CursorQueryError):
    """Navigation past a known page boundary."""


class NoNextPage(PaginationError):
    pass


class NoPreviousPage(PaginationError):
    pass

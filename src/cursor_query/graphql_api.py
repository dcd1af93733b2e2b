from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

import httpx

from .config import Config, graphql_endpoint, resolve_app_id, resolve_token
from .errors import FetchError, FetchErrorKind, normalize_graphql_code
from .fetcher import FetchFn
from .keys import Scalar
from .pagination import Connection

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], "str | None"]


class GraphQLClient:
    """POSTs GraphQL documents and maps failures onto ``FetchError``."""

    def __init__(
        self,
        endpoint: str | None = None,
        *,
        app_id: str | None = None,
        token: str | None = None,
        token_provider: TokenProvider | None = None,
        timeout: float = 30.0,
        config: Config | None = None,
    ):
        cfg = config or Config()
        self.endpoint = endpoint or graphql_endpoint(config=cfg)
        self.app_id = resolve_app_id(app_id, cfg)
        self.timeout = timeout
        if token_provider is None:
            static_token = resolve_token(token, cfg)
            token_provider = lambda: static_token  # noqa: E731
        self._token_provider = token_provider

    def headers(self) -> dict[str, str]:
        headers = {"X-App-Id": self.app_id, "Content-Type": "application/json"}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def request(self, document: str, variables: Mapping[str, Any] | None = None) -> dict[str, Any]:
        body = {"query": document, "variables": dict(variables or {})}
        headers = self.headers()
        logger.debug(
            "GraphQL request %s... variables=%s auth=%s",
            document.strip().split("\n")[0],
            body["variables"],
            "Authorization" in headers,
        )

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(self.endpoint, json=body, headers=headers)
            except httpx.TransportError as exc:
                raise FetchError(
                    FetchErrorKind.NETWORK,
                    f"Network error: unable to reach {self.endpoint}: {exc}",
                ) from exc

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise self._rejection(response) or FetchError.from_exception(exc) from exc

            try:
                payload = response.json()
            except ValueError as exc:
                raise FetchError(
                    FetchErrorKind.SERVER_REJECTED,
                    f"Invalid JSON from {self.endpoint}: {response.text[:200]}",
                    status=response.status_code,
                ) from exc

        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            raise self._graphql_error(errors, response.status_code)
        return (payload.get("data") if isinstance(payload, dict) else None) or {}

    def query_fn(self, document: str, connection_path: str) -> FetchFn:
        """Build a ``fetch_fn`` returning the connection found at ``connection_path``."""

        async def fetch(params: Mapping[str, Scalar]) -> Connection:
            data = await self.request(document, params)
            return Connection.coerce(extract_path(data, connection_path))

        return fetch

    def detail_fn(self, document: str, result_path: str) -> FetchFn:
        async def fetch(params: Mapping[str, Scalar]) -> Any:
            data = await self.request(document, params)
            return extract_path(data, result_path)

        return fetch

    def _rejection(self, response: httpx.Response) -> FetchError | None:
        try:
            payload = response.json()
        except ValueError:
            return None
        errors = payload.get("errors") if isinstance(payload, dict) else None
        if not errors:
            return None
        return self._graphql_error(errors, response.status_code)

    @staticmethod
    def _graphql_error(errors: Any, status: int | None) -> FetchError:
        # some servers send a single error object instead of a list
        if not isinstance(errors, list):
            errors = [errors]
        first = errors[0] if isinstance(errors[0], dict) else {}
        message = first.get("message") or "An unknown error occurred"
        extensions = first.get("extensions")
        raw_code = extensions.get("code") if isinstance(extensions, dict) else None
        return FetchError(
            FetchErrorKind.SERVER_REJECTED,
            message,
            status=status,
            code=normalize_graphql_code(raw_code),
            details={"errors": errors},
        )


def extract_path(data: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted path such as ``"orders"`` or ``"viewer.orders"``."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            raise FetchError(
                FetchErrorKind.SERVER_REJECTED,
                f"Response is missing {path!r}",
            )
        current = current[part]
    return current

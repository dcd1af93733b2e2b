from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Config:
    api_host_default: str = "https://localhost:5005"
    api_host_env: str = "CURSOR_QUERY_API_HOST"
    app_id_default: str = "plazamalta"
    app_id_env: str = "CURSOR_QUERY_APP_ID"
    token_env: str = "CURSOR_QUERY_TOKEN"
    graphql_path: str = "/graphql"


@dataclass(frozen=True)
class CacheConfig:
    """Timing knobs for a cache session, all in milliseconds.

    ttl_ms
        Age after which a fresh entry is considered stale. ``0`` means every
        read re-checks staleness.
    eviction_grace_ms
        How long an unreferenced stale entry survives before ``sweep`` drops
        it. ``None`` keeps entries for the whole session.
    stale_while_revalidate_ms
        How long past staleness a cached value may still be served to callers
        that opt into stale reads. ``None`` means no bound.
    preload_delay_ms
        Delay between a hover intent and the prefetch it triggers.
    """

    ttl_ms: int = 0
    eviction_grace_ms: int | None = None
    stale_while_revalidate_ms: int | None = None
    preload_delay_ms: int = 300

    def __post_init__(self):
        for name in (
            "ttl_ms",
            "eviction_grace_ms",
            "stale_while_revalidate_ms",
            "preload_delay_ms",
        ):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must not be negative")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> CacheConfig:
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            ttl_ms=_env_int(env, "CURSOR_QUERY_TTL_MS", defaults.ttl_ms),
            eviction_grace_ms=_env_int(
                env, "CURSOR_QUERY_EVICTION_GRACE_MS", defaults.eviction_grace_ms
            ),
            stale_while_revalidate_ms=_env_int(
                env, "CURSOR_QUERY_SWR_MS", defaults.stale_while_revalidate_ms
            ),
            preload_delay_ms=_env_int(
                env, "CURSOR_QUERY_PRELOAD_DELAY_MS", defaults.preload_delay_ms
            ),
        )


def _env_int(env, name: str, default: int | None) -> int | None:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def resolve_api_host(api_host: str | None = None, config: Config | None = None) -> str:
    cfg = config or Config()
    candidate = api_host or os.environ.get(cfg.api_host_env, cfg.api_host_default)
    return candidate.rstrip("/")


def resolve_app_id(app_id: str | None = None, config: Config | None = None) -> str:
    cfg = config or Config()
    return app_id or os.environ.get(cfg.app_id_env, cfg.app_id_default)


def resolve_token(token: str | None = None, config: Config | None = None) -> str | None:
    cfg = config or Config()
    return token or os.environ.get(cfg.token_env) or None


def graphql_endpoint(api_host: str | None = None, config: Config | None = None) -> str:
    cfg = config or Config()
    return f"{resolve_api_host(api_host, cfg)}{cfg.graphql_path}"

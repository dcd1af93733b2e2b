from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PagesOptions:
    resource: str
    page_size: int
    pages: int
    api_host: str | None
    token: str | None
    app_id: str | None
    prefetch: bool
    log_level: str

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class TabStorage(Protocol):
    """sessionStorage-like key/value store scoped to one tab."""

    def get_item(self, key: str) -> str | None: ...
    def set_item(self, key: str, value: str) -> None: ...
    def remove_item(self, key: str) -> None: ...


@dataclass(frozen=True, slots=True)
class SessionMetadata:
    session_id: str
    viewport_width: int
    viewport_height: int
    screen_width: int
    screen_height: int
    user_agent: str
    language: str
    platform: str
    referrer: str | None
    url: str
    timestamp: str  # ISO-8601 UTC, time of the snapshot


@dataclass(frozen=True, slots=True)
class Session:
    session_id: str
    created_ms: int | None
    metadata: SessionMetadata


@dataclass(frozen=True)
class SessionConfig:
    storage_key: str = "analytics_session_id"
    token_length: int = 9

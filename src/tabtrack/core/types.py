from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit


@dataclass(frozen=True)
class RunContext:
    run_id: str
    seed: int
    start_dt_utc: datetime


@dataclass(frozen=True, slots=True)
class ContentItem:
    """A library entry being displayed or clicked."""

    item_id: str
    name: str = ""
    category: str | None = None


@dataclass
class Visitor:
    """Identity as the auth layer currently sees it; None while signed out."""

    user_id: str | None = None


@dataclass
class BrowserContext:
    """
    Mutable stand-in for window/document/location. Readers snapshot it at
    call time; the journey player mutates it as the visitor navigates.
    """

    url: str = "https://example.com/"
    referrer: str | None = None
    nav_state: dict[str, Any] = field(default_factory=dict)

    viewport_width: int = 1280
    viewport_height: int = 800
    screen_width: int = 1920
    screen_height: int = 1080
    scroll_y: int = 0

    user_agent: str = "Mozilla/5.0 (X11; Linux x86_64)"
    language: str = "en-US"
    platform: str = "Linux x86_64"

    @property
    def hostname(self) -> str:
        return urlsplit(self.url).hostname or ""

    @property
    def pathname(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def query(self) -> str:
        return urlsplit(self.url).query

    def navigate(self, url: str, *, state: dict[str, Any] | None = None) -> None:
        # same-tab navigation: the previous page becomes the referrer
        self.referrer = self.url
        self.url = url
        self.nav_state = dict(state or {})
        self.scroll_y = 0


@dataclass(frozen=True)
class SiteConfig:
    """Route layout the heuristics key on."""

    library_path: str = "/mental-models"
    dashboard_path: str = "/dashboard"

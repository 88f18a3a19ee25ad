from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import simpy

from tabtrack.core.types import ContentItem

VIEW_SOURCES: set[str] = {
    "library_search",
    "library_browse",
    "trending_widget",
    "related_model",
    "dashboard_link",
    "recommendation",
    "external_link",
    "direct_url",
}

DEFAULT_VIEW_SOURCE = "direct_url"


class ViewState(Enum):
    IDLE = "idle"
    TRACKED = "tracked"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class ViewTrackingConfig:
    enabled: bool = True
    track_duration: bool = True
    track_interactions: bool = False
    # durations at or below this are noise (accidental loads)
    min_duration_s: int = 1
    debug: bool = False


@dataclass(frozen=True, slots=True)
class ViewEvent:
    user_id: str
    session_id: str
    item_id: str
    item_name: str
    category: str | None
    view_source: str
    referrer_path: str | None
    viewport_width: int
    viewport_height: int
    created_at: datetime

    def as_record(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "category": self.category,
            "view_source": self.view_source,
            "referrer_path": self.referrer_path,
            "viewport_width": self.viewport_width,
            "viewport_height": self.viewport_height,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class ViewActivation:
    """
    State for one continuous period an item is on screen. Replaced wholesale
    when the subject changes.
    """

    item: ContentItem
    user_id: str
    session_id: str
    started_ms: int
    state: ViewState = ViewState.IDLE

    insert: simpy.events.Process | None = None
    view_id: str | None = None
    duration_s: int | None = None
    finalize_reason: str | None = None
    interaction_count: int = 0


@dataclass(frozen=True, slots=True)
class ViewTrackingStatus:
    is_tracking: bool
    item_id: str | None
    session_id: str
    view_duration_s: int
    interaction_count: int

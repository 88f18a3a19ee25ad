from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

SEARCH_TYPES: set[str] = {"initial", "refined", "paginated"}
SEARCH_LOCATIONS: set[str] = {"library_main", "dashboard_widget", "modal", "quick_search"}


@dataclass(frozen=True)
class SearchTrackingConfig:
    """
    failed_min_query_length / failed_min_results:
      a search is failed if it returns nothing, or if the query is longer
      than failed_min_query_length and returns fewer than failed_min_results.
      Both values are empirical.
    """

    enabled: bool = True
    debounce_s: float = 0.5
    failed_min_query_length: int = 3
    failed_min_results: int = 3
    suggestion_limit: int = 5
    suggestion_min_prefix: int = 2
    debug: bool = False


@dataclass(frozen=True, slots=True)
class SearchContext:
    category: str | None = None
    page: int = 1
    sort_by: str | None = None
    extra: dict[str, Any] | None = None

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> SearchContext:
        data = dict(data or {})
        category = data.pop("category", None)
        raw_page = data.pop("page", 1)
        sort_by = data.pop("sort_by", data.pop("sortBy", None))
        try:
            page = int(raw_page or 1)
        except (TypeError, ValueError):
            # unparseable page: count as the first page, keep what was sent
            page = 1
            data["page_raw"] = raw_page
        return cls(
            category=category,
            page=page,
            sort_by=sort_by,
            extra=data or None,
        )

    def filters(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "category": self.category,
            "page": self.page,
            "sort_by": self.sort_by,
        }
        if self.extra:
            out.update(self.extra)
        return out


@dataclass(slots=True)
class SearchEpisode:
    """
    A run of refinements counted as one search interaction. Times are epoch ms.
    """

    start_ms: int = 0
    end_ms: int = 0
    refinement_count: int = 0
    first_click_ms: int | None = None
    abandoned_ms: int | None = None

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms


@dataclass(frozen=True, slots=True)
class SearchEvent:
    user_id: str
    session_id: str
    search_query: str
    search_query_normalized: str
    results_count: int
    search_location: str
    filters_applied: dict[str, Any]
    search_type: str
    failed_search: bool
    search_duration_ms: int
    viewport_context: dict[str, int]
    created_at: datetime

    def as_record(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "search_query": self.search_query,
            "search_query_normalized": self.search_query_normalized,
            "results_count": self.results_count,
            "search_location": self.search_location,
            "filters_applied": dict(self.filters_applied),
            "search_type": self.search_type,
            "failed_search": self.failed_search,
            "search_duration_ms": self.search_duration_ms,
            "viewport_context": dict(self.viewport_context),
            "created_at": self.created_at,
        }

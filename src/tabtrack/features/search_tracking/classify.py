from __future__ import annotations

from tabtrack.core.types import SiteConfig


def normalize_query(query: str) -> str:
    return query.strip().lower()


def classify_search_type(
    current: str,
    previous: str | None,
    *,
    page: int = 1,
    previous_page: int = 1,
) -> str:
    """
    Compare normalized query text with the previously tracked one.
      - no previous query            -> initial
      - same text, page moved forward -> paginated
      - prefix either way            -> refined
      - anything else                -> initial (topic change)
    """
    if not previous:
        return "initial"
    if current == previous and page > previous_page:
        return "paginated"
    if current.startswith(previous) or previous.startswith(current):
        return "refined"
    return "initial"


def detect_failed_search(
    results_count: int,
    query: str,
    *,
    min_query_length: int = 3,
    min_results: int = 3,
) -> bool:
    # short queries are broad by nature; only an empty result set fails them
    if results_count == 0:
        return True
    return len(query) > min_query_length and results_count < min_results


def search_location(pathname: str, site: SiteConfig = SiteConfig()) -> str:
    library = site.library_path.rstrip("/")
    path = pathname.rstrip("/") or "/"
    if path == library:
        return "library_main"
    if path == site.dashboard_path.rstrip("/"):
        return "dashboard_widget"
    if pathname.startswith(library + "/"):
        return "modal"
    return "quick_search"

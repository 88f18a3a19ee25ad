from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

from tabtrack.core.types import BrowserContext, SiteConfig

from .types import DEFAULT_VIEW_SOURCE

# ?ref=<value> and navigation state `from` share this vocabulary
_REF_SOURCES: dict[str, str] = {
    "search": "library_search",
    "trending": "trending_widget",
    "related": "related_model",
    "dashboard": "dashboard_link",
    "recommendation": "recommendation",
}

_STATE_FROM_SOURCES: dict[str, str] = {
    "search": "library_search",
    "trending": "trending_widget",
    "related": "related_model",
    "dashboard": "dashboard_link",
}


def determine_view_source(browser: BrowserContext, site: SiteConfig = SiteConfig()) -> str:
    """
    Resolve how the visitor reached the current item, in priority order:
      1. explicit `source` query param (taken verbatim)
      2. `ref` query param
      3. navigation state `from`
      4. referrer path heuristics
      5. default "direct_url"
    """
    params = parse_qs(browser.query)

    source = (params.get("source") or [""])[0]
    if source:
        return source

    ref = (params.get("ref") or [""])[0]
    if ref:
        return _REF_SOURCES.get(ref, DEFAULT_VIEW_SOURCE)

    from_ = browser.nav_state.get("from")
    if isinstance(from_, str) and from_ in _STATE_FROM_SOURCES:
        return _STATE_FROM_SOURCES[from_]

    library = site.library_path.rstrip("/")
    referrer = browser.referrer or ""
    if referrer:
        ref_parts = urlsplit(referrer)
        ref_path = ref_parts.path.rstrip("/")
        if ref_path == library:
            return "library_browse"
        if ref_path.startswith(site.dashboard_path):
            return "dashboard_link"
        if ref_parts.hostname and ref_parts.hostname != browser.hostname:
            return "external_link"

    # item page reached from another item page
    if browser.pathname.startswith(library + "/") and urlsplit(referrer).path.startswith(library):
        return "library_browse"

    return DEFAULT_VIEW_SOURCE

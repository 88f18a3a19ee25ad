from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

import simpy

from tabtrack.core.clock import Clock
from tabtrack.core.debounce import Debouncer
from tabtrack.core.errors import TransientDeliveryError
from tabtrack.core.logging import DebugHook, get_logger
from tabtrack.core.types import BrowserContext, SiteConfig, Visitor
from tabtrack.features.batching.schema import TelemetryRecord
from tabtrack.features.lifecycle.service import PAGE_HIDDEN, PAGE_UNLOAD, PageLifecycle

from .classify import classify_search_type, detect_failed_search, normalize_query, search_location
from .types import SearchContext, SearchEpisode, SearchEvent, SearchTrackingConfig


class SearchStore(Protocol):
    def insert_search(self, record: dict[str, Any]) -> simpy.events.Process: ...
    def update_search_click(
        self, search_id: str, item_id: str, position: int, time_to_click_ms: int
    ) -> simpy.events.Process: ...
    def update_search_abandonment(self, search_id: str, dwell_ms: int) -> simpy.events.Process: ...
    def query_search_suggestions(self, prefix: str, limit: int) -> simpy.events.Process: ...


class SessionsLike(Protocol):
    def get_session_id(self) -> str: ...


class RecordQueue(Protocol):
    def add_event(self, record: TelemetryRecord) -> None: ...


class SearchTracker:
    """
    Search attribution pipeline.

    Submission half:
      track_search (debounced) -> submit -> classify, detect failure,
      update episode timing, note a content gap, insert. On success
      remembers the search id and the normalized query for the next
      classification. Everything before the insert happens synchronously in
      submit, so a query flushed on unload queues its gap record before the
      batch queue closes.

    Click half:
      track_search_click attaches item/position/time-to-click to the
      remembered search; track_search_abandonment fires only when no click
      was seen for the episode.

    Previous-query state moves only after an insert resolves. A click or a
    second submission racing an in-flight insert sees stale state and
    degrades to a no-op. Nothing here raises to the caller.
    """

    def __init__(
        self,
        *,
        env: simpy.Environment,
        clock: Clock,
        sessions: SessionsLike,
        store: SearchStore,
        visitor: Visitor,
        browser: BrowserContext,
        cfg: SearchTrackingConfig = SearchTrackingConfig(),
        site: SiteConfig = SiteConfig(),
        queue: RecordQueue | None = None,
    ) -> None:
        self.env = env
        self.clock = clock
        self.sessions = sessions
        self.store = store
        self.visitor = visitor
        self.browser = browser
        self.cfg = cfg
        self.site = site
        self.queue = queue

        self._previous_query: str | None = None
        self._previous_page = 1
        self._search_id: str | None = None
        self._episode = SearchEpisode()
        self._clicked_ids: set[str] = set()
        self._abandoned_ids: set[str] = set()

        self._debouncer = Debouncer(env, cfg.debounce_s, self.submit)
        self._logger = get_logger(__name__)
        self._debug = DebugHook(self._logger, enabled=cfg.debug, feature="search_tracking")

    # ----- read-only state -----
    @property
    def current_query(self) -> str | None:
        return self._previous_query

    @property
    def search_id(self) -> str | None:
        return self._search_id

    @property
    def is_searching(self) -> bool:
        return self._search_id is not None

    @property
    def episode(self) -> SearchEpisode:
        return self._episode

    @property
    def debouncer(self) -> Debouncer:
        return self._debouncer

    def bind(self, lifecycle: PageLifecycle) -> None:
        lifecycle.subscribe(PAGE_HIDDEN, self.flush_pending)
        lifecycle.subscribe(PAGE_UNLOAD, self._on_unload)

    # ----------------------------
    # Query submission half
    # ----------------------------
    def track_search(
        self,
        query: str,
        results: Sequence[Any],
        context: SearchContext | dict[str, Any] | None = None,
    ) -> None:
        """Debounced entry point; only the last call in a quiet window is tracked."""
        self._debouncer(query, list(results), context)

    def flush_pending(self) -> simpy.events.Event | None:
        """Submit a debounced query now instead of waiting out the window."""
        return self._debouncer.flush()

    def submit(
        self,
        query: str,
        results: Sequence[Any],
        context: SearchContext | dict[str, Any] | None = None,
    ) -> simpy.events.Event:
        """Undebounced submission. Event value: search id, or None if not tracked."""
        if not isinstance(context, SearchContext):
            context = SearchContext.from_mapping(context)

        user_id = self.visitor.user_id
        normalized = normalize_query(query)
        if not self.cfg.enabled or not user_id or not normalized:
            self._debug(
                "Skipping search tracking",
                skip="no_user" if not user_id else "empty_query",
                query=query,
            )
            return self.env.timeout(0, value=None)

        event = self._build_event(query, normalized, len(results), context, user_id)
        if event.failed_search:
            self._note_content_gap(event)
        return self.env.process(self._insert_proc(event, context.page))

    def _build_event(
        self,
        query: str,
        normalized: str,
        results_count: int,
        context: SearchContext,
        user_id: str,
    ) -> SearchEvent:
        now = self.clock.now_ms()
        search_type = classify_search_type(
            normalized,
            self._previous_query,
            page=context.page,
            previous_page=self._previous_page,
        )
        failed = detect_failed_search(
            results_count,
            normalized,
            min_query_length=self.cfg.failed_min_query_length,
            min_results=self.cfg.failed_min_results,
        )

        if search_type == "initial":
            self._episode = SearchEpisode(start_ms=now, end_ms=now)
        elif search_type == "refined":
            self._episode.refinement_count += 1
            self._episode.end_ms = now

        session_id = self.sessions.get_session_id()
        return SearchEvent(
            user_id=user_id,
            session_id=session_id,
            search_query=query,
            search_query_normalized=normalized,
            results_count=int(results_count),
            search_location=search_location(self.browser.pathname, self.site),
            filters_applied=context.filters(),
            search_type=search_type,
            failed_search=failed,
            search_duration_ms=self._episode.duration_ms,
            viewport_context={
                "width": int(self.browser.viewport_width),
                "height": int(self.browser.viewport_height),
                "scroll_position": int(self.browser.scroll_y),
            },
            created_at=self.clock.now(),
        )

    def _insert_proc(self, event: SearchEvent, page: int):
        normalized = event.search_query_normalized
        self._debug("Tracking search", query=normalized, search_type=event.search_type)
        try:
            search_id = yield self.store.insert_search(event.as_record())
        except TransientDeliveryError as e:
            self._logger.warning(
                "search_insert_failed",
                extra={"event": "search_insert_failed", "query": normalized, "error": str(e)},
            )
            return None

        self._search_id = search_id
        self._previous_query = normalized
        self._previous_page = page
        self._debug("Search tracked successfully", search_id=search_id)
        return search_id

    def _note_content_gap(self, event: SearchEvent) -> None:
        self._logger.info(
            "content_gap",
            extra={
                "event": "content_gap",
                "query": event.search_query_normalized,
                "session_id": event.session_id,
            },
        )
        if self.queue is not None:
            self.queue.add_event(
                TelemetryRecord(
                    record_type="content_gap",
                    created_at=event.created_at,
                    user_id=event.user_id,
                    session_id=event.session_id,
                    subject=event.search_query_normalized,
                    value_num=float(event.results_count),
                    value_str=event.search_location,
                    payload=event.filters_applied,
                )
            )

    # ----------------------------
    # Click attribution half
    # ----------------------------
    def track_search_click(self, item_id: str, position: int) -> simpy.events.Event:
        """Event value: True if the click was attached to the remembered search."""
        search_id = self._search_id
        if not self.visitor.user_id or search_id is None:
            self._debug("Cannot track click", skip="no_search_id", item_id=item_id)
            return self.env.timeout(0, value=False)

        now = self.clock.now_ms()
        if self._episode.first_click_ms is None:
            self._episode.first_click_ms = now

        if search_id in self._clicked_ids:
            self._debug("Search already attributed", skip="already_attributed", search_id=search_id)
            return self.env.timeout(0, value=False)
        self._clicked_ids.add(search_id)

        time_to_click_ms = max(0, now - self._episode.end_ms) if self._episode.end_ms else 0
        return self.env.process(
            self._click_proc(search_id, item_id, int(position), time_to_click_ms)
        )

    def _click_proc(self, search_id: str, item_id: str, position: int, time_to_click_ms: int):
        try:
            ok = yield self.store.update_search_click(search_id, item_id, position, time_to_click_ms)
        except TransientDeliveryError as e:
            self._logger.warning(
                "search_click_failed",
                extra={"event": "search_click_failed", "search_id": search_id, "error": str(e)},
            )
            return False

        self._debug("Search click tracked", search_id=search_id, item_id=item_id)
        return bool(ok)

    def track_search_abandonment(self) -> simpy.events.Event:
        """
        Event value: True if an abandonment was recorded. Judged on the
        episode as it stands at the call, not when the update lands.
        """
        search_id = self._search_id
        if (
            not self.visitor.user_id
            or search_id is None
            or self._episode.first_click_ms is not None
            or search_id in self._abandoned_ids
        ):
            return self.env.timeout(0, value=False)

        now = self.clock.now_ms()
        self._abandoned_ids.add(search_id)
        self._episode.abandoned_ms = now
        dwell_ms = max(0, now - self._episode.end_ms)

        self._debug("Tracking search abandonment", search_id=search_id, duration_ms=dwell_ms)
        return self.env.process(self._abandonment_proc(search_id, dwell_ms))

    def _abandonment_proc(self, search_id: str, dwell_ms: int):
        try:
            ok = yield self.store.update_search_abandonment(search_id, dwell_ms)
        except TransientDeliveryError as e:
            self._logger.warning(
                "search_abandonment_failed",
                extra={
                    "event": "search_abandonment_failed",
                    "search_id": search_id,
                    "error": str(e),
                },
            )
            return False
        return bool(ok)

    # ----------------------------
    # Suggestions
    # ----------------------------
    def get_search_suggestions(self, partial_query: str) -> simpy.events.Process:
        """Process value: up to suggestion_limit distinct prior successful queries."""
        return self.env.process(self._suggestions_proc(partial_query))

    def _suggestions_proc(self, partial_query: str):
        prefix = normalize_query(partial_query or "")
        if len(prefix) < self.cfg.suggestion_min_prefix:
            return []

        limit = self.cfg.suggestion_limit
        try:
            # over-fetch so duplicates do not starve the result
            rows = yield self.store.query_search_suggestions(prefix, limit * 4)
        except TransientDeliveryError as e:
            self._logger.warning(
                "search_suggestions_failed",
                extra={"event": "search_suggestions_failed", "query": prefix, "error": str(e)},
            )
            return []

        return list(dict.fromkeys(rows))[:limit]

    def _on_unload(self) -> None:
        # abandonment is judged on the search the visitor was looking at
        self.track_search_abandonment()
        self.flush_pending()

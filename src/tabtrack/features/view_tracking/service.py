from __future__ import annotations

from typing import Any, Protocol

import simpy

from tabtrack.core.clock import Clock
from tabtrack.core.errors import TransientDeliveryError
from tabtrack.core.logging import DebugHook, get_logger
from tabtrack.core.types import BrowserContext, ContentItem, SiteConfig, Visitor
from tabtrack.features.batching.schema import TelemetryRecord
from tabtrack.features.lifecycle.service import (
    PAGE_HIDDEN,
    PAGE_UNLOAD,
    SUBJECT_CHANGED,
    PageLifecycle,
)

from .source import determine_view_source
from .types import (
    ViewActivation,
    ViewEvent,
    ViewState,
    ViewTrackingConfig,
    ViewTrackingStatus,
)


class ViewStore(Protocol):
    def insert_view(self, record: dict[str, Any]) -> simpy.events.Process: ...
    def update_view_duration(
        self, item_id: str, session_id: str, duration_s: int
    ) -> simpy.events.Process: ...


class SessionsLike(Protocol):
    def get_session_id(self) -> str: ...


class RecordQueue(Protocol):
    def add_event(self, record: TelemetryRecord) -> None: ...


class ViewTracker:
    """
    Tracks the item currently on screen.

    Per activation: Idle -> Tracked (one insert) -> Finalized (at most one
    duration update). Repeated activation of the same item is a no-op; a
    different item finalizes the old activation and starts a fresh one.

    The duration update waits on the activation's insert and is skipped if
    the insert produced no id. Failures are logged, never raised.
    """

    def __init__(
        self,
        *,
        env: simpy.Environment,
        clock: Clock,
        sessions: SessionsLike,
        store: ViewStore,
        visitor: Visitor,
        browser: BrowserContext,
        cfg: ViewTrackingConfig = ViewTrackingConfig(),
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

        self._current: ViewActivation | None = None
        self._logger = get_logger(__name__)
        self._debug = DebugHook(self._logger, enabled=cfg.debug, feature="view_tracking")

    @property
    def current(self) -> ViewActivation | None:
        return self._current

    def bind(self, lifecycle: PageLifecycle) -> None:
        lifecycle.subscribe(PAGE_HIDDEN, lambda: self.finalize(reason="page_hidden"))
        lifecycle.subscribe(PAGE_UNLOAD, lambda: self.finalize(reason="page_unload"))
        lifecycle.subscribe(SUBJECT_CHANGED, self._on_subject_changed)

    # ----------------------------
    # Public API
    # ----------------------------
    def activate(self, item: ContentItem) -> simpy.events.Process | None:
        """
        Item displayed. Returns the insert process (value: view id or None),
        or None when tracking is skipped.
        """
        user_id = self.visitor.user_id
        if not self.cfg.enabled or not user_id:
            self._debug(
                "Skipping view tracking",
                skip="disabled" if not self.cfg.enabled else "no_user",
                item_id=item.item_id,
            )
            return None

        current = self._current
        if (
            current is not None
            and current.item.item_id == item.item_id
            and current.user_id == user_id
        ):
            self._debug("View already tracked for this item", skip="duplicate", item_id=item.item_id)
            return current.insert

        if current is not None:
            self.finalize(reason="subject_changed")

        activation = ViewActivation(
            item=item,
            user_id=user_id,
            session_id=self.sessions.get_session_id(),
            started_ms=self.clock.now_ms(),
        )
        self._current = activation

        activation.state = ViewState.TRACKED
        activation.insert = self.env.process(self._insert_proc(activation))
        return activation.insert

    def finalize(self, *, reason: str) -> simpy.events.Process | None:
        """
        Close the current activation. Idempotent: only a Tracked activation
        transitions. Returns the duration-update process when one is issued.
        """
        activation = self._current
        if activation is None or activation.state is not ViewState.TRACKED:
            return None

        activation.state = ViewState.FINALIZED
        activation.finalize_reason = reason

        if not self.cfg.track_duration:
            return None

        duration_s = (self.clock.now_ms() - activation.started_ms) // 1000
        activation.duration_s = duration_s
        if duration_s <= self.cfg.min_duration_s:
            self._debug(
                "Duration too short, skipping update",
                skip="duration_too_short",
                item_id=activation.item.item_id,
                duration_s=duration_s,
            )
            return None

        return self.env.process(self._duration_proc(activation, duration_s))

    def unmount(self) -> simpy.events.Process | None:
        proc = self.finalize(reason="unmount")
        self._current = None
        return proc

    def reset(self) -> simpy.events.Process | None:
        """Session was reset: the (item, session) key is void."""
        proc = self.finalize(reason="session_reset")
        self._current = None
        return proc

    def track_interaction(self, kind: str, metadata: dict[str, Any] | None = None) -> bool:
        activation = self._current
        if not self.cfg.track_interactions or activation is None or not self.visitor.user_id:
            return False

        activation.interaction_count += 1
        self._debug(
            "Interaction tracked",
            item_id=activation.item.item_id,
            reason=kind,
        )

        if self.queue is not None:
            self.queue.add_event(
                TelemetryRecord(
                    record_type="interaction",
                    created_at=self.clock.now(),
                    user_id=activation.user_id,
                    session_id=activation.session_id,
                    subject=activation.item.item_id,
                    value_num=float(activation.interaction_count),
                    value_str=kind,
                    payload=metadata,
                )
            )
        return True

    def status(self) -> ViewTrackingStatus:
        activation = self._current
        if activation is None:
            return ViewTrackingStatus(
                is_tracking=False,
                item_id=None,
                session_id=self.sessions.get_session_id(),
                view_duration_s=0,
                interaction_count=0,
            )
        return ViewTrackingStatus(
            is_tracking=activation.state is ViewState.TRACKED,
            item_id=activation.item.item_id,
            session_id=activation.session_id,
            view_duration_s=(self.clock.now_ms() - activation.started_ms) // 1000,
            interaction_count=activation.interaction_count,
        )

    # ----------------------------
    # Processes
    # ----------------------------
    def _on_subject_changed(self, item: ContentItem | None) -> None:
        current = self._current
        if current is None:
            return
        if item is None or item.item_id != current.item.item_id:
            self.finalize(reason="subject_changed")
            # showing the item again starts a new activation
            self._current = None

    def _build_event(self, activation: ViewActivation) -> ViewEvent:
        item = activation.item
        return ViewEvent(
            user_id=activation.user_id,
            session_id=activation.session_id,
            item_id=item.item_id,
            item_name=item.name,
            category=item.category,
            view_source=determine_view_source(self.browser, self.site),
            referrer_path=self.browser.referrer or None,
            viewport_width=int(self.browser.viewport_width),
            viewport_height=int(self.browser.viewport_height),
            created_at=self.clock.now(),
        )

    def _insert_proc(self, activation: ViewActivation):
        event = self._build_event(activation)
        self._debug("Tracking view", item_id=event.item_id, session_id=event.session_id)
        try:
            view_id = yield self.store.insert_view(event.as_record())
        except TransientDeliveryError as e:
            self._logger.warning(
                "view_insert_failed",
                extra={"event": "view_insert_failed", "item_id": event.item_id, "error": str(e)},
            )
            return None

        activation.view_id = view_id
        self._debug("View tracked successfully", item_id=event.item_id, reason=view_id)
        return view_id

    def _duration_proc(self, activation: ViewActivation, duration_s: int):
        # insert always precedes the update
        view_id = None
        if activation.insert is not None:
            view_id = yield activation.insert
        if not view_id:
            self._debug(
                "No durable view id, skipping duration update",
                skip="no_view_id",
                item_id=activation.item.item_id,
            )
            return False

        try:
            ok = yield self.store.update_view_duration(
                activation.item.item_id, activation.session_id, duration_s
            )
        except TransientDeliveryError as e:
            self._logger.warning(
                "view_duration_update_failed",
                extra={
                    "event": "view_duration_update_failed",
                    "item_id": activation.item.item_id,
                    "error": str(e),
                },
            )
            return False

        self._debug("Duration updated", item_id=activation.item.item_id, duration_s=duration_s)
        return bool(ok)

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from tabtrack.core.logging import get_logger
from tabtrack.core.types import ContentItem

PAGE_HIDDEN = "page_hidden"
PAGE_UNLOAD = "page_unload"
SUBJECT_CHANGED = "subject_changed"

SIGNALS: set[str] = {PAGE_HIDDEN, PAGE_UNLOAD, SUBJECT_CHANGED}

Listener = Callable[..., Any]


class PageLifecycle:
    """
    Injected event source for page visibility/unload signals.

    Stands in for the document's visibilitychange / beforeunload events so
    trackers can be driven without a browser. After unload the page is gone
    and further signals are ignored.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {s: [] for s in SIGNALS}
        self.hidden = False
        self.unloaded = False
        self._logger = get_logger(__name__)

    def subscribe(self, signal: str, listener: Listener) -> Callable[[], None]:
        if signal not in SIGNALS:
            raise ValueError(f"Unknown lifecycle signal {signal!r}. Allowed={sorted(SIGNALS)}")
        self._listeners[signal].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[signal]:
                self._listeners[signal].remove(listener)

        return unsubscribe

    # ----- signals -----
    def set_visibility(self, *, hidden: bool) -> None:
        was_hidden = self.hidden
        self.hidden = bool(hidden)
        if self.hidden and not was_hidden:
            self._dispatch(PAGE_HIDDEN)

    def hide(self) -> None:
        self.set_visibility(hidden=True)

    def show(self) -> None:
        self.set_visibility(hidden=False)

    def unload(self) -> None:
        if self.unloaded:
            return
        self._dispatch(PAGE_UNLOAD)
        self.unloaded = True

    def change_subject(self, item: ContentItem | None) -> None:
        self._dispatch(SUBJECT_CHANGED, item)

    def _dispatch(self, signal: str, *args: Any) -> None:
        if self.unloaded:
            return
        for listener in list(self._listeners[signal]):
            # listeners are isolated from each other
            try:
                listener(*args)
            except Exception:
                self._logger.exception(
                    "lifecycle_listener_failed",
                    extra={"event": "lifecycle_listener_failed", "reason": signal},
                )

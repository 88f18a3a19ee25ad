from __future__ import annotations

import pytest

from tabtrack.core.types import ContentItem
from tabtrack.features.lifecycle.service import (
    PAGE_HIDDEN,
    PAGE_UNLOAD,
    SUBJECT_CHANGED,
    PageLifecycle,
)


def test_hidden_fires_only_on_transition():
    lc = PageLifecycle()
    seen: list[str] = []
    lc.subscribe(PAGE_HIDDEN, lambda: seen.append("hidden"))

    lc.hide()
    lc.hide()
    lc.show()
    lc.hide()

    assert seen == ["hidden", "hidden"]


def test_unload_fires_once_and_silences_page():
    lc = PageLifecycle()
    seen: list[str] = []
    lc.subscribe(PAGE_UNLOAD, lambda: seen.append("unload"))
    lc.subscribe(PAGE_HIDDEN, lambda: seen.append("hidden"))

    lc.unload()
    lc.unload()
    lc.hide()

    assert seen == ["unload"]
    assert lc.unloaded


def test_subject_change_passes_item():
    lc = PageLifecycle()
    seen: list = []
    lc.subscribe(SUBJECT_CHANGED, seen.append)

    item = ContentItem("anchoring", "Anchoring")
    lc.change_subject(item)
    lc.change_subject(None)

    assert seen == [item, None]


def test_unsubscribe():
    lc = PageLifecycle()
    seen: list[str] = []
    unsubscribe = lc.subscribe(PAGE_HIDDEN, lambda: seen.append("x"))

    unsubscribe()
    unsubscribe()
    lc.hide()

    assert seen == []


def test_failing_listener_does_not_block_the_rest():
    lc = PageLifecycle()
    seen: list[str] = []

    def boom():
        raise RuntimeError("listener bug")

    lc.subscribe(PAGE_UNLOAD, boom)
    lc.subscribe(PAGE_UNLOAD, lambda: seen.append("second"))

    lc.unload()

    assert seen == ["second"]


def test_unknown_signal_rejected():
    with pytest.raises(ValueError):
        PageLifecycle().subscribe("focus", lambda: None)

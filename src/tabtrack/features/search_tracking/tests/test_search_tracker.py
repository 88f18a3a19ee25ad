from __future__ import annotations

from datetime import UTC, datetime

import simpy

from tabtrack.core.clock import Clock
from tabtrack.core.errors import TransientDeliveryError
from tabtrack.core.types import BrowserContext, Visitor
from tabtrack.features.lifecycle.service import PageLifecycle
from tabtrack.features.search_tracking.service import SearchTracker
from tabtrack.features.search_tracking.types import SearchContext, SearchTrackingConfig

T0 = datetime(2026, 1, 1, tzinfo=UTC)

FIVE = ["r1", "r2", "r3", "r4", "r5"]


class DummySessions:
    def get_session_id(self) -> str:
        return "s1"


class DummySearchStore:
    def __init__(self, env: simpy.Environment, *, latency_s: float = 0.1) -> None:
        self.env = env
        self.latency_s = latency_s
        self.fail: set[str] = set()
        self.searches: list[dict] = []
        self.clicks: list[tuple[str, str, int, int]] = []
        self.abandonments: list[tuple[str, int]] = []
        self.suggestion_rows: list[str] = []
        self.suggestion_calls: list[tuple[str, int]] = []

    def _call(self, op: str, fn):
        def proc():
            yield self.env.timeout(self.latency_s)
            if op in self.fail:
                raise TransientDeliveryError(op, "offline")
            return fn()

        return self.env.process(proc())

    def insert_search(self, record):
        def do():
            self.searches.append(dict(record))
            return f"search_{len(self.searches)}"

        return self._call("insert_search", do)

    def update_search_click(self, search_id, item_id, position, time_to_click_ms):
        def do():
            self.clicks.append((search_id, item_id, position, time_to_click_ms))
            return True

        return self._call("update_search_click", do)

    def update_search_abandonment(self, search_id, dwell_ms):
        def do():
            self.abandonments.append((search_id, dwell_ms))
            return True

        return self._call("update_search_abandonment", do)

    def query_search_suggestions(self, prefix, limit):
        def do():
            self.suggestion_calls.append((prefix, limit))
            return list(self.suggestion_rows)

        return self._call("query_search_suggestions", do)


class DummyQueue:
    def __init__(self) -> None:
        self.records = []

    def add_event(self, record) -> None:
        self.records.append(record)


def make(*, user_id: str | None = "u1", url: str = "https://example.com/mental-models", **cfg_kw):
    env = simpy.Environment()
    store = DummySearchStore(env)
    queue = DummyQueue()
    tracker = SearchTracker(
        env=env,
        clock=Clock(env, T0),
        sessions=DummySessions(),
        store=store,
        visitor=Visitor(user_id),
        browser=BrowserContext(url=url),
        cfg=SearchTrackingConfig(**cfg_kw),
        queue=queue,
    )
    return env, store, queue, tracker


def at(env: simpy.Environment, t: float, fn) -> None:
    def proc():
        yield env.timeout(t)
        fn()

    env.process(proc())


def test_debounced_typing_tracks_only_the_last_query():
    env, store, _, tracker = make()
    at(env, 0.0, lambda: tracker.track_search("a", FIVE))
    at(env, 0.1, lambda: tracker.track_search("ab", FIVE))
    at(env, 0.2, lambda: tracker.track_search("abc", FIVE))
    env.run()

    assert [s["search_query"] for s in store.searches] == ["abc"]
    assert store.searches[0]["search_type"] == "initial"
    assert tracker.current_query == "abc"
    assert tracker.search_id == "search_1"


def test_extension_is_refined_and_topic_change_is_initial():
    env, store, _, tracker = make()
    at(env, 0.0, lambda: tracker.submit("bias", FIVE))
    at(env, 2.0, lambda: tracker.submit("biases", FIVE))
    env.run()

    assert [s["search_type"] for s in store.searches] == ["initial", "refined"]
    assert tracker.episode.refinement_count == 1
    assert store.searches[1]["search_duration_ms"] == 2000

    at(env, 5.0, lambda: tracker.submit("heuristics", FIVE))
    env.run()

    assert store.searches[2]["search_type"] == "initial"
    assert store.searches[2]["search_duration_ms"] == 0
    assert tracker.episode.refinement_count == 0


def test_same_query_next_page_is_paginated():
    env, store, _, tracker = make()
    at(env, 0.0, lambda: tracker.submit("bias", FIVE, {"page": 1}))
    at(env, 1.0, lambda: tracker.submit("Bias ", FIVE, {"page": 2}))
    env.run()

    assert [s["search_type"] for s in store.searches] == ["initial", "paginated"]
    assert store.searches[1]["filters_applied"]["page"] == 2


def test_search_record_fields():
    env, store, _, tracker = make(url="https://example.com/dashboard")
    tracker.submit("  Anchoring ", FIVE, SearchContext(category="psychology", sort_by="name"))
    env.run()

    row = store.searches[0]
    assert row["search_query"] == "  Anchoring "
    assert row["search_query_normalized"] == "anchoring"
    assert row["results_count"] == 5
    assert row["search_location"] == "dashboard_widget"
    assert row["filters_applied"] == {"category": "psychology", "page": 1, "sort_by": "name"}
    assert row["failed_search"] is False
    assert row["viewport_context"] == {"width": 1280, "height": 800, "scroll_position": 0}
    assert row["session_id"] == "s1"


def test_failed_search_queues_content_gap():
    env, store, queue, tracker = make()
    tracker.submit("xyzxyz", [])
    env.run()

    assert store.searches[0]["failed_search"] is True
    assert len(queue.records) == 1
    gap = queue.records[0]
    assert gap.record_type == "content_gap"
    assert gap.subject == "xyzxyz"
    assert gap.value_num == 0.0
    assert gap.value_str == "library_main"


def test_skips_without_user_or_query():
    env, store, _, tracker = make(user_id=None)
    proc = tracker.submit("bias", FIVE)
    env.run()
    assert proc.value is None
    assert store.searches == []

    env, store, _, tracker = make()
    proc = tracker.submit("   ", FIVE)
    env.run()
    assert proc.value is None
    assert store.searches == []


def test_failed_insert_keeps_previous_state():
    env, store, _, tracker = make()
    store.fail.add("insert_search")
    proc = tracker.submit("bias", FIVE)
    env.run()

    assert proc.value is None
    assert tracker.search_id is None
    assert tracker.current_query is None
    assert not tracker.is_searching


def test_click_is_attached_to_the_remembered_search():
    env, store, _, tracker = make()
    tracker.submit("bias", FIVE)
    results: list = []
    at(env, 3.0, lambda: results.append(tracker.track_search_click("anchoring", 2)))
    env.run()

    assert store.clicks == [("search_1", "anchoring", 2, 3000)]
    assert results[0].value is True
    assert tracker.episode.first_click_ms is not None


def test_click_without_search_is_a_noop():
    env, store, _, tracker = make()
    proc = tracker.track_search_click("anchoring", 1)
    env.run()

    assert proc.value is False
    assert store.clicks == []


def test_click_is_attributed_once_per_search():
    env, store, _, tracker = make()
    tracker.submit("bias", FIVE)
    at(env, 1.0, lambda: tracker.track_search_click("anchoring", 1))
    at(env, 2.0, lambda: tracker.track_search_click("inversion", 2))
    env.run()

    assert [c[1] for c in store.clicks] == ["anchoring"]


def test_click_racing_an_inflight_insert_is_dropped():
    env, store, _, tracker = make()
    tracker.submit("bias", FIVE)
    proc = tracker.track_search_click("anchoring", 1)
    env.run()

    assert proc.value is False
    assert store.clicks == []
    assert tracker.search_id == "search_1"


def test_abandonment_without_click():
    env, store, _, tracker = make()
    tracker.submit("bias", FIVE)
    at(env, 4.0, tracker.track_search_abandonment)
    at(env, 5.0, tracker.track_search_abandonment)
    env.run()

    assert store.abandonments == [("search_1", 4000)]
    assert tracker.episode.abandoned_ms is not None


def test_no_abandonment_after_click():
    env, store, _, tracker = make()
    tracker.submit("bias", FIVE)
    at(env, 1.0, lambda: tracker.track_search_click("anchoring", 1))
    at(env, 4.0, tracker.track_search_abandonment)
    env.run()

    assert store.abandonments == []


def test_unload_flushes_pending_query_and_abandons_current():
    env, store, _, tracker = make()
    lifecycle = PageLifecycle()
    tracker.bind(lifecycle)

    tracker.submit("bias", FIVE)
    at(env, 2.0, lambda: tracker.track_search("heuristics", FIVE))
    at(env, 2.1, lifecycle.unload)
    env.run()

    assert [s["search_query"] for s in store.searches] == ["bias", "heuristics"]
    assert store.abandonments == [("search_1", 2100)]
    assert not tracker.debouncer.pending


def test_hidden_flushes_pending_query():
    env, store, _, tracker = make(debounce_s=30.0)
    lifecycle = PageLifecycle()
    tracker.bind(lifecycle)

    tracker.track_search("bias", FIVE)
    at(env, 1.0, lifecycle.hide)
    env.run(until=2.0)

    assert [s["search_query"] for s in store.searches] == ["bias"]


def test_suggestions_are_deduped_and_limited():
    env, store, _, tracker = make()
    store.suggestion_rows = ["bias", "bias", "biases", "bias blind spot", "bias", "bi-modal", "big", "bits"]
    proc = tracker.get_search_suggestions("Bi")
    env.run()

    assert proc.value == ["bias", "biases", "bias blind spot", "bi-modal", "big"]
    assert store.suggestion_calls == [("bi", 20)]


def test_suggestions_need_a_two_character_prefix():
    env, store, _, tracker = make()
    proc = tracker.get_search_suggestions("b")
    env.run()

    assert proc.value == []
    assert store.suggestion_calls == []


def test_suggestions_swallow_errors():
    env, store, _, tracker = make()
    store.fail.add("query_search_suggestions")
    proc = tracker.get_search_suggestions("bias")
    env.run()

    assert proc.value == []


def test_odd_page_value_does_not_stop_the_loop():
    env, store, _, tracker = make()
    tracker.track_search("bias", FIVE, {"page": "next"})
    env.run()

    assert len(store.searches) == 1
    assert store.searches[0]["filters_applied"]["page"] == 1
    assert store.searches[0]["filters_applied"]["page_raw"] == "next"


def test_content_gap_is_queued_at_submit_time():
    env, store, queue, tracker = make()
    store.fail.add("insert_search")

    tracker.submit("xyzxyz", [])
    # queued before the insert round-trip resolves
    assert [r.record_type for r in queue.records] == ["content_gap"]

    env.run()
    assert store.searches == []
    assert tracker.search_id is None


def test_pending_failed_query_at_unload_reaches_the_queue_before_close():
    env, store, _, tracker = make()
    lifecycle = PageLifecycle()
    tracker.bind(lifecycle)
    order: list[str] = []

    class OrderedQueue:
        def add_event(self, record):
            order.append(record.record_type)

    tracker.queue = OrderedQueue()
    lifecycle.subscribe("page_unload", lambda: order.append("close"))

    at(env, 1.0, lambda: tracker.track_search("xyzxyz", []))
    at(env, 1.1, lifecycle.unload)
    env.run()

    assert order == ["content_gap", "close"]
    assert [s["search_query"] for s in store.searches] == ["xyzxyz"]

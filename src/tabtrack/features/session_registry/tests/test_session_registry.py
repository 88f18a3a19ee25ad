from __future__ import annotations

from datetime import UTC, datetime

import simpy

from tabtrack.core.clock import Clock
from tabtrack.core.rng import RNG
from tabtrack.core.types import BrowserContext
from tabtrack.features.session_registry.service import SessionRegistry
from tabtrack.features.session_registry.storage import MemoryTabStorage
from tabtrack.features.session_registry.types import SessionConfig

T0 = datetime(2026, 1, 1, tzinfo=UTC)
T0_MS = int(T0.timestamp() * 1000)


class ExplodingStorage:
    """Storage that works for `ok_calls` accesses, then refuses everything."""

    def __init__(self, ok_calls: int = 0) -> None:
        self.inner = MemoryTabStorage()
        self.ok_calls = ok_calls
        self.calls = 0

    def _gate(self) -> None:
        self.calls += 1
        if self.calls > self.ok_calls:
            self.inner.available = False

    def get_item(self, key):
        self._gate()
        return self.inner.get_item(key)

    def set_item(self, key, value):
        self._gate()
        self.inner.set_item(key, value)

    def remove_item(self, key):
        self._gate()
        self.inner.remove_item(key)


def make(storage=None, *, seed: int = 7):
    env = simpy.Environment()
    browser = BrowserContext(url="https://example.com/mental-models", user_agent="Mozilla/5.0 (X11)")
    reg = SessionRegistry(
        clock=Clock(env, T0),
        rng=RNG(seed),
        browser=browser,
        storage=storage if storage is not None else MemoryTabStorage(),
        cfg=SessionConfig(),
    )
    return env, browser, reg


def test_session_id_is_stable_and_well_formed():
    _, _, reg = make()

    sid = reg.get_session_id()

    assert reg.get_session_id() == sid
    ms, token, fp = sid.split("_")
    assert int(ms) == T0_MS
    assert len(token) == 9
    assert fp == "Mozilla50X"


def test_id_is_read_back_from_tab_storage():
    storage = MemoryTabStorage()
    storage.set_item("analytics_session_id", "123_abc_def")
    _, _, reg = make(storage)

    assert reg.get_session_id() == "123_abc_def"
    assert reg.get_session().created_ms == 123


def test_reset_mints_a_new_id_and_notifies_listeners():
    env, _, reg = make()
    seen: list[str | None] = []
    reg.on_reset(seen.append)

    first = reg.get_session_id()
    env.run(until=2.0)
    reg.reset_session()

    assert reg.is_new_session()
    second = reg.get_session_id()
    assert second != first
    assert second.startswith(f"{T0_MS + 2000}_")
    assert seen == [first]


def test_is_new_session_until_minted():
    _, _, reg = make()
    assert reg.is_new_session()
    reg.get_session_id()
    assert not reg.is_new_session()


def test_duration_counts_whole_seconds():
    env, _, reg = make()
    assert reg.get_session_duration() == 0

    reg.get_session_id()
    env.run(until=4.9)

    assert reg.get_session_duration() == 4


def test_duration_is_zero_for_unparseable_stored_id():
    storage = MemoryTabStorage()
    storage.set_item("analytics_session_id", "garbage")
    _, _, reg = make(storage)

    assert reg.get_session_duration() == 0


def test_metadata_is_recomputed_each_call():
    env, browser, reg = make()

    m1 = reg.get_session_metadata()
    browser.viewport_width = 390
    browser.navigate("https://example.com/mental-models/anchoring")
    env.run(until=1.0)
    m2 = reg.get_session_metadata()

    assert m1.session_id == m2.session_id
    assert m1.viewport_width == 1280
    assert m2.viewport_width == 390
    assert m2.referrer == "https://example.com/mental-models"
    assert m2.url.endswith("/anchoring")
    assert m1.timestamp != m2.timestamp


def test_unavailable_storage_degrades_to_memory():
    _, _, reg = make(MemoryTabStorage(available=False))

    sid = reg.get_session_id()

    assert reg.degraded
    assert reg.get_session_id() == sid


def test_storage_failing_midway_keeps_the_cached_id():
    storage = ExplodingStorage(ok_calls=2)
    _, _, reg = make(storage)

    sid = reg.get_session_id()  # get + set succeed
    reg.reset_session()  # remove fails -> degraded

    assert reg.degraded
    new_sid = reg.get_session_id()
    assert new_sid != sid
    assert reg.get_session_id() == new_sid


def test_quota_exceeded_on_write_degrades():
    storage = MemoryTabStorage(quota=0)
    _, _, reg = make(storage)

    sid = reg.get_session_id()

    assert reg.degraded
    assert reg.get_session_id() == sid

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import simpy

from tabtrack.core.clock import Clock
from tabtrack.core.config import TelemetryConfig, section
from tabtrack.core.ids import IdsService, deterministic_run_id_from_config
from tabtrack.core.logging import get_logger
from tabtrack.core.rng import RNG
from tabtrack.core.types import BrowserContext, RunContext, SiteConfig, Visitor
from tabtrack.features.batching.service import BatchingConfig, EventBatchQueue
from tabtrack.features.journey.service import JourneyFactory, JourneyPlayer
from tabtrack.features.lifecycle.service import PAGE_HIDDEN, PAGE_UNLOAD, PageLifecycle
from tabtrack.features.persistence.duckdb_adapter import DuckDBAdapter
from tabtrack.features.persistence.service import TelemetryStore
from tabtrack.features.search_analytics.service import QualityWeights
from tabtrack.features.search_tracking.service import SearchTracker
from tabtrack.features.search_tracking.types import SearchTrackingConfig
from tabtrack.features.session_registry.service import SessionRegistry
from tabtrack.features.session_registry.storage import MemoryTabStorage
from tabtrack.features.session_registry.types import SessionConfig
from tabtrack.features.view_tracking.service import ViewTracker
from tabtrack.features.view_tracking.types import ViewTrackingConfig

# seconds the loop keeps running after the last scripted step so in-flight
# round-trips and debounce timers settle
DRAIN_S = 30.0


@dataclass
class TabRuntime:
    """Everything one tab owns, constructed once and injected downwards."""

    ctx: RunContext
    cfg: TelemetryConfig
    env: simpy.Environment
    clock: Clock
    visitor: Visitor
    browser: BrowserContext
    lifecycle: PageLifecycle
    store: TelemetryStore
    queue: EventBatchQueue
    sessions: SessionRegistry
    views: ViewTracker
    search: SearchTracker
    logger: logging.Logger


@dataclass(frozen=True)
class JourneyResult:
    ctx: RunContext
    duckdb_path: str
    steps_run: int
    session_id: str | None
    store_calls: dict[str, int]
    records_delivered: int
    records_dropped: int


# ----------------------------
# Feature config parsing (raw YAML sections -> frozen configs)
# ----------------------------


def parse_site(raw: dict[str, Any]) -> SiteConfig:
    s = section(raw, "site")
    return SiteConfig(
        library_path=str(s.get("library_path", "/mental-models")),
        dashboard_path=str(s.get("dashboard_path", "/dashboard")),
    )


def parse_session(raw: dict[str, Any]) -> tuple[SessionConfig, bool]:
    s = section(raw, "session")
    cfg = SessionConfig(storage_key=str(s.get("storage_key", "analytics_session_id")))
    return cfg, bool(s.get("storage_available", True))


def parse_batching(raw: dict[str, Any]) -> BatchingConfig:
    b = section(raw, "batching")
    return BatchingConfig(
        max_batch_size=int(b.get("max_batch_size", 50)),
        flush_interval_s=float(b.get("flush_interval_s", 10.0)),
        dedupe_window_s=float(b.get("dedupe_window_s", 1.0)),
    )


def parse_views(raw: dict[str, Any], *, debug: bool) -> ViewTrackingConfig:
    v = section(raw, "views")
    return ViewTrackingConfig(
        enabled=bool(v.get("enabled", True)),
        track_duration=bool(v.get("track_duration", True)),
        track_interactions=bool(v.get("track_interactions", False)),
        min_duration_s=int(v.get("min_duration_s", 1)),
        debug=bool(v.get("debug", debug)),
    )


def parse_search(raw: dict[str, Any], *, debug: bool) -> SearchTrackingConfig:
    s = section(raw, "search")
    debounce_s = float(s.get("debounce_s", 0.5))
    if debounce_s < 0:
        raise ValueError("search.debounce_s must be >= 0")
    return SearchTrackingConfig(
        enabled=bool(s.get("enabled", True)),
        debounce_s=debounce_s,
        failed_min_query_length=int(s.get("failed_min_query_length", 3)),
        failed_min_results=int(s.get("failed_min_results", 3)),
        suggestion_limit=int(s.get("suggestion_limit", 5)),
        suggestion_min_prefix=int(s.get("suggestion_min_prefix", 2)),
        debug=bool(s.get("debug", debug)),
    )


def parse_browser(raw: dict[str, Any]) -> BrowserContext:
    b = section(raw, "browser")
    defaults = BrowserContext()
    return BrowserContext(
        url=str(b.get("url", defaults.url)),
        referrer=b.get("referrer"),
        viewport_width=int(b.get("viewport_width", defaults.viewport_width)),
        viewport_height=int(b.get("viewport_height", defaults.viewport_height)),
        screen_width=int(b.get("screen_width", defaults.screen_width)),
        screen_height=int(b.get("screen_height", defaults.screen_height)),
        user_agent=str(b.get("user_agent", defaults.user_agent)),
        language=str(b.get("language", defaults.language)),
        platform=str(b.get("platform", defaults.platform)),
    )


def parse_quality(raw: dict[str, Any]) -> QualityWeights:
    w = section(section(raw, "quality"), "weights")
    weights = QualityWeights(
        ctr=float(w.get("ctr", 0.4)),
        speed=float(w.get("speed", 0.2)),
        success=float(w.get("success", 0.3)),
        relevance=float(w.get("relevance", 0.1)),
    )
    total = weights.ctr + weights.speed + weights.success + weights.relevance
    if abs(total - 1.0) > 1e-6:
        raise ValueError(f"quality.weights must sum to 1 (got {total:.3f})")
    return weights


def resolve_run_id(cfg: TelemetryConfig) -> str:
    raw: dict[str, Any] = cfg.raw if isinstance(cfg.raw, dict) else {}
    return deterministic_run_id_from_config(raw) if cfg.run.run_id == "auto" else cfg.run.run_id


# ----------------------------
# Wiring
# ----------------------------


def bootstrap_tab(cfg: TelemetryConfig) -> TabRuntime:
    """
    Construct one tab's services. The store is opened; the caller owns
    closing it (run_journey does).
    """
    raw: dict[str, Any] = cfg.raw if isinstance(cfg.raw, dict) else {}

    # ----- run identity -----
    run_id = resolve_run_id(cfg)
    logger = get_logger("tabtrack", cfg.logging.level)

    rng = RNG(cfg.run.seed)
    ids = IdsService(run_id=run_id)

    start_dt_utc = datetime.fromisoformat(cfg.run.start_date).replace(tzinfo=UTC)
    ctx = RunContext(run_id=run_id, seed=cfg.run.seed, start_dt_utc=start_dt_utc)

    env = simpy.Environment()
    clock = Clock(env, start_dt_utc)

    site = parse_site(raw)
    browser = parse_browser(raw)
    visitor = Visitor()
    lifecycle = PageLifecycle()

    # ----- remote store -----
    adapter = DuckDBAdapter(path=cfg.storage.duckdb_path, clean_slate=cfg.storage.clean_slate)
    store = TelemetryStore(
        env=env,
        adapter=adapter,
        clock=clock,
        ids=ids,
        run_id=run_id,
        latency_s=cfg.storage.latency_s,
        failure_rate=cfg.storage.failure_rate,
        rng=rng,
    )
    store.open()

    queue = EventBatchQueue(env=env, sink=store, cfg=parse_batching(raw))

    # ----- session -----
    session_cfg, storage_available = parse_session(raw)
    sessions = SessionRegistry(
        clock=clock,
        rng=rng,
        browser=browser,
        storage=MemoryTabStorage(available=storage_available),
        cfg=session_cfg,
    )

    # ----- trackers -----
    views = ViewTracker(
        env=env,
        clock=clock,
        sessions=sessions,
        store=store,
        visitor=visitor,
        browser=browser,
        cfg=parse_views(raw, debug=cfg.logging.debug),
        site=site,
        queue=queue,
    )
    search = SearchTracker(
        env=env,
        clock=clock,
        sessions=sessions,
        store=store,
        visitor=visitor,
        browser=browser,
        cfg=parse_search(raw, debug=cfg.logging.debug),
        site=site,
        queue=queue,
    )

    # order matters on unload: trackers enqueue first, then the queue drains
    views.bind(lifecycle)
    search.bind(lifecycle)
    lifecycle.subscribe(PAGE_HIDDEN, lambda: queue.flush(reason="page_hidden"))
    lifecycle.subscribe(PAGE_UNLOAD, queue.close)
    sessions.on_reset(lambda _previous: views.reset())

    return TabRuntime(
        ctx=ctx,
        cfg=cfg,
        env=env,
        clock=clock,
        visitor=visitor,
        browser=browser,
        lifecycle=lifecycle,
        store=store,
        queue=queue,
        sessions=sessions,
        views=views,
        search=search,
        logger=logger,
    )


def run_journey(cfg: TelemetryConfig) -> JourneyResult:
    rt = bootstrap_tab(cfg)
    journey = JourneyFactory.build(section(cfg.raw, "journey"))

    player = JourneyPlayer(
        env=rt.env,
        journey=journey,
        visitor=rt.visitor,
        browser=rt.browser,
        lifecycle=rt.lifecycle,
        sessions=rt.sessions,
        views=rt.views,
        search=rt.search,
    )

    try:
        player.start()
        until = journey.end_s + DRAIN_S
        rt.logger.info("starting journey", extra={"run_id": rt.ctx.run_id, "duration_s": until})
        rt.env.run(until=until)

        # a journey without an explicit unload still gets its final flush
        if not rt.lifecycle.unloaded:
            rt.lifecycle.unload()
            rt.env.run(until=until + DRAIN_S)

        session_id = None if rt.sessions.is_new_session() else rt.sessions.get_session_id()
    finally:
        rt.store.close()

    return JourneyResult(
        ctx=rt.ctx,
        duckdb_path=cfg.storage.duckdb_path,
        steps_run=player.steps_run,
        session_id=session_id,
        store_calls=dict(rt.store.calls),
        records_delivered=rt.queue.delivered,
        records_dropped=rt.queue.dropped,
    )

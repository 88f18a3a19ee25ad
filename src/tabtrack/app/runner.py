from __future__ import annotations

from datetime import UTC, datetime

from tabtrack.core.config import load_config
from tabtrack.features.bootstrap.service import (
    JourneyResult,
    parse_quality,
    resolve_run_id,
    run_journey,
)
from tabtrack.features.persistence.duckdb_adapter import DuckDBAdapter
from tabtrack.features.search_analytics.service import SearchAnalyticsService


def run(config_path: str) -> JourneyResult:
    cfg = load_config(config_path)
    return run_journey(cfg)


def parse_when(value: str | None) -> datetime | None:
    """ISO date or datetime; naive values are read as UTC."""
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def report(
    config_path: str,
    *,
    user_id: str | None = None,
    fmt: str = "json",
    since: str | None = None,
    until: str | None = None,
    detect_issues: bool = False,
) -> str:
    cfg = load_config(config_path)
    adapter = DuckDBAdapter(path=cfg.storage.duckdb_path, clean_slate=False)
    adapter.open()
    try:
        analytics = SearchAnalyticsService(
            adapter=adapter,
            run_id=resolve_run_id(cfg),
            weights=parse_quality(cfg.raw),
        )
        start, end = parse_when(since), parse_when(until)
        if detect_issues:
            analytics.detect_quality_issues(since=start, until=end)
        return analytics.export(fmt=fmt, user_id=user_id, since=start, until=end)
    finally:
        adapter.close()

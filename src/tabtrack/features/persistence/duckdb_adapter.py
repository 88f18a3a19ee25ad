from __future__ import annotations

import json
import os
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import duckdb

from .schema import (
    QUALITY_ISSUES_TABLE_NAME,
    RECORDS_TABLE_NAME,
    SEARCHES_TABLE_NAME,
    VIEWS_TABLE_NAME,
    create_schema,
)

_TABLES = (VIEWS_TABLE_NAME, SEARCHES_TABLE_NAME, RECORDS_TABLE_NAME, QUALITY_ISSUES_TABLE_NAME)


@dataclass(frozen=True)
class DuckDBWriteResult:
    num_rows: int
    duration_ms: float


def json_dumps(payload: Mapping[str, Any] | None) -> str | None:
    if payload is None:
        return None
    # Stable JSON for deterministic outputs/diffs
    return json.dumps(dict(payload), sort_keys=True, separators=(",", ":"), default=str)


class DuckDBAdapter:
    """
    DuckDB persistence adapter. Owns the connection and schema.
    All methods are synchronous; latency and failures are layered on by
    TelemetryStore.
    """

    def __init__(self, path: str, *, clean_slate: bool) -> None:
        self.path = path
        self.clean_slate = clean_slate
        self._conn: duckdb.DuckDBPyConnection | None = None

    def open(self) -> None:
        if self.clean_slate and os.path.exists(self.path):
            os.remove(self.path)

        # Ensure parent dir exists
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        self._conn = duckdb.connect(self.path)
        create_schema(self._conn)

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise RuntimeError("DuckDBAdapter not opened. Call open() first.")
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ----- views -----
    def insert_view(self, row: Mapping[str, Any]) -> None:
        self.conn.execute(
            f"""
            INSERT INTO {VIEWS_TABLE_NAME} (
                run_id, view_id, created_at,
                user_id, session_id,
                item_id, item_name, category,
                view_source, referrer_path, viewport_width, viewport_height,
                duration_s
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
            """,
            [
                row["run_id"],
                row["view_id"],
                row["created_at"],
                row["user_id"],
                row["session_id"],
                row["item_id"],
                row.get("item_name"),
                row.get("category"),
                row["view_source"],
                row.get("referrer_path"),
                row.get("viewport_width"),
                row.get("viewport_height"),
            ],
        )

    def update_view_duration(
        self, *, run_id: str, item_id: str, session_id: str, duration_s: int
    ) -> int:
        """
        Sets duration on the most recent view for (item, session). Returns rows touched.
        """
        row = self.conn.execute(
            f"""
            SELECT view_id FROM {VIEWS_TABLE_NAME}
            WHERE run_id = ? AND item_id = ? AND session_id = ?
            ORDER BY created_at DESC, view_id DESC
            LIMIT 1
            """,
            [run_id, item_id, session_id],
        ).fetchone()
        if row is None:
            return 0
        self.conn.execute(
            f"UPDATE {VIEWS_TABLE_NAME} SET duration_s = ? WHERE view_id = ?",
            [int(duration_s), row[0]],
        )
        return 1

    # ----- searches -----
    def insert_search(self, row: Mapping[str, Any]) -> None:
        self.conn.execute(
            f"""
            INSERT INTO {SEARCHES_TABLE_NAME} (
                run_id, search_id, created_at, updated_at,
                user_id, session_id,
                search_query, search_query_normalized, results_count,
                search_location, search_type, failed_search, search_duration_ms,
                filters_json, viewport_json
            )
            VALUES (?, ?, ?, NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                row["run_id"],
                row["search_id"],
                row["created_at"],
                row["user_id"],
                row["session_id"],
                row["search_query"],
                row["search_query_normalized"],
                int(row["results_count"]),
                row["search_location"],
                row["search_type"],
                bool(row["failed_search"]),
                int(row["search_duration_ms"]),
                json_dumps(row.get("filters_applied")),
                json_dumps(row.get("viewport_context")),
            ],
        )

    def update_search_click(
        self,
        *,
        search_id: str,
        item_id: str,
        position: int,
        time_to_click_ms: int,
        updated_at: datetime,
    ) -> int:
        if not self._search_exists(search_id):
            return 0
        self.conn.execute(
            f"""
            UPDATE {SEARCHES_TABLE_NAME}
            SET clicked_item_id = ?, clicked_position = ?, time_to_click_ms = ?, updated_at = ?
            WHERE search_id = ?
            """,
            [item_id, int(position), int(time_to_click_ms), updated_at, search_id],
        )
        return 1

    def update_search_abandonment(
        self, *, search_id: str, dwell_ms: int, updated_at: datetime
    ) -> int:
        if not self._search_exists(search_id):
            return 0
        self.conn.execute(
            f"""
            UPDATE {SEARCHES_TABLE_NAME}
            SET abandoned = TRUE, abandonment_dwell_ms = ?, updated_at = ?
            WHERE search_id = ?
            """,
            [int(dwell_ms), updated_at, search_id],
        )
        return 1

    def _search_exists(self, search_id: str) -> bool:
        row = self.conn.execute(
            f"SELECT 1 FROM {SEARCHES_TABLE_NAME} WHERE search_id = ? LIMIT 1",
            [search_id],
        ).fetchone()
        return row is not None

    def search_suggestions(self, *, prefix: str, limit: int) -> list[str]:
        """
        Raw query texts of non-failed searches whose normalized text starts
        with prefix, newest first. Not deduplicated here.
        """
        rows = self.conn.execute(
            f"""
            SELECT search_query FROM {SEARCHES_TABLE_NAME}
            WHERE starts_with(search_query_normalized, ?) AND NOT failed_search
            ORDER BY created_at DESC, search_id DESC
            LIMIT ?
            """,
            [prefix.lower(), int(limit)],
        ).fetchall()
        return [str(r[0]) for r in rows]

    # ----- batched records -----
    def write_records(self, rows: Sequence[tuple]) -> DuckDBWriteResult:
        """
        Writes a batch of rows matching the telemetry_records schema.
        Returns count and duration.
        """
        if not rows:
            return DuckDBWriteResult(num_rows=0, duration_ms=0.0)

        t0 = time.perf_counter()

        self.conn.executemany(
            f"""
            INSERT INTO {RECORDS_TABLE_NAME} (
                run_id, record_id, created_at,
                record_type, user_id, session_id, subject,
                value_num, value_str, payload_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )

        dt_ms = (time.perf_counter() - t0) * 1000.0
        return DuckDBWriteResult(num_rows=len(rows), duration_ms=dt_ms)

    # ----- quality issues -----
    def insert_quality_issue(self, row: Mapping[str, Any]) -> None:
        self.conn.execute(
            f"""
            INSERT INTO {QUALITY_ISSUES_TABLE_NAME} (
                run_id, issue_id, created_at, issue_type, search_query, details_json
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                row["run_id"],
                row["issue_id"],
                row["created_at"],
                row["issue_type"],
                row["search_query"],
                json_dumps(row.get("details")),
            ],
        )

    # ----- convenience reads for sanity checks/tests -----
    def count_rows(self, table: str, run_id: str) -> int:
        if table not in _TABLES:
            raise ValueError(f"Unknown table {table!r}")
        res = self.conn.execute(
            f"SELECT COUNT(*) FROM {table} WHERE run_id = ?",
            [run_id],
        ).fetchone()
        return int(res[0]) if res else 0

    def fetch_dicts(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        cur = self.conn.execute(sql, list(params))
        cols = [d[0] for d in cur.description]
        return [dict(zip(cols, row, strict=True)) for row in cur.fetchall()]

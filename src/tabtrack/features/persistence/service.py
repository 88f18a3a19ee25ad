from __future__ import annotations

from collections.abc import Mapping, Sequence
from contextlib import contextmanager
from typing import Any

import duckdb
import simpy

from tabtrack.core.clock import Clock
from tabtrack.core.errors import TransientDeliveryError
from tabtrack.core.ids import IdsService
from tabtrack.core.logging import get_logger
from tabtrack.core.rng import RNG
from tabtrack.features.batching.schema import TelemetryRecord

from .duckdb_adapter import DuckDBAdapter, json_dumps

OPERATIONS: tuple[str, ...] = (
    "insert_view",
    "update_view_duration",
    "insert_search",
    "update_search_click",
    "update_search_abandonment",
    "query_search_suggestions",
    "deliver",
)


class TelemetryStore:
    """
    The remote persistence collaborator as the tab sees it.

    Every operation returns a simpy process: the caller suspends until the
    simulated round-trip completes. The process value is the result; a
    failed round-trip raises TransientDeliveryError inside the waiting caller.

    Backing store is DuckDB. Faults come from `failure_rate` (seeded RNG)
    or are queued explicitly with `fail_next`.
    """

    def __init__(
        self,
        *,
        env: simpy.Environment,
        adapter: DuckDBAdapter,
        clock: Clock,
        ids: IdsService,
        run_id: str,
        latency_s: float = 0.05,
        failure_rate: float = 0.0,
        rng: RNG | None = None,
    ) -> None:
        if failure_rate > 0 and rng is None:
            raise ValueError("failure_rate > 0 requires an rng")
        self.env = env
        self.adapter = adapter
        self.clock = clock
        self.ids = ids
        self.run_id = run_id
        self.latency_s = float(latency_s)
        self.failure_rate = float(failure_rate)
        self.rng = rng

        self._forced_failures: dict[str, int] = {}
        self.calls: dict[str, int] = {op: 0 for op in OPERATIONS}
        self._logger = get_logger(__name__)

    def open(self) -> None:
        self.adapter.open()

    def close(self) -> None:
        self.adapter.close()

    def fail_next(self, operation: str, n: int = 1) -> None:
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation {operation!r}. Allowed={list(OPERATIONS)}")
        self._forced_failures[operation] = self._forced_failures.get(operation, 0) + int(n)

    # ----------------------------
    # Public API (each returns a Process)
    # ----------------------------
    def insert_view(self, record: Mapping[str, Any]) -> simpy.events.Process:
        return self.env.process(self._insert_view(dict(record)))

    def update_view_duration(
        self, item_id: str, session_id: str, duration_s: int
    ) -> simpy.events.Process:
        return self.env.process(self._update_view_duration(item_id, session_id, int(duration_s)))

    def insert_search(self, record: Mapping[str, Any]) -> simpy.events.Process:
        return self.env.process(self._insert_search(dict(record)))

    def update_search_click(
        self, search_id: str, item_id: str, position: int, time_to_click_ms: int
    ) -> simpy.events.Process:
        return self.env.process(
            self._update_search_click(search_id, item_id, int(position), int(time_to_click_ms))
        )

    def update_search_abandonment(self, search_id: str, dwell_ms: int) -> simpy.events.Process:
        return self.env.process(self._update_search_abandonment(search_id, int(dwell_ms)))

    def query_search_suggestions(self, prefix: str, limit: int) -> simpy.events.Process:
        return self.env.process(self._query_search_suggestions(prefix, int(limit)))

    def deliver(self, records: Sequence[TelemetryRecord]) -> simpy.events.Process:
        """BatchSink entry point for the batching queue."""
        return self.env.process(self._deliver(list(records)))

    # ----------------------------
    # Processes
    # ----------------------------
    def _round_trip(self, operation: str):
        self.calls[operation] += 1
        if self.latency_s > 0:
            yield self.env.timeout(self.latency_s)
        forced = self._forced_failures.get(operation, 0)
        if forced > 0:
            self._forced_failures[operation] = forced - 1
            raise TransientDeliveryError(operation, "injected failure")
        if self.failure_rate > 0 and self.rng is not None and self.rng.random() < self.failure_rate:
            raise TransientDeliveryError(operation, "simulated network failure")

    def _insert_view(self, record: dict[str, Any]):
        yield from self._round_trip("insert_view")
        view_id = self.ids.next_id("view")
        row = dict(record, run_id=self.run_id, view_id=view_id)
        with _wrap_db("insert_view"):
            self.adapter.insert_view(row)
        return view_id

    def _update_view_duration(self, item_id: str, session_id: str, duration_s: int):
        yield from self._round_trip("update_view_duration")
        with _wrap_db("update_view_duration"):
            n = self.adapter.update_view_duration(
                run_id=self.run_id, item_id=item_id, session_id=session_id, duration_s=duration_s
            )
        return n > 0

    def _insert_search(self, record: dict[str, Any]):
        yield from self._round_trip("insert_search")
        search_id = self.ids.next_id("search")
        row = dict(record, run_id=self.run_id, search_id=search_id)
        with _wrap_db("insert_search"):
            self.adapter.insert_search(row)
        return search_id

    def _update_search_click(
        self, search_id: str, item_id: str, position: int, time_to_click_ms: int
    ):
        yield from self._round_trip("update_search_click")
        with _wrap_db("update_search_click"):
            n = self.adapter.update_search_click(
                search_id=search_id,
                item_id=item_id,
                position=position,
                time_to_click_ms=time_to_click_ms,
                updated_at=self.clock.now(),
            )
        return n > 0

    def _update_search_abandonment(self, search_id: str, dwell_ms: int):
        yield from self._round_trip("update_search_abandonment")
        with _wrap_db("update_search_abandonment"):
            n = self.adapter.update_search_abandonment(
                search_id=search_id, dwell_ms=dwell_ms, updated_at=self.clock.now()
            )
        return n > 0

    def _query_search_suggestions(self, prefix: str, limit: int):
        yield from self._round_trip("query_search_suggestions")
        with _wrap_db("query_search_suggestions"):
            return self.adapter.search_suggestions(prefix=prefix, limit=limit)

    def _deliver(self, records: list[TelemetryRecord]):
        yield from self._round_trip("deliver")
        rows = [self._record_to_row(r) for r in records]
        with _wrap_db("deliver"):
            result = self.adapter.write_records(rows)

        self._logger.info(
            "records_written",
            extra={
                "event": "records_written",
                "run_id": self.run_id,
                "num_records": result.num_rows,
                "duration_ms": result.duration_ms,
            },
        )
        return result.num_rows

    def _record_to_row(self, r: TelemetryRecord) -> tuple:
        return (
            self.run_id,
            self.ids.next_id("rec"),
            r.created_at,
            r.record_type,
            r.user_id,
            r.session_id,
            r.subject,
            r.value_num,
            r.value_str,
            json_dumps(r.payload),
        )


@contextmanager
def _wrap_db(operation: str):
    """Re-raise duckdb errors as TransientDeliveryError for the given operation."""
    try:
        yield
    except duckdb.Error as e:
        raise TransientDeliveryError(operation, str(e)) from e

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import simpy

from tabtrack.core.errors import TransientDeliveryError
from tabtrack.core.logging import get_logger

from .schema import TelemetryRecord


@dataclass(frozen=True)
class BatchingConfig:
    max_batch_size: int = 50
    flush_interval_s: float = 10.0
    # a repeat of the same record key inside this window is suppressed; 0 disables
    dedupe_window_s: float = 1.0


class BatchSink(Protocol):
    """Delivery collaborator; returns a process that resolves when the batch lands."""

    def deliver(self, records: list[TelemetryRecord]) -> simpy.events.Process: ...


class EventBatchQueue:
    """
    FIFO buffer + flush policy for outgoing telemetry records.
    - flush when size reaches max_batch_size (synchronous, cancels the timer)
    - otherwise arm a single flush timer of flush_interval_s
    - flush eagerly on page hide / unload; nothing is retried after unload
    - a repeat of the same (type, user, subject, label) key within
      dedupe_window_s of the last accepted one is suppressed

    Timers are cancelled by bumping a generation token; a stale timer wakes
    and does nothing.
    """

    def __init__(
        self,
        *,
        env: simpy.Environment,
        sink: BatchSink,
        cfg: BatchingConfig = BatchingConfig(),
    ) -> None:
        if cfg.max_batch_size <= 0:
            raise ValueError("batching.max_batch_size must be > 0")
        if cfg.flush_interval_s <= 0:
            raise ValueError("batching.flush_interval_s must be > 0")
        if cfg.dedupe_window_s < 0:
            raise ValueError("batching.dedupe_window_s must be >= 0")
        self.env = env
        self.sink = sink
        self.cfg = cfg

        self._queue: list[TelemetryRecord] = []
        self._timer: simpy.events.Process | None = None
        self._timer_generation = 0
        self._flushing = False
        self._closed = False
        self._last_accepted: dict[tuple, float] = {}

        self.flush_count = 0
        self.delivered = 0
        self.dropped = 0
        self.suppressed = 0
        self._logger = get_logger(__name__)

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._queue)

    def add_event(self, record: TelemetryRecord) -> None:
        if self._closed:
            self.dropped += 1
            self._logger.debug(
                "record_dropped", extra={"event": "record_dropped", "reason": "closed"}
            )
            return

        if self._is_repeat(record):
            self.suppressed += 1
            self._logger.debug(
                "record_suppressed",
                extra={"event": "record_suppressed", "reason": record.record_type},
            )
            return

        self._queue.append(record)

        if len(self._queue) >= self.cfg.max_batch_size:
            self.flush(reason="size")
        elif self._timer is None:
            self._arm_timer()

    def flush(self, *, reason: str = "manual") -> simpy.events.Process | None:
        """
        Swap the queue for an empty one and hand the batch to the sink.
        Returns the delivery process, or None when there was nothing to send
        or a flush is already underway.
        """
        if self._flushing:
            return None
        self._flushing = True
        try:
            self._cancel_timer()
            if not self._queue:
                return None
            batch, self._queue = self._queue, []
            self.flush_count += 1

            self._logger.info(
                "flush",
                extra={"event": "flush", "reason": reason, "num_records": len(batch)},
            )
            delivery = self.sink.deliver(batch)
            return self.env.process(self._await_delivery(delivery, len(batch)))
        finally:
            self._flushing = False

    def pending(self) -> list[TelemetryRecord]:
        return list(self._queue)

    def clear(self) -> None:
        self._queue = []
        self._cancel_timer()

    def close(self) -> simpy.events.Process | None:
        """Final flush on unload; later records are dropped."""
        proc = self.flush(reason="unload")
        self._closed = True
        return proc

    # ----------------------------
    # Internal helpers
    # ----------------------------
    def _is_repeat(self, record: TelemetryRecord) -> bool:
        window = self.cfg.dedupe_window_s
        if window <= 0:
            return False
        now = float(self.env.now)
        # forget keys that have aged out
        self._last_accepted = {
            k: t for k, t in self._last_accepted.items() if now - t < window
        }
        key = record.dedupe_key()
        if key in self._last_accepted:
            return True
        self._last_accepted[key] = now
        return False

    def _arm_timer(self) -> None:
        self._timer_generation += 1
        self._timer = self.env.process(self._timer_proc(self._timer_generation))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer_generation += 1
            self._timer = None

    def _timer_proc(self, generation: int):
        yield self.env.timeout(self.cfg.flush_interval_s)
        if generation != self._timer_generation:
            return
        self._timer = None
        self.flush(reason="timer")

    def _await_delivery(self, delivery: simpy.events.Process, size: int):
        try:
            n = yield delivery
        except TransientDeliveryError as e:
            self.dropped += size
            self._logger.warning(
                "batch_delivery_failed",
                extra={"event": "batch_delivery_failed", "num_records": size, "error": str(e)},
            )
            return 0
        self.delivered += int(n or 0)
        return n

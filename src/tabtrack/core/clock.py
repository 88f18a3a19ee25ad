from __future__ import annotations

from datetime import UTC, datetime, timedelta

import simpy


class Clock:
    """
    Tab clock. env.now is seconds since the tab opened; wall time is
    start_dt + env.now.
    """

    def __init__(self, env: simpy.Environment, start_dt: datetime) -> None:
        self.env = env
        if start_dt.tzinfo is None:
            start_dt = start_dt.replace(tzinfo=UTC)
        else:
            start_dt = start_dt.astimezone(UTC)
        self.start_dt = start_dt
        self._start_ms = int(round(start_dt.timestamp() * 1000.0))

    def now(self) -> datetime:
        return self.start_dt + timedelta(seconds=float(self.env.now))

    def now_ms(self) -> int:
        # rounded so that e.g. 4.35 s does not come out as 4349 ms
        return self._start_ms + int(round(float(self.env.now) * 1000.0))

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import simpy


class Debouncer:
    """
    Timer-coalescing primitive on the simpy loop.

    Each call replaces the stored arguments and the pending timer handle.
    Superseded timers still wake up but see a stale generation and do nothing.
    Only the last call in a quiet window of `wait_s` reaches `fn`.
    """

    def __init__(self, env: simpy.Environment, wait_s: float, fn: Callable[..., Any]) -> None:
        if wait_s < 0:
            raise ValueError("debounce wait_s must be >= 0")
        self.env = env
        self.wait_s = float(wait_s)
        self._fn = fn

        self._generation = 0
        self._args: tuple[tuple[Any, ...], dict[str, Any]] | None = None
        self._pending: simpy.events.Process | None = None
        self.calls = 0
        self.fired = 0

    @property
    def pending(self) -> bool:
        return self._args is not None

    def __call__(self, *args: Any, **kwargs: Any) -> simpy.events.Process:
        self.calls += 1
        self._generation += 1
        self._args = (args, kwargs)
        self._pending = self.env.process(self._wait(self._generation))
        return self._pending

    def cancel(self) -> None:
        self._generation += 1
        self._args = None
        self._pending = None

    def flush(self) -> Any:
        """Run the pending call now, if any, and drop its timer."""
        if self._args is None:
            return None
        args, kwargs = self._args
        self.cancel()
        self.fired += 1
        return self._fn(*args, **kwargs)

    def _wait(self, generation: int):
        yield self.env.timeout(self.wait_s)
        if generation != self._generation or self._args is None:
            return None
        args, kwargs = self._args
        self._args = None
        self._pending = None
        self.fired += 1
        return self._fn(*args, **kwargs)

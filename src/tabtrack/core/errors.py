from __future__ import annotations


class TelemetryError(Exception):
    """Base class for telemetry failures."""


class TransientDeliveryError(TelemetryError):
    """
    A network/storage failure on insert or update. Logged and swallowed by
    trackers; the event is treated as never tracked.
    """

    def __init__(self, operation: str, message: str = "") -> None:
        self.operation = operation
        super().__init__(f"{operation}: {message}" if message else operation)


class StorageUnavailableError(TelemetryError):
    """Tab-scoped storage refused a read or write (quota, privacy mode)."""

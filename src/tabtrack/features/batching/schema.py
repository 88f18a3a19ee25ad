from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

ALLOWED_RECORD_TYPES: set[str] = {
    # view tracker
    "interaction",
    # search pipeline
    "content_gap",
}


@dataclass(frozen=True, slots=True)
class TelemetryRecord:
    """
    A pending record held by the batching queue. Ephemeral: lost if the tab
    dies before a flush.
    """

    record_type: str
    created_at: datetime

    user_id: str | None = None
    session_id: str | None = None
    # item id or query text, depending on record_type
    subject: str | None = None

    value_num: float | None = None
    value_str: str | None = None
    payload: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.record_type not in ALLOWED_RECORD_TYPES:
            raise ValueError(
                f"Unsupported record_type={self.record_type!r}. "
                f"Allowed={sorted(ALLOWED_RECORD_TYPES)}"
            )

    def dedupe_key(self) -> tuple[str, str | None, str | None, str | None]:
        """Identity of a noisy repeat: payload and counters are not part of it."""
        return (self.record_type, self.user_id, self.subject, self.value_str)

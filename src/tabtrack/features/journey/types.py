from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# action -> required params
JOURNEY_ACTIONS: dict[str, tuple[str, ...]] = {
    "navigate": ("url",),
    "login": ("user_id",),
    "logout": (),
    "view": ("item_id",),
    "leave": (),
    "interact": ("kind",),
    "search": ("query",),
    "click": ("item_id", "position"),
    "hide": (),
    "show": (),
    "reset_session": (),
    "unload": (),
}


@dataclass(frozen=True, slots=True)
class JourneyStep:
    at_s: float
    action: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Journey:
    user_id: str | None
    start_url: str
    steps: list[JourneyStep]

    @property
    def end_s(self) -> float:
        return max((s.at_s for s in self.steps), default=0.0)

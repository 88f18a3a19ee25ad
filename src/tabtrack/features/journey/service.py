from __future__ import annotations

from typing import Any

import simpy

from tabtrack.core.logging import get_logger
from tabtrack.core.types import BrowserContext, ContentItem, Visitor
from tabtrack.features.lifecycle.service import PageLifecycle
from tabtrack.features.search_tracking.service import SearchTracker
from tabtrack.features.session_registry.service import SessionRegistry
from tabtrack.features.view_tracking.service import ViewTracker

from .types import JOURNEY_ACTIONS, Journey, JourneyStep


class JourneyFactory:
    """
    Builds a Journey from the YAML config structure:

    journey:
      user_id: u_1
      start_url: https://example.com/mental-models
      steps:
        - {at_s: 0.0, action: search, query: bias, results: 12}
        - {at_s: 3.0, action: click, item_id: confirmation-bias, position: 1}
        - {at_s: 3.0, action: view, item_id: confirmation-bias, category: psychology}
        - {at_s: 40.0, action: unload}
    """

    @staticmethod
    def build(cfg_journey: dict[str, Any] | None) -> Journey:
        cfg = cfg_journey or {}
        if not isinstance(cfg, dict):
            raise TypeError("journey must be a mapping/dict")

        steps_raw = cfg.get("steps") or []
        if not isinstance(steps_raw, list):
            raise TypeError("journey.steps must be a list")

        steps = [JourneyFactory._parse_step(idx, s) for idx, s in enumerate(steps_raw)]
        # stable: steps sharing at_s keep their YAML order
        steps.sort(key=lambda s: s.at_s)

        user_id = cfg.get("user_id")
        return Journey(
            user_id=None if user_id is None else str(user_id),
            start_url=str(cfg.get("start_url", "https://example.com/")),
            steps=steps,
        )

    @staticmethod
    def _parse_step(idx: int, raw: Any) -> JourneyStep:
        if not isinstance(raw, dict):
            raise TypeError(f"journey.steps[{idx}] must be a mapping/dict")

        action = raw.get("action")
        if action not in JOURNEY_ACTIONS:
            raise ValueError(
                f"journey.steps[{idx}].action={action!r} is not one of {sorted(JOURNEY_ACTIONS)}"
            )

        try:
            at_s = float(raw.get("at_s", 0.0))
        except (TypeError, ValueError) as e:
            raise TypeError(f"journey.steps[{idx}].at_s must be numeric") from e
        if at_s < 0:
            raise ValueError(f"journey.steps[{idx}].at_s must be >= 0")

        params = {k: v for k, v in raw.items() if k not in ("action", "at_s")}
        for key in JOURNEY_ACTIONS[action]:
            if key not in params:
                raise ValueError(f"journey.steps[{idx}] ({action}) requires '{key}'")

        return JourneyStep(at_s=at_s, action=str(action), params=params)


class JourneyPlayer:
    """
    Replays a scripted visitor on the tab's loop. Each step fires at its
    at_s; trackers see exactly what a browser would hand them.
    """

    def __init__(
        self,
        *,
        env: simpy.Environment,
        journey: Journey,
        visitor: Visitor,
        browser: BrowserContext,
        lifecycle: PageLifecycle,
        sessions: SessionRegistry,
        views: ViewTracker,
        search: SearchTracker,
    ) -> None:
        self.env = env
        self.journey = journey
        self.visitor = visitor
        self.browser = browser
        self.lifecycle = lifecycle
        self.sessions = sessions
        self.views = views
        self.search = search

        self.steps_run = 0
        self._logger = get_logger(__name__)

    def start(self) -> simpy.events.Process:
        self.visitor.user_id = self.journey.user_id
        self.browser.url = self.journey.start_url
        return self.env.process(self._run())

    def _run(self):
        for step in self.journey.steps:
            delay = step.at_s - float(self.env.now)
            if delay > 0:
                yield self.env.timeout(delay)
            self.apply(step)
            self.steps_run += 1

    def apply(self, step: JourneyStep) -> None:
        p = step.params
        action = step.action
        self._logger.debug("journey_step", extra={"event": action, "reason": p or None})

        if action == "navigate":
            self.browser.navigate(str(p["url"]), state=p.get("state"))
        elif action == "login":
            self.visitor.user_id = str(p["user_id"])
        elif action == "logout":
            self.visitor.user_id = None
        elif action == "view":
            item = ContentItem(
                item_id=str(p["item_id"]),
                name=str(p.get("name", p["item_id"])),
                category=p.get("category"),
            )
            if "url" in p:
                self.browser.navigate(str(p["url"]), state=p.get("state"))
            self.lifecycle.change_subject(item)
            self.views.activate(item)
        elif action == "leave":
            self.lifecycle.change_subject(None)
            self.views.unmount()
        elif action == "interact":
            self.views.track_interaction(str(p["kind"]), p.get("metadata"))
        elif action == "search":
            results = p.get("results", 0)
            if isinstance(results, int):
                results = [None] * results
            self.search.track_search(str(p["query"]), list(results), p.get("context"))
        elif action == "click":
            self.search.track_search_click(str(p["item_id"]), int(p["position"]))
        elif action == "hide":
            self.lifecycle.hide()
        elif action == "show":
            self.lifecycle.show()
        elif action == "reset_session":
            self.sessions.reset_session()
        elif action == "unload":
            self.lifecycle.unload()

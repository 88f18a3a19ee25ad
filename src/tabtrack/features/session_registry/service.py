from __future__ import annotations

from collections.abc import Callable

from tabtrack.core.clock import Clock
from tabtrack.core.errors import StorageUnavailableError
from tabtrack.core.ids import mint_session_id, session_created_ms
from tabtrack.core.logging import get_logger
from tabtrack.core.rng import RNG
from tabtrack.core.types import BrowserContext

from .types import Session, SessionConfig, SessionMetadata, TabStorage


class SessionRegistry:
    """
    Owns the tab-lifetime session identifier.

    Reads go memory cache -> tab storage -> mint. If the tab storage refuses
    access the registry degrades to memory-only for the rest of the tab's
    life; callers never see the error.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        rng: RNG,
        browser: BrowserContext,
        storage: TabStorage,
        cfg: SessionConfig = SessionConfig(),
    ) -> None:
        self.clock = clock
        self.rng = rng
        self.browser = browser
        self.storage = storage
        self.cfg = cfg

        self._session_id: str | None = None
        self._degraded = False
        self._reset_listeners: list[Callable[[str | None], None]] = []
        self._logger = get_logger(__name__)

    @property
    def degraded(self) -> bool:
        return self._degraded

    # ----------------------------
    # Public API
    # ----------------------------
    def get_session_id(self) -> str:
        if self._session_id is not None:
            return self._session_id

        stored = self._storage_get()
        if not stored:
            stored = mint_session_id(
                epoch_ms=self.clock.now_ms(),
                token=self.rng.token(self.cfg.token_length),
                user_agent=self.browser.user_agent,
            )
            self._storage_set(stored)
            self._logger.info(
                "session_started",
                extra={"event": "session_started", "session_id": stored},
            )

        self._session_id = stored
        return stored

    def reset_session(self) -> None:
        """
        Forget the identifier; the next get_session_id mints a new one.
        Listeners reset per-item tracking keyed on the old id.
        """
        previous = self._session_id or self._storage_get()
        self._storage_remove()
        self._session_id = None
        self._logger.info(
            "session_reset", extra={"event": "session_reset", "session_id": previous}
        )
        for listener in list(self._reset_listeners):
            listener(previous)

    def on_reset(self, listener: Callable[[str | None], None]) -> None:
        self._reset_listeners.append(listener)

    def get_session_metadata(self) -> SessionMetadata:
        # recomputed on each call; viewport and url may have changed
        b = self.browser
        return SessionMetadata(
            session_id=self.get_session_id(),
            viewport_width=int(b.viewport_width),
            viewport_height=int(b.viewport_height),
            screen_width=int(b.screen_width),
            screen_height=int(b.screen_height),
            user_agent=b.user_agent,
            language=b.language,
            platform=b.platform,
            referrer=b.referrer or None,
            url=b.url,
            timestamp=self.clock.now().isoformat(),
        )

    def get_session(self) -> Session:
        metadata = self.get_session_metadata()
        return Session(
            session_id=metadata.session_id,
            created_ms=session_created_ms(metadata.session_id),
            metadata=metadata,
        )

    def is_new_session(self) -> bool:
        """True until an identifier has been minted or found for this tab."""
        return not (self._session_id or self._storage_get())

    def get_session_duration(self) -> int:
        """Whole seconds since the session was minted; 0 if none or unparseable."""
        created = session_created_ms(self._session_id or self._storage_get())
        if created is None:
            return 0
        return max(0, (self.clock.now_ms() - created) // 1000)

    # ----------------------------
    # Storage access (degrades, never raises)
    # ----------------------------
    def _degrade(self, err: StorageUnavailableError) -> None:
        if not self._degraded:
            self._degraded = True
            self._logger.warning(
                "session_storage_unavailable",
                extra={"event": "session_storage_unavailable", "error": str(err)},
            )

    def _storage_get(self) -> str | None:
        if self._degraded:
            return None
        try:
            return self.storage.get_item(self.cfg.storage_key)
        except StorageUnavailableError as e:
            self._degrade(e)
            return None

    def _storage_set(self, value: str) -> None:
        if self._degraded:
            return
        try:
            self.storage.set_item(self.cfg.storage_key, value)
        except StorageUnavailableError as e:
            self._degrade(e)

    def _storage_remove(self) -> None:
        if self._degraded:
            return
        try:
            self.storage.remove_item(self.cfg.storage_key)
        except StorageUnavailableError as e:
            self._degrade(e)

from __future__ import annotations

from tabtrack.core.errors import StorageUnavailableError


class MemoryTabStorage:
    """
    In-process sessionStorage. `available=False` mimics privacy mode (every
    access fails); `quota` caps the number of keys that can be written.
    """

    def __init__(self, *, available: bool = True, quota: int | None = None) -> None:
        self.available = available
        self.quota = quota
        self._items: dict[str, str] = {}

    def _check(self) -> None:
        if not self.available:
            raise StorageUnavailableError("tab storage is not available")

    def get_item(self, key: str) -> str | None:
        self._check()
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._check()
        if self.quota is not None and key not in self._items and len(self._items) >= self.quota:
            raise StorageUnavailableError(f"tab storage quota exceeded writing {key!r}")
        self._items[key] = str(value)

    def remove_item(self, key: str) -> None:
        self._check()
        self._items.pop(key, None)

    def clear(self) -> None:
        """Tab closed."""
        self._items.clear()

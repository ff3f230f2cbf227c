from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from link_sentinel_core.models import RedirectResolution
from link_sentinel_core.util import Clock, SystemClock


class ResolutionCache(Protocol):
    def get(self, key: str) -> RedirectResolution | None: ...
    def set(self, key: str, value: RedirectResolution, ttl_s: int) -> None: ...
    def purge_expired(self) -> int: ...


@dataclass(frozen=True)
class _Entry:
    value: RedirectResolution
    expires_at: datetime


class InMemoryResolutionCache:
    """
    Time-boxed resolution cache. Entries are never updated in place; they expire.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._entries: dict[str, _Entry] = {}

    def get(self, key: str) -> RedirectResolution | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock.now():
            self._entries.pop(key, None)
            return None
        return entry.value

    def set(self, key: str, value: RedirectResolution, ttl_s: int) -> None:
        if ttl_s <= 0:
            return
        self._entries[key] = _Entry(value=value, expires_at=self._clock.now() + timedelta(seconds=ttl_s))

    def purge_expired(self) -> int:
        now = self._clock.now()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

from __future__ import annotations

import hashlib
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Protocol

_TOKEN_ALPHABET = string.ascii_letters + string.digits


def url_fingerprint(url: str) -> str:
    """
    Deterministic fingerprint of a URL string, used for duplicate lookups.
    """
    return hashlib.md5(str(url).encode("utf-8")).hexdigest()  # noqa: S324


def new_token(length: int = 20) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


class Clock(Protocol):
    def now(self) -> datetime: ...
    def monotonic(self) -> float: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

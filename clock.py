"""Clock abstraction so ids, expiry and migration cooldowns are testable."""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import List

import pytz


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(pytz.utc)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class FrozenClock:
    """Manually advanced clock. `sleep` records the delay and moves time forward."""

    def __init__(self, now: datetime):
        if now.tzinfo is None:
            now = pytz.utc.localize(now)
        self._now = now
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        if now.tzinfo is None:
            now = pytz.utc.localize(now)
        self._now = now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now = self._now + timedelta(seconds=seconds)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as ISO-8601 UTC."""
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    return value.astimezone(pytz.utc).isoformat()


def from_iso(value) -> datetime:
    """Parse an ISO-8601 string (or pass through a datetime) as aware UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = pytz.utc.localize(parsed)
    return parsed.astimezone(pytz.utc)

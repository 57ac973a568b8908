"""Caches of recently seen message ids whose entries expire after a time to live."""

from __future__ import annotations

import enum
import threading
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Optional, Union

Duration = Union[timedelta, float, int]

BACKGROUND_SWEEP_INTERVAL = timedelta(minutes=1)


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class Strategy(enum.IntEnum):
    """Expiration strategy of a time cache."""

    FIRST_SEEN = 0
    LAST_SEEN = 1


class TimeCache(ABC):
    """A set of ids that forgets entries once their expiry has passed.

    A background thread sweeps expired entries every ``sweep_interval``
    until ``done`` is called.
    """

    def __init__(
        self,
        ttl: Duration,
        sweep_interval: Duration = BACKGROUND_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = _seconds(ttl)
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._background,
            args=(_seconds(sweep_interval),),
            name="timecache-sweeper",
            daemon=True,
        )
        self._thread.start()

    def _background(self, interval: float) -> None:
        while not self._stopped.wait(interval):
            self.sweep(self._clock())

    def _expiry(self) -> float:
        return self._clock() + self._ttl

    @abstractmethod
    def add(self, key: str) -> bool:
        """Add ``key``; return True if it was not already present."""

    @abstractmethod
    def has(self, key: str) -> bool:
        """Return True if ``key`` is present."""

    def sweep(self, now: Optional[float] = None) -> None:
        """Drop every entry whose expiry lies before ``now``."""
        if now is None:
            now = self._clock()
        with self._lock:
            expired = [key for key, expiry in self._entries.items() if expiry < now]
            for key in expired:
                del self._entries[key]

    def done(self) -> None:
        """Stop the background sweeper."""
        self._stopped.set()

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def __enter__(self) -> "TimeCache":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.done()


class FirstSeenCache(TimeCache):
    """Entries expire a fixed time after they were first added."""

    def add(self, key: str) -> bool:
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = self._expiry()
            return True

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries


class LastSeenCache(TimeCache):
    """Entries expire a fixed time after they were last added or looked up."""

    def add(self, key: str) -> bool:
        with self._lock:
            is_new = key not in self._entries
            self._entries[key] = self._expiry()
            return is_new

    def has(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._entries[key] = self._expiry()
            return True


def new_time_cache(ttl: Duration, strategy: int = Strategy.FIRST_SEEN) -> TimeCache:
    """Create a cache for ``strategy``; unknown strategies get a first-seen cache."""
    if strategy == Strategy.LAST_SEEN:
        return LastSeenCache(ttl)
    return FirstSeenCache(ttl)
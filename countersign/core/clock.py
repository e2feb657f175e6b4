"""
Clock and identifier utilities.

The core never reads wall time directly; it asks a Clock. SystemClock is
used in deployments, ManualClock in tests and replays.
"""

import asyncio
import heapq
import itertools
import logging
import secrets
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def new_id(prefix: str = "") -> str:
    """Generate a unique identifier, optionally prefixed (e.g. ``doc_``)."""
    value = uuid.uuid4().hex
    return f"{prefix}_{value}" if prefix else value


def new_nonce(size: int = 16) -> bytes:
    """Random nonce from the OS CSPRNG."""
    return secrets.token_bytes(size)


class Clock(ABC):
    """Clock port."""

    @abstractmethod
    def now(self) -> datetime:
        """Current instant, timezone-aware UTC."""

    @abstractmethod
    def schedule(self, at: datetime, callback: Callable[[], Any]) -> Any:
        """Run ``callback`` at or after ``at``. Returns a cancellable handle."""


class SystemClock(Clock):
    """
    Wall clock that never moves backwards within the process.

    If the host clock steps back (NTP correction), the last returned value
    is repeated until real time catches up.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        current = utcnow()
        with self._lock:
            if self._last is not None and current < self._last:
                current = self._last
            self._last = current
        return current

    def schedule(self, at: datetime, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        delay = max(0.0, (ensure_utc(at) - self.now()).total_seconds())
        return loop.call_later(delay, callback)


class ManualClock(Clock):
    """Simulated clock; time moves only via set() or advance()."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else utcnow()
        self._counter = itertools.count()
        self._pending: List[Tuple[datetime, int, Callable[[], Any]]] = []

    def now(self) -> datetime:
        return self._now

    def schedule(self, at: datetime, callback: Callable[[], Any]) -> int:
        handle = next(self._counter)
        heapq.heappush(self._pending, (ensure_utc(at), handle, callback))
        return handle

    def cancel(self, handle: int) -> None:
        self._pending = [item for item in self._pending if item[1] != handle]
        heapq.heapify(self._pending)

    def set(self, value: datetime) -> List[Any]:
        value = ensure_utc(value)
        if value < self._now:
            raise ValueError("ManualClock cannot move backwards")
        results = []
        while self._pending and self._pending[0][0] <= value:
            at, _, callback = heapq.heappop(self._pending)
            self._now = at
            results.append(callback())
        self._now = value
        return results

    def advance(self, **delta: float) -> List[Any]:
        """Advance by a timedelta expressed as keyword arguments; fires due callbacks."""
        return self.set(self._now + timedelta(**delta))

    @property
    def pending(self) -> int:
        return len(self._pending)

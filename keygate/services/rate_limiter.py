"""
Fixed-window rate limiting for the validation, delivery and operator endpoints

Window state lives in an injected RateWindowStore. The bundled
InMemoryRateWindowStore is per-process: with several instances behind a load
balancer each instance enforces its own limits, so the effective global limit
is N times the instance count unless a shared store is injected.
"""

import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

PURGE_EVERY = 1000


@dataclass
class RateLimitPolicy:
    """
    Admission policy for one endpoint

    Attributes:
        max_requests: Admissions allowed per window
        window_seconds: Window length in seconds
    """
    max_requests: int
    window_seconds: float

    def __post_init__(self):
        if self.max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


@dataclass
class RateWindow:
    """Counter for one client: admissions since ``window_start``"""
    count: int
    window_start: float

    def elapsed(self, now: float, window_seconds: float) -> bool:
        return now - self.window_start > window_seconds


class RateWindowStore(ABC):
    """Where rate windows live; implementations must make ``hit`` atomic"""

    @abstractmethod
    def hit(self, client_id: str, now: float, window_seconds: float,
            max_count: Optional[int]) -> Tuple[bool, RateWindow]:
        """
        Count one attempt for ``client_id``

        If there is no window or it has elapsed, a new window starts with
        count 1 and the attempt is allowed. Otherwise the attempt is allowed
        and counted while ``count < max_count``; at the ceiling it is refused
        and the window is left untouched. ``max_count=None`` never refuses.

        Returns:
            (allowed, window after the attempt)
        """

    @abstractmethod
    def peek(self, client_id: str) -> Optional[RateWindow]:
        """Current window for a client without counting an attempt"""

    @abstractmethod
    def reset(self, client_id: Optional[str] = None) -> None:
        """Forget one client's window, or every window"""

    @abstractmethod
    def purge(self, older_than: float) -> int:
        """Drop windows that started before ``older_than``; returns the count"""


class InMemoryRateWindowStore(RateWindowStore):
    """Process-local store guarded by a lock"""

    def __init__(self):
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def hit(self, client_id, now, window_seconds, max_count):
        with self._lock:
            window = self._windows.get(client_id)
            if window is None or window.elapsed(now, window_seconds):
                window = RateWindow(count=1, window_start=now)
                self._windows[client_id] = window
                return True, RateWindow(window.count, window.window_start)
            if max_count is not None and window.count >= max_count:
                return False, RateWindow(window.count, window.window_start)
            window.count += 1
            return True, RateWindow(window.count, window.window_start)

    def peek(self, client_id):
        with self._lock:
            window = self._windows.get(client_id)
            return RateWindow(window.count, window.window_start) if window else None

    def reset(self, client_id=None):
        with self._lock:
            if client_id is None:
                self._windows.clear()
            else:
                self._windows.pop(client_id, None)

    def purge(self, older_than):
        with self._lock:
            stale = [cid for cid, w in self._windows.items() if w.window_start < older_than]
            for cid in stale:
                del self._windows[cid]
            return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


class RateLimiter:
    """
    Fixed-window admission control keyed by client id (normally the source
    address)

    A window opened at t0 admits ``max_requests`` attempts until
    t0 + window_seconds; further attempts in that window are refused. The
    first attempt after the window elapses opens a new one with count 1.
    """

    def __init__(self, policy: RateLimitPolicy, store: RateWindowStore = None,
                 clock: Callable[[], float] = time.monotonic, name: str = "default"):
        """
        Args:
            policy: Admission policy
            store: Window storage (a fresh in-memory store if None)
            clock: Monotonic seconds source, injectable for tests
            name: Label used in log lines
        """
        self.policy = policy
        self.store = store or InMemoryRateWindowStore()
        self.clock = clock
        self.name = name
        self._hits = 0

    def admit(self, client_id: str) -> bool:
        """Count an attempt; True if the client is within its window"""
        now = self.clock()
        allowed, window = self.store.hit(
            client_id or "unknown", now, self.policy.window_seconds, self.policy.max_requests
        )
        self._hits += 1
        if self._hits % PURGE_EVERY == 0:
            self.store.purge(now - self.policy.window_seconds)
        if not allowed:
            logger.warning(f"[{self.name}] rate limit hit for {client_id}: "
                           f"{window.count}/{self.policy.max_requests} in {self.policy.window_seconds}s")
        return allowed

    def retry_after(self, client_id: str) -> int:
        """Seconds until the client's current window elapses (0 if none)"""
        window = self.store.peek(client_id or "unknown")
        if window is None:
            return 0
        remaining = window.window_start + self.policy.window_seconds - self.clock()
        return max(0, math.ceil(remaining))

    def remaining(self, client_id: str) -> int:
        """Admissions left in the current window"""
        window = self.store.peek(client_id or "unknown")
        if window is None or window.elapsed(self.clock(), self.policy.window_seconds):
            return self.policy.max_requests
        return max(0, self.policy.max_requests - window.count)

    def reset(self, client_id: Optional[str] = None) -> None:
        self.store.reset(client_id)


class FailedAttemptLimiter:
    """
    Locks a client out of operator endpoints after repeated bad credentials

    Failures are counted in a fixed window; once ``max_failures`` are
    recorded the client stays blocked until that window elapses. A
    successful authentication clears the count.
    """

    def __init__(self, max_failures: int = 10, window_seconds: float = 15 * 60.0,
                 store: RateWindowStore = None, clock: Callable[[], float] = time.monotonic):
        if max_failures <= 0:
            raise ValueError("max_failures must be positive")
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self.store = store or InMemoryRateWindowStore()
        self.clock = clock

    def is_blocked(self, client_id: str) -> bool:
        window = self.store.peek(client_id or "unknown")
        if window is None or window.elapsed(self.clock(), self.window_seconds):
            return False
        return window.count >= self.max_failures

    def record_failure(self, client_id: str) -> int:
        """Count a failed attempt; returns failures in the current window"""
        _, window = self.store.hit(client_id or "unknown", self.clock(), self.window_seconds, None)
        return window.count

    def clear(self, client_id: str) -> None:
        self.store.reset(client_id or "unknown")

    def retry_after(self, client_id: str) -> int:
        window = self.store.peek(client_id or "unknown")
        if window is None:
            return 0
        remaining = window.window_start + self.window_seconds - self.clock()
        return max(0, math.ceil(remaining))

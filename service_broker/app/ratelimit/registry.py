"""
In-process token bucket registry keyed by caller identity.

One registry per axis (identity subjects, network origins). Entries are
created on first sight of a key and dropped by a periodic sweep once they
have been idle for the eviction age.
"""

import asyncio
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from shared.logging import get_logger


# Used when no finite wait can be derived from the bucket state.
FALLBACK_RETRY_AFTER = 5.0


@dataclass
class TokenBucket:
    """Continuously refilling bucket holding at most ``burst`` tokens."""

    rate: float
    burst: int
    tokens: float
    last_refill: float

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(float(self.burst), self.tokens + elapsed * self.rate)
        self.last_refill = now

    def try_consume(self, now: float) -> bool:
        self.refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def delay_until_available(self) -> Optional[float]:
        """Seconds until one token is available, computed without consuming."""
        if self.rate <= 0 or self.burst < 1:
            return None
        missing = 1.0 - self.tokens
        if missing <= 0:
            return 0.0
        delay = missing / self.rate
        if not math.isfinite(delay):
            return None
        return delay


@dataclass
class LimiterEntry:
    """Bucket state plus the last time the key was seen."""

    bucket: TokenBucket
    last_seen: float


class LimiterRegistry:
    """Token bucket limiters keyed by arbitrary strings, with idle eviction."""

    def __init__(
        self,
        per_minute: float,
        burst: int,
        cleanup_minutes: float,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        on_sweep: Optional[Callable[[int], None]] = None,
    ):
        self.name = name
        self.rate = per_minute / 60.0
        self.burst = burst
        self.cleanup_age = cleanup_minutes * 60.0
        self.logger = get_logger(f"broker.ratelimit.{name}")

        self._clock = clock
        self._on_sweep = on_sweep
        self._entries: Dict[str, LimiterEntry] = {}
        self._lock = threading.Lock()
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def allow(self, key: str) -> Tuple[bool, float]:
        """Try to take one token for ``key``.

        Returns ``(True, 0.0)`` when permitted, otherwise ``(False, delay)``
        with the number of seconds until a token will be available.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = LimiterEntry(
                    bucket=TokenBucket(
                        rate=self.rate,
                        burst=self.burst,
                        tokens=float(self.burst),
                        last_refill=now,
                    ),
                    last_seen=now,
                )
                self._entries[key] = entry
            entry.last_seen = now

            if entry.bucket.try_consume(now):
                return True, 0.0
            delay = entry.bucket.delay_until_available()

        if delay is None or delay <= 0:
            delay = FALLBACK_RETRY_AFTER
        self.logger.debug("Rate limit denied", key=key, retry_after=round(delay, 3))
        return False, delay

    def sweep(self) -> int:
        """Evict entries idle longer than the eviction age. Returns the count removed."""
        cutoff = self._clock() - self.cleanup_age
        with self._lock:
            candidates = [key for key, entry in self._entries.items() if entry.last_seen < cutoff]

        removed = 0
        for key in candidates:
            # Re-check under the lock: the key may have been used since the scan.
            with self._lock:
                entry = self._entries.get(key)
                if entry is not None and entry.last_seen < cutoff:
                    del self._entries[key]
                    removed += 1

        remaining = len(self)
        if removed:
            self.logger.debug("Evicted idle limiters", removed=removed, remaining=remaining)
        if self._on_sweep is not None:
            self._on_sweep(remaining)
        return removed

    async def run_cleanup(self, stop: asyncio.Event) -> None:
        """Sweep every half eviction age until ``stop`` is set."""
        interval = self.cleanup_age / 2
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self.sweep()

    def start(self) -> asyncio.Task:
        """Start the periodic sweep on the running event loop."""
        if self._task is None or self._task.done():
            self._stop = asyncio.Event()
            self._task = asyncio.create_task(
                self.run_cleanup(self._stop),
                name=f"limiter-cleanup-{self.name}",
            )
            self.logger.info(
                "Limiter cleanup started",
                interval_seconds=self.cleanup_age / 2,
                eviction_age_seconds=self.cleanup_age,
            )
        return self._task

    async def stop(self) -> None:
        """Signal the periodic sweep to stop and wait for it to finish."""
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        self.logger.info("Limiter cleanup stopped")

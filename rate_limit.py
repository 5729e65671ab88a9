import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from config import SETTINGS
from observability import log_event


MIN_WINDOW_SECONDS = 1
MAX_WINDOW_SECONDS = 24 * 60 * 60
MIN_COUNT = 1
MAX_COUNT = 100000

RATE_LIMIT_MESSAGES = {
    "global": "Rate limit exceeded. Please try again later.",
    "strict": "Strict rate limit exceeded. Please try again later.",
    "login": "Too many failed login attempts. Please try again later.",
    "user": "User rate limit exceeded. Please try again later.",
    "api_key": "API rate limit exceeded. Please try again later.",
    "deploy": "Deploy rate limit exceeded. Please wait before trying again.",
}


@dataclass
class RateLimitEntry:
    key: str
    count: int
    window_start: float
    window_seconds: float


@dataclass(frozen=True)
class RateLimitDecision:
    admitted: bool
    limit: int
    remaining: int
    retry_after: int
    reset_after: int

    def headers(self) -> dict:
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_after),
        }
        if not self.admitted:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """Fixed-window request counter for one key space.

    A window opens on the first request for a key and lasts ``window_seconds``.
    Once ``now - window_start`` exceeds the window the entry counts as absent and
    the next request starts a fresh window with a count of one.
    """

    def __init__(
        self,
        name: str,
        window_seconds: int,
        max_count: int,
        message: str = "",
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.name = name
        self.window_seconds = int(window_seconds)
        self.max_count = int(max_count)
        self.message = message or RATE_LIMIT_MESSAGES.get(name, RATE_LIMIT_MESSAGES["global"])
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def _now(self) -> float:
        if self._clock:
            return self._clock()
        return time.time()

    def _expired(self, entry: RateLimitEntry, now: float) -> bool:
        return now - entry.window_start > entry.window_seconds

    def check(
        self,
        key: str,
        window_seconds: Optional[int] = None,
        max_count: Optional[int] = None,
    ) -> RateLimitDecision:
        window = self.window_seconds if window_seconds is None else window_seconds
        limit = self.max_count if max_count is None else max_count
        with self._lock:
            now = self._now()
            entry = self._entries.get(key)
            if entry is None or self._expired(entry, now):
                entry = RateLimitEntry(key=key, count=1, window_start=now, window_seconds=window)
                self._entries[key] = entry
            else:
                entry.count += 1
            window_end = entry.window_start + entry.window_seconds
            count = entry.count
        seconds_left = max(math.ceil(window_end - now), 0)
        if count > limit:
            return RateLimitDecision(
                admitted=False,
                limit=limit,
                remaining=0,
                retry_after=seconds_left,
                reset_after=seconds_left,
            )
        return RateLimitDecision(
            admitted=True,
            limit=limit,
            remaining=max(limit - count, 0),
            retry_after=0,
            reset_after=seconds_left,
        )

    def release(self, key: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.count > 0:
                entry.count -= 1

    def peek(self, key: str) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry, self._now()):
                return None
            return RateLimitEntry(
                key=entry.key,
                count=entry.count,
                window_start=entry.window_start,
                window_seconds=entry.window_seconds,
            )

    def sweep(self, now: Optional[float] = None) -> int:
        with self._lock:
            current = self._now() if now is None else now
            expired = [
                key
                for key, entry in self._entries.items()
                if self._expired(entry, current)
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def reconfigure(self, window_seconds: int, max_count: int) -> None:
        if not MIN_WINDOW_SECONDS <= window_seconds <= MAX_WINDOW_SECONDS:
            raise ValueError(f"window_seconds must be between {MIN_WINDOW_SECONDS} and {MAX_WINDOW_SECONDS}")
        if not MIN_COUNT <= max_count <= MAX_COUNT:
            raise ValueError(f"max_count must be between {MIN_COUNT} and {MAX_COUNT}")
        with self._lock:
            self.window_seconds = int(window_seconds)
            self.max_count = int(max_count)

    def snapshot(self) -> dict:
        with self._lock:
            tracked = len(self._entries)
        return {
            "name": self.name,
            "window_seconds": self.window_seconds,
            "max_count": self.max_count,
            "tracked_keys": tracked,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RateLimiters:
    def __init__(self, limiters: dict[str, RateLimiter]) -> None:
        self._limiters = dict(limiters)

    def __getitem__(self, name: str) -> RateLimiter:
        return self._limiters[name]

    def __contains__(self, name: str) -> bool:
        return name in self._limiters

    def names(self) -> list[str]:
        return list(self._limiters.keys())

    def check(self, name: str, key: str) -> RateLimitDecision:
        return self._limiters[name].check(key)

    def sweep(self) -> dict[str, int]:
        return {name: limiter.sweep() for name, limiter in self._limiters.items()}

    def snapshot(self) -> list[dict]:
        return [limiter.snapshot() for limiter in self._limiters.values()]


def build_rate_limiters(clock: Optional[Callable[[], float]] = None) -> RateLimiters:
    limiters = {}
    for name, (window_seconds, max_count) in SETTINGS.rate_limits.items():
        limiters[name] = RateLimiter(name, window_seconds, max_count, clock=clock)
    return RateLimiters(limiters)


class RateLimitSweeper:
    def __init__(self, limiters: RateLimiters, interval_seconds: float) -> None:
        self.limiters = limiters
        self.interval_seconds = max(float(interval_seconds), 1.0)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._logger = logging.getLogger("opsdeck.ratelimit")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="rate-limit-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> dict[str, int]:
        removed = self.limiters.sweep()
        total = sum(removed.values())
        if total:
            log_event("rate_limit_sweep", level=logging.DEBUG, removed=total)
        return removed

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                self._logger.exception("ratelimit.sweep failed")

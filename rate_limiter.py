"""Rate limiting for device telemetry ingestion."""
import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Tuple

logger = logging.getLogger(__name__)

# Idle devices are forgotten after this many calls so unknown ids cannot grow the map forever
CLEANUP_EVERY = 1000


class RateLimiter:
    """
    Sliding-window rate limiter.
    Tracks request timestamps per device within a rolling window.

    Counters are process-local, so a restart resets every device. A deployment
    with several gateway processes needs a shared counter behind the same
    ``allow`` interface.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            max_requests: Maximum requests accepted per device within the window
            window_seconds: Length of the rolling window in seconds
            clock: Monotonic time source, in seconds
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

        # Structure: {device_id: deque of accepted request timestamps}
        self._history: Dict[str, Deque[float]] = {}
        self.violations: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()
        self._calls_since_cleanup = 0

    def _prune(self, device_id: str, now: float) -> Deque[float]:
        """Drop timestamps that fell out of the window. Caller holds the lock."""
        timestamps = self._history.get(device_id)
        if timestamps is None:
            timestamps = deque()
            self._history[device_id] = timestamps
        cutoff = now - self.window_seconds
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        return timestamps

    def is_allowed(self, device_id: str) -> Tuple[bool, str]:
        """
        Check if device is allowed to send a request, recording it if so.

        Args:
            device_id: Device identifier

        Returns:
            Tuple of (is_allowed, reason)
        """
        try:
            with self._lock:
                now = self._clock()
                self._calls_since_cleanup += 1
                if self._calls_since_cleanup >= CLEANUP_EVERY:
                    self._drop_idle(now)
                timestamps = self._prune(device_id, now)
                if len(timestamps) >= self.max_requests:
                    self.violations[device_id] += 1
                    count = len(timestamps)
                else:
                    timestamps.append(now)
                    return True, "OK"
        except Exception as e:
            # Deny rather than let a broken limiter admit unbounded bursts
            logger.error(f"Rate limiter failure for device {device_id}: {e}", exc_info=True)
            return False, "Rate limiter unavailable"

        logger.warning(
            f"Rate limit exceeded for device {device_id}: "
            f"{count} requests in last {self.window_seconds:g}s (limit: {self.max_requests})"
        )
        return False, (
            f"Rate limit exceeded. Maximum {self.max_requests} requests per "
            f"{self.window_seconds:g} seconds"
        )

    def allow(self, device_id: str) -> bool:
        """Return True and record the request if the device is under its limit."""
        allowed, _ = self.is_allowed(device_id)
        return allowed

    def get_stats(self, device_id: str) -> Dict[str, int]:
        """Get rate limiting statistics for a device."""
        with self._lock:
            timestamps = self._prune(device_id, self._clock())
            count = len(timestamps)
            if not timestamps:
                del self._history[device_id]
            return {
                "requests_in_window": count,
                "violations": self.violations.get(device_id, 0),
            }

    def cleanup(self) -> int:
        """Forget devices with no requests in the current window. Returns how many were dropped."""
        with self._lock:
            return self._drop_idle(self._clock())

    def _drop_idle(self, now: float) -> int:
        idle = [device_id for device_id in list(self._history) if not self._prune(device_id, now)]
        for device_id in idle:
            del self._history[device_id]
        # A device leaves the violation table together with its history
        for device_id in [d for d in self.violations if d not in self._history]:
            del self.violations[device_id]
        self._calls_since_cleanup = 0
        return len(idle)

    def reset(self) -> None:
        """Clear all counters."""
        with self._lock:
            self._history.clear()
            self.violations.clear()

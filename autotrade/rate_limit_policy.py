"""Rate-limit policy: client-side request quotas per Binance endpoint (sliding window)."""
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional


@dataclass
class RateLimitQuota:
    """Per-endpoint rate-limit quota."""
    requests_per_window: int  # max requests allowed in the window
    window_seconds: float


@dataclass
class RateLimitState:
    """Request history for a single endpoint."""
    quota: RateLimitQuota
    request_times: Deque[float] = field(default_factory=deque)

    def _evict(self, now: float) -> None:
        cutoff = now - self.quota.window_seconds
        while self.request_times and self.request_times[0] <= cutoff:
            self.request_times.popleft()

    def is_allowed(self) -> bool:
        self._evict(time.monotonic())
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(time.monotonic())

    def time_until_allowed(self) -> float:
        """Seconds until the next request fits in the window; 0 if allowed now."""
        now = time.monotonic()
        self._evict(now)
        if len(self.request_times) < self.quota.requests_per_window:
            return 0.0
        return max(0.0, self.request_times[0] + self.quota.window_seconds - now)


class RateLimitManager:
    """Enforce rate-limit quotas per endpoint.

    Shared by the decision and reconciliation threads, so state changes are
    guarded by a lock. Order placement endpoints get their own, tighter quota.
    """

    ORDER_ENDPOINTS = ("/api/v3/order", "/api/v3/order/oco")

    DEFAULT_QUOTAS = {
        "/api/v3/order": RateLimitQuota(requests_per_window=10, window_seconds=1),
        "/api/v3/order/oco": RateLimitQuota(requests_per_window=10, window_seconds=1),
        "default": RateLimitQuota(requests_per_window=20, window_seconds=1),
    }

    def __init__(self, quotas: Optional[Dict[str, RateLimitQuota]] = None):
        self.quotas = dict(quotas or self.DEFAULT_QUOTAS)
        self.quotas.setdefault("default", self.DEFAULT_QUOTAS["default"])
        self.states: Dict[str, RateLimitState] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, orders_per_second: int, default_per_second: int) -> "RateLimitManager":
        quotas = {
            endpoint: RateLimitQuota(requests_per_window=orders_per_second, window_seconds=1)
            for endpoint in cls.ORDER_ENDPOINTS
        }
        quotas["default"] = RateLimitQuota(requests_per_window=default_per_second, window_seconds=1)
        return cls(quotas=quotas)

    def _get_state(self, endpoint: str) -> RateLimitState:
        if endpoint not in self.states:
            quota = self.quotas.get(endpoint, self.quotas["default"])
            self.states[endpoint] = RateLimitState(quota=quota)
        return self.states[endpoint]

    def is_allowed(self, endpoint: str) -> bool:
        with self._lock:
            return self._get_state(endpoint).is_allowed()

    def record_request(self, endpoint: str) -> None:
        with self._lock:
            self._get_state(endpoint).record_request()

    def time_until_allowed(self, endpoint: str) -> float:
        with self._lock:
            return self._get_state(endpoint).time_until_allowed()

    def wait_if_needed(self, endpoint: str, max_wait: float = 60.0) -> bool:
        """Block until a request to endpoint is allowed, then record it.

        Returns:
            True if the request slot was taken, False if max_wait would be exceeded
        """
        deadline = time.monotonic() + max_wait
        while True:
            with self._lock:
                state = self._get_state(endpoint)
                wait_time = state.time_until_allowed()
                if wait_time <= 0:
                    state.record_request()
                    return True
            remaining = deadline - time.monotonic()
            if wait_time > remaining:
                return False
            time.sleep(wait_time)

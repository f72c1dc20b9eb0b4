from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from math import ceil
from threading import Lock
from time import monotonic

from stone_api.config.settings import Settings


@dataclass(frozen=True)
class WindowPolicy:
    max_requests: int
    window_s: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_s: int = 0


class SlidingWindowLog:
    """Timestamps of recent hits per key, kept in process memory.

    Keys whose window has fully drained are dropped on their next hit so
    one-off clients do not accumulate.
    """

    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()

    def hit(self, key: str, policy: WindowPolicy) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - policy.window_s
        with self._lock:
            hits = self._hits.get(key)
            if hits is not None:
                while hits and hits[0] <= cutoff:
                    hits.popleft()
                if not hits:
                    del self._hits[key]
                    hits = None

            if hits is not None and len(hits) >= policy.max_requests:
                wait_s = hits[0] + policy.window_s - now
                return RateLimitDecision(allowed=False, retry_after_s=max(1, ceil(wait_s)))

            self._hits.setdefault(key, deque()).append(now)
        return RateLimitDecision(allowed=True)


class AuthRateLimiter:
    """Sign-in is keyed by client IP and provider, refresh by IP and token digest."""

    def __init__(
        self,
        *,
        sign_in: WindowPolicy,
        refresh: WindowPolicy,
        enabled: bool = True,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.enabled = enabled
        self.sign_in = sign_in
        self.refresh = refresh
        self.log = SlidingWindowLog(clock)

    @classmethod
    def from_settings(cls, settings: Settings) -> AuthRateLimiter:
        return cls(
            enabled=settings.auth_rate_limit_enabled,
            sign_in=WindowPolicy(
                settings.auth_sign_in_rate_limit_requests,
                settings.auth_sign_in_rate_limit_window_s,
            ),
            refresh=WindowPolicy(
                settings.auth_refresh_rate_limit_requests,
                settings.auth_refresh_rate_limit_window_s,
            ),
        )

    def check_sign_in(self, *, client_ip: str, provider: str) -> RateLimitDecision:
        return self._check(self.sign_in, "sign_in", provider, client_ip)

    def check_refresh(self, *, client_ip: str, principal: str) -> RateLimitDecision:
        return self._check(self.refresh, "refresh", client_ip, principal)

    def _check(self, policy: WindowPolicy, *parts: str) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(allowed=True)
        return self.log.hit(":".join(("auth", *parts)), policy)

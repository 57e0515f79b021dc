"""
Fixed-window rate limiters keyed by service name.
"""

from __future__ import annotations

import asyncio
import math
import time
import typing as t
from dataclasses import dataclass

import structlog

from aiqueue.config import RateLimitConfig

log = structlog.get_logger(__name__)

Clock = t.Callable[[], float]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class _WindowState:
    window_start: float
    total_tokens: int
    total_requests: int


@dataclass(frozen=True)
class RateLimitUsage:
    """
    Snapshot of a limiter's active window.

    Parameters
    ----------
    current_usage : int
        Tokens recorded in the active window.
    current_requests : int
        Requests recorded in the active window.
    remaining_tokens : float
        Tokens left before the limit (``inf`` when tokens are unlimited).
    remaining_requests : int
        Requests left before the limit.
    reset_time : float
        Clock time (ms) at which the active window rotates.
    """

    current_usage: int
    current_requests: int
    remaining_tokens: float
    remaining_requests: int
    reset_time: float


class RateLimiter:
    """
    Track requests and tokens consumed in a fixed window.

    Every read-modify-write of the window goes through an ``asyncio.Lock`` so
    concurrent model batches sharing the limiter see consistent counters.
    """

    def __init__(
        self,
        *,
        service_name: str,
        max_requests: int,
        max_tokens: int | None = None,
        window_size_ms: int = 60_000,
        clock: Clock = _monotonic_ms,
    ) -> None:
        self.service_name = service_name
        self.max_requests = max_requests
        self.max_tokens: float = math.inf if max_tokens is None else max_tokens
        self.window_size_ms = window_size_ms
        self._clock = clock
        self._state: _WindowState | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: RateLimitConfig, *, clock: Clock = _monotonic_ms) -> "RateLimiter":
        return cls(
            service_name=config.service_name,
            max_requests=config.max_requests,
            max_tokens=config.max_tokens,
            window_size_ms=config.window_size_ms,
            clock=clock,
        )

    def _active_state(self, *, now: float) -> _WindowState | None:
        state = self._state
        if state is None or state.window_start < now - self.window_size_ms:
            return None
        return state

    async def get_usage(self) -> RateLimitUsage:
        async with self._lock:
            now = self._clock()
            state = self._active_state(now=now)
            if state is None:
                return RateLimitUsage(
                    current_usage=0,
                    current_requests=0,
                    remaining_tokens=self.max_tokens,
                    remaining_requests=self.max_requests,
                    reset_time=now + self.window_size_ms,
                )
            return RateLimitUsage(
                current_usage=state.total_tokens,
                current_requests=state.total_requests,
                remaining_tokens=max(0, self.max_tokens - state.total_tokens),
                remaining_requests=max(0, self.max_requests - state.total_requests),
                reset_time=state.window_start + self.window_size_ms,
            )

    async def would_exceed_limit(self, *, tokens: int) -> bool:
        async with self._lock:
            state = self._active_state(now=self._clock())
            if state is None:
                return False
            return (
                state.total_tokens + tokens > self.max_tokens
                or state.total_requests + 1 > self.max_requests
            )

    async def record_usage(self, *, tokens: int) -> None:
        async with self._lock:
            now = self._clock()
            state = self._active_state(now=now)
            if state is None:
                self._state = _WindowState(window_start=now, total_tokens=tokens, total_requests=1)
            else:
                state.total_tokens += tokens
                state.total_requests += 1
        log.debug(
            event="Recorded rate limiter usage",
            service=self.service_name,
            tokens=tokens,
        )

    async def reset_usage(self) -> None:
        async with self._lock:
            self._state = None


def build_rate_limiters(
    configs: t.Mapping[str, RateLimitConfig],
    *,
    clock: Clock = _monotonic_ms,
) -> dict[str, RateLimiter]:
    """
    Instantiate one limiter per model key.

    Parameters
    ----------
    configs : typing.Mapping[str, RateLimitConfig]
        Model name to limiter configuration.
    clock : Clock, optional
        Millisecond clock shared by the limiters.

    Returns
    -------
    dict[str, RateLimiter]
        Model name to limiter.
    """
    return {
        model: RateLimiter.from_config(config, clock=clock) for model, config in configs.items()
    }

"""Debounce and throttle state machines.

Both limiters wrap a zero-argument callback and are driven by a
:class:`Clock`, so tests can substitute a manual clock for the event loop.

Debounce::

    IDLE --trigger--> SCHEDULED --trigger (cancel + reschedule)--> SCHEDULED
    SCHEDULED --delay elapsed (run)--> IDLE

Throttle::

    READY --trigger (run now)--> COOLING_DOWN
    COOLING_DOWN --trigger--> COOLING_DOWN (one trailing run pending)
    COOLING_DOWN --window elapsed--> run trailing, if any, and stay in the
    window it opens; otherwise READY
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from pypersist._constants import DEFAULT_ADAPTER_RATE_LIMITS
from pypersist.config import Bucket, RateLimit


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Time source and timer scheduler (seconds)."""

    def monotonic(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopClock:
    """:class:`Clock` backed by the running asyncio event loop."""

    def monotonic(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class RateLimitMode(StrEnum):
    IMMEDIATE = "immediate"
    DEBOUNCE = "debounce"
    THROTTLE = "throttle"


@dataclass(frozen=True)
class ResolvedRateLimit:
    mode: RateLimitMode
    delay_ms: float = 0.0

    @property
    def delay_s(self) -> float:
        return self.delay_ms / 1000.0


IMMEDIATE = ResolvedRateLimit(RateLimitMode.IMMEDIATE)


def _limit(mode: RateLimitMode, delay_ms: float) -> ResolvedRateLimit:
    if delay_ms <= 0:
        return IMMEDIATE
    return ResolvedRateLimit(mode, float(delay_ms))


def resolve_rate_limit(bucket: Bucket, global_rate_limit: RateLimit | None = None) -> ResolvedRateLimit:
    """Pick the effective limiter for *bucket*.

    The first explicitly set value wins, in this order: bucket throttle,
    bucket debounce, global throttle, global debounce, adapter-kind default.
    A value of zero or less means immediate persistence.
    """
    candidates: list[tuple[RateLimitMode, float | None]] = []
    for limit in (bucket.rate_limit, global_rate_limit):
        if limit is not None:
            candidates.append((RateLimitMode.THROTTLE, limit.throttle_ms))
            candidates.append((RateLimitMode.DEBOUNCE, limit.debounce_ms))
    for mode, delay_ms in candidates:
        if delay_ms is not None:
            return _limit(mode, delay_ms)

    default = DEFAULT_ADAPTER_RATE_LIMITS.get(bucket.adapter_kind or "")
    if default is not None:
        mode_name, delay_ms = default
        return _limit(RateLimitMode(mode_name), delay_ms)
    return IMMEDIATE


class DebounceState(StrEnum):
    IDLE = "idle"
    SCHEDULED = "scheduled"


class Debouncer:
    """Run *callback* once, *delay* seconds after the last trigger."""

    def __init__(self, callback: Callable[[], None], delay: float, *, clock: Clock | None = None) -> None:
        self._callback = callback
        self._delay = delay
        self._clock = clock or LoopClock()
        self._handle: TimerHandle | None = None

    @property
    def state(self) -> DebounceState:
        return DebounceState.IDLE if self._handle is None else DebounceState.SCHEDULED

    def __call__(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._clock.call_later(self._delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class ThrottleState(StrEnum):
    READY = "ready"
    COOLING_DOWN = "cooling_down"


class Throttler:
    """Run *callback* at most once per *delay* seconds.

    The first trigger of a window runs immediately; any number of triggers
    inside the window collapse into one trailing run at the window boundary.
    """

    def __init__(self, callback: Callable[[], None], delay: float, *, clock: Clock | None = None) -> None:
        self._callback = callback
        self._delay = delay
        self._clock = clock or LoopClock()
        self._last_run: float | None = None
        self._handle: TimerHandle | None = None

    @property
    def state(self) -> ThrottleState:
        if self._handle is not None:
            return ThrottleState.COOLING_DOWN
        if self._last_run is not None and self._clock.monotonic() - self._last_run < self._delay:
            return ThrottleState.COOLING_DOWN
        return ThrottleState.READY

    def __call__(self) -> None:
        if self._handle is not None:
            return
        now = self._clock.monotonic()
        if self._last_run is None or now - self._last_run >= self._delay:
            self._last_run = now
            self._callback()
            return
        remaining = self._delay - (now - self._last_run)
        self._handle = self._clock.call_later(remaining, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._last_run = self._clock.monotonic()
        self._callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


def create_limiter(
    callback: Callable[[], None],
    limit: ResolvedRateLimit,
    *,
    clock: Clock | None = None,
) -> Callable[[], None]:
    """Wrap *callback* according to *limit*; immediate limits return it unchanged."""
    if limit.mode is RateLimitMode.THROTTLE:
        return Throttler(callback, limit.delay_s, clock=clock)
    if limit.mode is RateLimitMode.DEBOUNCE:
        return Debouncer(callback, limit.delay_s, clock=clock)
    return callback

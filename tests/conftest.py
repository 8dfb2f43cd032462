from __future__ import annotations

from collections.abc import Callable

import pytest

from pypersist.adapters import MemoryBackend


class _FakeTimer:
    def __init__(self, clock: FakeClock, due: float, callback: Callable[[], None]) -> None:
        self._clock = clock
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock:
    """Manually advanced clock; timers fire synchronously inside :meth:`advance`."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[_FakeTimer] = []

    def monotonic(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _FakeTimer:
        timer = _FakeTimer(self, self.now + delay, callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self._timers.remove(timer)
            self.now = max(self.now, timer.due)
            timer.callback()
        self._timers = [t for t in self._timers if not t.cancelled]
        self.now = target


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_memory_backends() -> None:
    MemoryBackend.reset_named()

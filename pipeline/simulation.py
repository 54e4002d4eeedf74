"""
Deterministic stand-ins for time, timers and a flaky provider.

Used by the demo to play through hours of retry backoff in an instant, and by
the test suite for the same reason.
"""

from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from shared.channels import EmailChannel
from shared.models import SendReceipt


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: Optional[timedelta] = None, **kwargs) -> datetime:
        self.now = self.now + (delta or timedelta(**kwargs))
        return self.now


class ManualTimer:
    """Timer with the start()/cancel() surface of threading.Timer."""

    def __init__(self, due_at: datetime, function: Callable[[], None]):
        self.due_at = due_at
        self.function = function
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def pending(self) -> bool:
        return self.started and not self.cancelled and not self.fired

    def fire(self) -> None:
        if self.pending:
            self.fired = True
            self.function()


class ManualTimers:
    """
    Timer factory driven by a ManualClock.

    Pass an instance wherever a threading.Timer factory is expected, then
    call fire_due() after advancing the clock.
    """

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.timers: list[ManualTimer] = []

    def __call__(self, interval: float, function: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.clock() + timedelta(seconds=interval), function)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[ManualTimer]:
        return [t for t in self.timers if t.pending]

    def fire_due(self) -> int:
        """Fire every pending timer whose due time has passed."""
        due = [t for t in self.pending() if t.due_at <= self.clock()]
        for timer in due:
            timer.fire()
        return len(due)


class ScriptedChannel(EmailChannel):
    """
    Email channel whose failures are scripted per destination.

    Example:
        channel = ScriptedChannel()
        channel.fail_next("a@b.com", TransientChannelError("timeout"), times=2)
        channel.always_fail("c@d.com", TransientChannelError("rate limit"))
    """

    def __init__(self):
        super().__init__(fail_rate=0.0)
        self.calls: list[str] = []
        self._scripted: dict[str, deque[Exception]] = defaultdict(deque)
        self._always: dict[str, Exception] = {}

    def fail_next(self, to: str, error: Exception, times: int = 1) -> None:
        self._scripted[to].extend([error] * times)

    def always_fail(self, to: str, error: Exception) -> None:
        self._always[to] = error

    def send(self, to: str, subject: str, body: str) -> SendReceipt:
        self.calls.append(to)
        if to in self._always:
            raise self._always[to]
        if self._scripted[to]:
            raise self._scripted[to].popleft()
        return super().send(to, subject, body)

    def call_count(self, to: Optional[str] = None) -> int:
        if to is None:
            return len(self.calls)
        return sum(1 for c in self.calls if c == to)

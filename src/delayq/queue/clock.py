from datetime import datetime, timedelta, timezone

from delayq.queue.models import as_utc


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """
    Wall clock in UTC, truncated to milliseconds. Document stores keep
    timestamps at millisecond resolution, so a heartbeat written with more
    precision would never compare equal after a round trip.
    """
    def now(self) -> datetime:
        now = datetime.now(timezone.utc)
        return now.replace(microsecond=now.microsecond // 1000 * 1000)


class ManualClock(Clock):
    """A clock that only moves when told to. Handy for tests."""
    def __init__(self, start: datetime = None):
        self._now = as_utc(start) if start else SystemClock().now()

    def now(self) -> datetime:
        return self._now

    def set(self, instant: datetime):
        self._now = as_utc(instant)

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now

import datetime as dt

# Monday; the clinic runs on America/New_York, which is on EDT (UTC-4) by then.
APPOINTMENT_DATE = dt.date(2026, 3, 16)
START_OF_TEST = dt.datetime(2026, 3, 10, 12, 0, tzinfo=dt.timezone.utc)

# Reminder trigger times for a 10:00 local appointment on APPOINTMENT_DATE.
DAY_BEFORE = dt.datetime(2026, 3, 15, 14, 0, tzinfo=dt.timezone.utc)
TWO_HOURS_BEFORE = dt.datetime(2026, 3, 16, 12, 0, tzinfo=dt.timezone.utc)


class FrozenClock:
    """A settable stand-in for ``utcnow``."""

    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> dt.datetime:
        self.now += dt.timedelta(**kwargs)
        return self.now

from datetime import datetime, timedelta, timezone


class FrozenClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2030, 1, 7, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.replace(tzinfo=timezone.utc).timestamp()

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

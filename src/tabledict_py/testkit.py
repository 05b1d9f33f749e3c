from __future__ import annotations

from datetime import UTC, datetime, timedelta

from .memory import MemoryRowStore
from .mocks import ANY, FakeDynamoDBClient, FakeTableClient, FakeTableEntity


class FakeClock:
    """Manually advanced clock returning epoch seconds, for ``TableDictionary(now=...)``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float | timedelta) -> None:
        if isinstance(seconds, timedelta):
            seconds = seconds.total_seconds()
        if seconds < 0:
            raise ValueError("seconds must be >= 0")
        self._now += seconds

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self._now, UTC)


def memory_store(clock: FakeClock | None = None, *, table_name: str = "memory") -> MemoryRowStore:
    if clock is None:
        return MemoryRowStore(table_name)
    return MemoryRowStore(table_name, now=clock.datetime)


def no_sleep(_: float) -> None:
    return None


__all__ = [
    "ANY",
    "FakeClock",
    "FakeDynamoDBClient",
    "FakeTableClient",
    "FakeTableEntity",
    "memory_store",
    "no_sleep",
]

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, field_validator


class Clock(ABC):
    """Source of timezone-aware timestamps for records and server rows."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ClockReading(BaseModel, frozen=True):
    now: datetime

    @field_validator("now")
    @classmethod
    def now_must_be_timezone_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("Clock value must be timezone-aware")
        return value.astimezone(timezone.utc)


class ManualClock(Clock):
    """A clock that only moves when told to. Each reading advances by `step`."""

    def __init__(self, start: datetime, step: timedelta = timedelta(milliseconds=1)) -> None:
        self._current = ClockReading(now=start).now
        self._step = step

    def now(self) -> datetime:
        value = self._current
        self._current = value + self._step
        return value

    def advance(self, delta: timedelta) -> None:
        self._current = self._current + delta

    def peek(self) -> datetime:
        return self._current

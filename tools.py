import math
import datetime
import functools


class MathTools:
    """Provides small numeric helpers shared by the services."""

    @staticmethod
    def clamp(value: float, min_value: float, max_value: float) -> float:
        """Clamp ``value`` to the inclusive range [min_value, max_value]."""
        if min_value > max_value:
            raise ValueError("min_value must not exceed max_value")
        return max(min_value, min(value, max_value))

    @staticmethod
    def round_half_up(value: float) -> int:
        """Round to the nearest integer, halves away from zero for positives."""
        return int(math.floor(value + 0.5))

    @staticmethod
    def elapsed_seconds(start: datetime.datetime, end: datetime.datetime) -> int:
        """Return whole seconds between ``start`` and ``end``, truncated down."""
        return math.floor((end - start).total_seconds())


class TimeTools:
    """Calendar helpers working on naive local datetimes."""

    @staticmethod
    def start_of_day(moment: datetime.datetime) -> datetime.datetime:
        return datetime.datetime.combine(moment.date(), datetime.time.min)

    @staticmethod
    def as_datetime(value: datetime.date | datetime.datetime) -> datetime.datetime:
        """Return ``value`` as a datetime, dates map to midnight."""
        if isinstance(value, datetime.datetime):
            return value
        return datetime.datetime.combine(value, datetime.time.min)

    @staticmethod
    def as_date(value: datetime.date | datetime.datetime | str) -> datetime.date:
        if isinstance(value, datetime.datetime):
            return value.date()
        if isinstance(value, datetime.date):
            return value
        return datetime.date.fromisoformat(str(value)[:10])

    @staticmethod
    def parse_time(text: str) -> tuple[int, int]:
        """Return ``(hours, minutes)`` for an ``HH:MM`` string."""
        hours, minutes = text.split(":")
        return int(hours), int(minutes)

    @classmethod
    def combine(cls, day: datetime.date, text: str) -> datetime.datetime:
        hours, minutes = cls.parse_time(text)
        return datetime.datetime.combine(day, datetime.time(hours, minutes))


def synchronized(method):
    """Run ``method`` while holding the instance's ``lock``."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self.lock:
            return method(self, *args, **kwargs)

    return wrapper

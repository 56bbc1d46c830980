from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import List, NamedTuple, Union

DateLike = Union[date, datetime, str]


class DateRange(NamedTuple):
    start: date
    end: date

    def as_dict(self) -> dict:
        return {"from": self.start.isoformat(), "to": self.end.isoformat()}


def coerce_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10])
    raise TypeError(f"Unsupported date value: {value!r}")


def chunk_date_range(start: DateLike, end: DateLike, max_days: int = 30) -> List[DateRange]:
    """
    Split [start, end] into ascending, contiguous, non-overlapping ranges.

    Both boundaries of every range are inclusive and each range spans at most
    `max_days` calendar days; the last range ends exactly on `end`.
    """
    if max_days < 1:
        raise ValueError("max_days must be >= 1")
    cur = coerce_date(start)
    last = coerce_date(end)
    chunks: List[DateRange] = []
    while cur <= last:
        chunk_end = min(cur + timedelta(days=max_days - 1), last)
        chunks.append(DateRange(cur, chunk_end))
        cur = chunk_end + timedelta(days=1)
    return chunks

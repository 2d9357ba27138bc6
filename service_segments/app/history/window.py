"""
Month-granularity date windows for history reports.
"""

import re
from datetime import datetime, timezone

from shared.errors import InvalidArgumentError

from ..models import DateWindow

MONTH_PATTERN = re.compile(r"([0-9]{4})-([0-9]{1,2})")


def _month_start(text: str, field: str) -> datetime:
    match = MONTH_PATTERN.fullmatch(text) if isinstance(text, str) else None
    if match is None:
        raise InvalidArgumentError(
            "error validating dates range. The format is yyyy-mm or yyyy-m",
            details={field: text}
        )
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12 or year < 1:
        raise InvalidArgumentError("month out of range", details={field: text})
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1)
    return moment.replace(month=moment.month + 1)


def parse_date_window(start_text: str, end_text: str) -> DateWindow:
    """Window covering the whole months from ``start_text`` through ``end_text``.

    "2024-1", "2024-03" -> [2024-01-01T00:00Z, 2024-04-01T00:00Z)
    """
    start = _month_start(start_text, "start_date")
    try:
        end = _next_month(_month_start(end_text, "end_date"))
    except ValueError as e:
        raise InvalidArgumentError("month out of range", details={"end_date": end_text}) from e
    if start >= end:
        raise InvalidArgumentError(
            "start month is after end month",
            details={"start_date": start_text, "end_date": end_text}
        )
    return DateWindow(start=start, end=end)

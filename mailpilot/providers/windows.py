"""Named time windows shared by provider queries and the importance classifier."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from mailpilot.errors import InvalidTimeRange

#: Rolling windows, by name.
ROLLING_WINDOWS: dict[str, timedelta] = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}

_DAY_PATTERN = re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$")


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[after, before)``; either bound may be open."""

    after: datetime | None = None
    before: datetime | None = None

    def contains(self, moment: datetime | None) -> bool:
        if moment is None:
            return False
        if self.after is not None and moment < self.after:
            return False
        if self.before is not None and moment >= self.before:
            return False
        return True


def resolve_window(time_range: str | None, now: datetime | None = None) -> TimeWindow | None:
    """Translate a time-range name into a concrete window.

    Returns None for no restriction (``None`` or ``"all"``).

    Raises:
        InvalidTimeRange: for anything other than all/daily/weekly/monthly
            or a single day written ``YYYY/MM/DD``.
    """
    if time_range is None or time_range == "all":
        return None
    current = now or datetime.now(timezone.utc)
    if time_range in ROLLING_WINDOWS:
        return TimeWindow(after=current - ROLLING_WINDOWS[time_range])
    match = _DAY_PATTERN.match(time_range)
    if match:
        year, month, day = (int(part) for part in match.groups())
        try:
            start = datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError as exc:
            raise InvalidTimeRange(time_range) from exc
        return TimeWindow(after=start, before=start + timedelta(days=1))
    raise InvalidTimeRange(time_range)

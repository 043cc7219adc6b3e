"""Time source shared by the coupon and order lookup services."""

from datetime import datetime, timezone


class Clock:
    """Wall clock returning timezone-aware UTC datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


system_clock = Clock()

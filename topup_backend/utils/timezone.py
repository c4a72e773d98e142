from datetime import datetime, timezone as dt_timezone

class TimeZone:
    """UTC clock used for every persisted timestamp."""

    def __init__(self) -> None:
        self.tz_info = dt_timezone.utc

    def now(self) -> datetime:
        """Current time in UTC"""
        return datetime.now(self.tz_info)

    def from_datetime(self, t: datetime) -> datetime:
        """Convert a datetime to UTC, treating naive values as UTC"""
        if t.tzinfo is None:
            return t.replace(tzinfo=self.tz_info)
        return t.astimezone(self.tz_info)


timezone = TimeZone()

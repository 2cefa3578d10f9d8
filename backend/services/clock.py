"""
Reference clock - "today" and "current hour" in a fixed timezone.

The run-hour gate and the daily-cap bucketing must not depend on the
deployment region, so every date computation in the discovery pipeline
goes through this clock instead of the process-local time.
"""

from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from config import settings


class ReferenceClock:
    def __init__(
        self,
        timezone_name: Optional[str] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.timezone_name = timezone_name or settings.DISCOVERY_TIMEZONE
        self._tz = ZoneInfo(self.timezone_name)
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        """Current instant as an aware datetime in the reference timezone."""
        current = self._now_fn()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current.astimezone(self._tz)

    def current_hour(self) -> int:
        return self.now().hour

    def today(self) -> str:
        """Calendar date key, e.g. "2026-02-08"."""
        return self.now().strftime("%Y-%m-%d")

    def is_past(self, moment: datetime) -> bool:
        """True if `moment` is earlier than now. Naive datetimes are read as UTC."""
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return self.now() > moment

from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple


def day_range(start: Optional[date], end: Optional[date]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Inclusive calendar days -> [start 00:00, day after end 00:00)."""
    lo = datetime.combine(start, time.min) if start else None
    hi = datetime.combine(end + timedelta(days=1), time.min) if end else None
    return lo, hi

from datetime import datetime, timezone
from typing import Any, Optional

# All persisted timestamps are naive UTC (SQLite drops tzinfo; Postgres columns
# are declared without time zone).


def from_epoch_ms(ms: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(ms) / 1000.0, tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def from_epoch_seconds(ts: Any) -> Optional[datetime]:
    if not ts:
        return None
    return from_epoch_ms(int(ts) * 1000)


def day_key(now: datetime) -> str:
    """YYYY-MM-DD in UTC."""
    return now.strftime("%Y-%m-%d")


def month_key(now: datetime) -> str:
    """YYYY-MM in UTC."""
    return now.strftime("%Y-%m")


def parse_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None

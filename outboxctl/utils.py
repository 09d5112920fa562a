import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")

# Fixed width so that string comparison in SQL matches time order.
TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValueError("delay must be > 0 seconds")
    return total


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_ts(dt: datetime) -> str:
    """Render a datetime as '2025-11-06T09:12:34.123456Z'."""
    return ensure_utc(dt).strftime(TS_FORMAT)


def parse_ts(value: str) -> datetime:
    """Inverse of format_ts; also accepts plain ISO strings with or without 'Z'."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def now_iso(now: Optional[datetime] = None) -> str:
    return format_ts(now or utcnow())


def iso_from_seconds_from(now: Optional[datetime], seconds: float) -> str:
    """UTC timestamp `seconds` after `now` (default: current time)."""
    return format_ts((now or utcnow()) + timedelta(seconds=seconds))


def backoff_delay(base_delay: float, attempts: int) -> float:
    """Delay before the next try after `attempts` failures: base * 2^(attempts-1)."""
    return base_delay * (2 ** max(attempts - 1, 0))


def dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, default=str)


def loads_object(raw: Optional[str]) -> dict:
    """Decode a JSON column; anything that is not a JSON object becomes {}."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}

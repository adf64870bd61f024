from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional, Union

UNKNOWN_SIZE = "unknown"
NOT_AVAILABLE = "N/A"

_FRACTION_RE = re.compile(r"\.(\d+)")
_KREWS_DATE_FORMAT = "%d %b %Y, %H:%M:%S"


def parse_size_gb(size: Union[str, float, int, None]) -> Optional[float]:
    """Parse "8.2G" / "44GB" / 44.0 into gigabytes; None when unparsable."""
    if size is None or isinstance(size, bool):
        return None
    if isinstance(size, (int, float)):
        return float(size) if size >= 0 else None
    if not isinstance(size, str):
        return None

    text = size.strip().upper()
    if text.endswith("GB"):
        text = text[:-2]
    elif text.endswith("G"):
        text = text[:-1]
    else:
        return None
    try:
        value = float(text)
    except ValueError:
        return None
    if value < 0:
        return None
    return value


def sum_sizes(*sizes: Union[str, float, int, None]) -> str:
    """
    Sum per-asset sizes into one display total.

    "8.2G" + "44.0G" -> "52.20G". Any unparsable component makes the whole
    total "unknown".
    """
    if not sizes:
        return UNKNOWN_SIZE
    total = 0.0
    for size in sizes:
        value = parse_size_gb(size)
        if value is None:
            return UNKNOWN_SIZE
        total += value
    return f"{total:.2f}G"


def parse_iso_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp with up to nanosecond precision.

    Fractions beyond microseconds are truncated. Naive values are read as UTC.
    """
    if not raw or not isinstance(raw, str):
        return None
    text = raw.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_catalog_date(raw: Optional[str]) -> Optional[datetime]:
    """Parse dates like "26 Dec 2024, 18:17:50" (UTC)."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = datetime.strptime(raw.strip(), _KREWS_DATE_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def format_age(timestamp: Optional[datetime], now: Optional[datetime] = None) -> str:
    if timestamp is None:
        return NOT_AVAILABLE
    if now is None:
        now = datetime.now(timezone.utc)
    delta = now - timestamp
    seconds = delta.total_seconds()
    if seconds < 0:
        return NOT_AVAILABLE

    hours = int(seconds // 3600)
    minutes = int(seconds // 60) % 60
    if hours == 0 and minutes == 0:
        return "just now"
    if hours == 0:
        return f"{minutes}m ago"
    return f"{hours}h {minutes}m ago"

import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, Union

EMPLOYMENT_TYPES = {"full-time", "part-time", "contract", "intern", "temporary"}

_EMPLOYMENT_ALIASES = {
    "fulltime": "full-time",
    "parttime": "part-time",
    "internship": "intern",
    "temp": "temporary",
    "contractor": "contract",
}


def normalize_location(location: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Return (trimmed location, location type) where type is remote, hybrid or onsite."""
    if not location:
        return None, None

    lowered = location.lower()
    if "remote" in lowered:
        location_type = "remote"
    elif "hybrid" in lowered:
        location_type = "hybrid"
    elif location.strip():
        location_type = "onsite"
    else:
        location_type = None

    return location.strip() or None, location_type


def generate_external_id(platform: str, *parts: Union[str, int, None]) -> str:
    valid = [str(p) for p in parts if p is not None]
    return "-".join([platform, *valid])


def parse_employment_type(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = re.sub(r"[_\s]+", "-", value.strip().lower())
    normalized = _EMPLOYMENT_ALIASES.get(normalized, normalized)
    return normalized if normalized in EMPLOYMENT_TYPES else None


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def from_timestamp(value: Optional[Union[int, float]], millis: bool = False) -> Optional[datetime]:
    if value is None:
        return None
    try:
        seconds = float(value) / 1000 if millis else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


_RELATIVE_DAYS = re.compile(r"(\d+)\+?\s*days?\s*ago", re.IGNORECASE)


def parse_relative_posted_date(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse strings like "Posted Today", "Posted Yesterday", "Posted 30+ Days Ago"
    or an absolute date, relative to ``now`` (naive UTC).
    """
    if not value:
        return None
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)

    absolute = parse_iso_datetime(value.strip())
    if absolute:
        return absolute

    text = re.sub(r"^posted\s+(on\s+)?", "", value.strip(), flags=re.IGNORECASE).strip()
    absolute = parse_iso_datetime(text)
    if absolute:
        return absolute

    lowered = text.lower()
    if lowered == "today":
        return now
    if lowered == "yesterday":
        return now - timedelta(days=1)

    match = _RELATIVE_DAYS.search(text)
    if match:
        return now - timedelta(days=int(match.group(1)))
    return None

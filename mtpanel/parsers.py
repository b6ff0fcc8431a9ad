import json
import re

# RouterOS durations: "29d23h59m58s", "1w2d", "5m", or a clock tail as in "1d02:03:04".
_DURATION_RE = re.compile(
    r"^(?:(?P<w>\d+)w)?(?:(?P<d>\d+)d)?"
    r"(?:(?P<clock>\d{1,2}:\d{2}:\d{2})|(?:(?P<h>\d+)h)?(?:(?P<m>\d+)m)?(?:(?P<s>\d+)s)?)$",
    re.IGNORECASE,
)

_UNIT_SECONDS = {"w": 604800, "d": 86400, "h": 3600, "m": 60, "s": 1}

_TRUE_VALUES = ("1", "true", "yes", "on", "enabled")


def parse_duration(value):
    """Return the total seconds in a RouterOS duration string.

    None, blank and malformed strings give None, which callers treat as
    "no data". A well-formed zero ("0s") gives 0.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    match = _DURATION_RE.match(text)
    if not match:
        return None
    parts = match.groupdict()
    if not any(parts.values()):
        return None
    total = 0
    for unit, factor in _UNIT_SECONDS.items():
        if parts.get(unit):
            total += int(parts[unit]) * factor
    if parts.get("clock"):
        hours, minutes, seconds = (int(p) for p in parts["clock"].split(":"))
        total += hours * 3600 + minutes * 60 + seconds
    return total


def parse_client_comment(comment):
    if not comment:
        return None
    try:
        data = json.loads(comment)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    return data


def extract_due_date(comment):
    data = parse_client_comment(comment)
    if not data:
        return None
    due_datetime = data.get("dueDateTime")
    if due_datetime:
        return str(due_datetime)
    due_date = data.get("dueDate")
    if due_date:
        return f"{due_date}T23:59"
    return None


def parse_routeros_bool(value):
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("true", "yes")


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def parse_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default

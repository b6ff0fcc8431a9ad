from datetime import datetime, timedelta, timezone

from ..notifications import parse_timestamp


def same_event(existing, candidate):
    """True when both notifications describe the same event.

    Generated notifications carry a dedup key; rows without one (older rows,
    chat messages) fall back to comparing message text.
    """
    existing_key = existing.get("dedup_key")
    candidate_key = candidate.get("dedup_key")
    if existing_key and candidate_key:
        return existing_key == candidate_key
    return existing.get("message") == candidate.get("message")


def is_duplicate(existing, candidate):
    return any(same_event(n, candidate) and n.get("is_read") == 0 for n in existing)


def is_recent(existing, candidate, debounce_minutes, now=None):
    now = now or datetime.now(timezone.utc)
    window = timedelta(minutes=debounce_minutes)
    for n in existing:
        if not same_event(n, candidate):
            continue
        created = parse_timestamp(n.get("timestamp"))
        if created is None:
            continue
        if now - created <= window:
            return True
    return False


def should_admit(existing, candidate, debounce_minutes, now=None):
    if is_duplicate(existing, candidate):
        return False
    return not is_recent(existing, candidate, debounce_minutes, now=now)

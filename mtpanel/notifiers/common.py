from datetime import datetime, timezone

from ..parsers import parse_int
from ..settings_defaults import NOTIFICATION_DEFAULTS
from .dedup import should_admit


def utc_now():
    return datetime.now(timezone.utc)


def debounce_minutes(settings):
    return parse_int((settings or {}).get("debounceMinutes"), NOTIFICATION_DEFAULTS["debounceMinutes"])


def near_expiry_hours(settings):
    return parse_int((settings or {}).get("dhcpNearExpiryHours"), NOTIFICATION_DEFAULTS["dhcpNearExpiryHours"])


def router_label(router):
    return router.get("name") or router.get("host") or router.get("id") or "router"


def offer(candidate, existing, settings, sink, telegram_flag, now):
    """Run a candidate through the dedup filter and deliver it when admitted.

    Delivered notifications join `existing` so later candidates in the same
    cycle are filtered against them.
    """
    if not should_admit(existing, candidate, debounce_minutes(settings), now=now):
        return False
    if not sink.deliver(candidate, telegram_flag=telegram_flag):
        return False
    existing.append(candidate)
    return True

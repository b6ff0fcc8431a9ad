import logging

from ..mikrotik import fetch_dhcp_clients
from ..notifications import make_dedup_key, new_notification
from ..parsers import extract_due_date, parse_duration
from ..settings_defaults import TELEGRAM_FLAGS
from .common import near_expiry_hours, offer, router_label, utc_now

logger = logging.getLogger(__name__)

EXPIRED = "expired"
EXPIRING = "expiring"


def classify(client, near_hours):
    """Return EXPIRED, EXPIRING or None for a DHCP portal client."""
    secs = parse_duration(client.get("timeout"))
    if secs is None:
        return None
    if secs <= 0:
        return EXPIRED
    if secs <= near_hours * 3600:
        return EXPIRING
    return None


def build_notification(router, client, status, near_hours, now):
    label = client.get("hostName") if client.get("hostName") not in (None, "", "N/A") else client.get("macAddress")
    name = router_label(router)
    context = {
        "routerId": router.get("id"),
        "macAddress": client.get("macAddress"),
        "address": client.get("address"),
    }
    if status == EXPIRED:
        message = f"DHCP portal client {label} has expired on {name}."
    else:
        message = f"DHCP portal client {label} expires soon (<{near_hours}h) on {name}."
        context["timeout"] = client.get("timeout")
    due = extract_due_date(client.get("comment"))
    if due:
        context["dueDateTime"] = due
    return new_notification(
        "info",
        message,
        link_to="dhcp-portal",
        context=context,
        dedup_key=make_dedup_key(f"dhcp-{status}", router.get("id"), client.get("macAddress") or label),
        now=now,
    )


def run(routers, existing, settings, sink, now=None):
    now = now or utc_now()
    near_hours = near_expiry_hours(settings)
    created = 0
    for router in routers:
        try:
            clients = fetch_dhcp_clients(router)
        except Exception as exc:
            logger.warning("DHCP portal fetch failed for router %s: %s", router_label(router), exc)
            continue
        for client in clients:
            status = classify(client, near_hours)
            if status is None:
                continue
            candidate = build_notification(router, client, status, near_hours, now)
            if offer(candidate, existing, settings, sink, TELEGRAM_FLAGS["dhcp_portal"], now):
                created += 1
    return created

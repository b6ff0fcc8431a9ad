import logging

from ..mikrotik import fetch_wan_routes, wan_failover_enabled
from ..notifications import make_dedup_key, new_notification
from ..parsers import parse_routeros_bool
from ..settings_defaults import TELEGRAM_FLAGS
from .common import offer, router_label, utc_now

logger = logging.getLogger(__name__)


def problem_reason(route):
    if parse_routeros_bool(route.get("disabled")):
        return "disabled"
    # Only an explicit "false" counts as down; routes without the field are left alone.
    if str(route.get("active", "")).strip().lower() == "false" or route.get("active") is False:
        return "down"
    return None


def run(routers, existing, settings, sink, now=None):
    now = now or utc_now()
    created = 0
    for router in routers:
        try:
            routes = fetch_wan_routes(router)
        except Exception as exc:
            logger.warning("Network check failed for router %s: %s", router_label(router), exc)
            continue
        failover = wan_failover_enabled(routes)
        for route in routes:
            reason = problem_reason(route)
            if reason is None:
                continue
            gateway = route.get("gateway") or "unknown"
            candidate = new_notification(
                "info",
                f"WAN route {gateway} is {reason} on {router_label(router)}.",
                link_to="network",
                context={"routerId": router.get("id"), "gateway": gateway, "failoverEnabled": failover},
                dedup_key=make_dedup_key(f"wan-{reason}", router.get("id"), gateway),
                now=now,
            )
            if offer(candidate, existing, settings, sink, TELEGRAM_FLAGS["network"], now):
                created += 1
    return created

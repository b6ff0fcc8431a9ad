import logging

from ..mikrotik import fetch_ppp_secrets
from ..notifications import make_dedup_key, new_notification
from ..parsers import parse_routeros_bool
from ..settings_defaults import TELEGRAM_FLAGS
from .common import offer, router_label, utc_now

logger = logging.getLogger(__name__)

EXPIRED_MARKERS = ("expired", "due:")


def is_expired(secret):
    if parse_routeros_bool(secret.get("disabled")):
        return True
    comment = (secret.get("comment") or "").lower()
    return any(marker in comment for marker in EXPIRED_MARKERS)


def build_notification(router, secret, now):
    name = secret.get("name") or ""
    return new_notification(
        "pppoe-expired",
        f"PPPoE user '{name}' is expired/disconnected on {router_label(router)}.",
        link_to="pppoe",
        context={"routerId": router.get("id"), "username": name},
        dedup_key=make_dedup_key("pppoe", router.get("id"), name),
        now=now,
    )


def run(routers, existing, settings, sink, now=None):
    now = now or utc_now()
    created = 0
    for router in routers:
        try:
            secrets = fetch_ppp_secrets(router)
        except Exception as exc:
            logger.warning("PPPoE fetch failed for router %s: %s", router_label(router), exc)
            continue
        for secret in secrets:
            if not secret.get("name") or not is_expired(secret):
                continue
            candidate = build_notification(router, secret, now)
            if offer(candidate, existing, settings, sink, TELEGRAM_FLAGS["pppoe"], now):
                created += 1
    return created

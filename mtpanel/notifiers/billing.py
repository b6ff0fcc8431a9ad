import logging
from datetime import timedelta

from ..mikrotik import fetch_dhcp_clients, fetch_ppp_secrets
from ..notifications import format_timestamp, make_dedup_key, new_notification, parse_timestamp
from ..settings_defaults import TELEGRAM_FLAGS
from .common import offer, router_label, utc_now

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(hours=24)


def recent_sales(sales, now):
    out = []
    for sale in sales:
        sold_at = parse_timestamp(sale.get("date"))
        if sold_at is None:
            continue
        if now - sold_at <= RECENT_WINDOW:
            out.append(sale)
    return out


def find_router(routers, sale):
    for router in routers:
        if sale.get("routerId") and router.get("id") == sale.get("routerId"):
            return router
        if sale.get("routerName") and router.get("name") == sale.get("routerName"):
            return router
    return None


class _RouterLookup:
    """Per-cycle cache of the PPPoE secrets and DHCP clients of each router."""

    def __init__(self):
        self.secrets = {}
        self.clients = {}

    def _load(self, cache, fetch, router, what):
        key = router.get("id")
        if key not in cache:
            try:
                cache[key] = fetch(router)
            except Exception as exc:
                logger.debug("Billed lookup of %s failed for router %s: %s", what, router_label(router), exc)
                cache[key] = []
        return cache[key]

    def link_for(self, router, client_name):
        secrets = self._load(self.secrets, fetch_ppp_secrets, router, "PPPoE secrets")
        if any(secret.get("name") == client_name for secret in secrets):
            return "pppoe"
        clients = self._load(self.clients, fetch_dhcp_clients, router, "DHCP clients")
        for client in clients:
            if (client.get("customerInfo") or "").strip() == client_name:
                return "dhcp-portal"
            if (client.get("hostName") or "").strip() == client_name:
                return "dhcp-portal"
        return "billing"


def run(routers, existing, settings, sink, sales=None, now=None):
    now = now or utc_now()
    if sales is None:
        try:
            sales = sink.store.list_sales_records(since_iso=format_timestamp(now - RECENT_WINDOW))
        except Exception as exc:
            logger.warning("Failed to load sales records for billed notifications: %s", exc)
            return 0
    lookup = _RouterLookup()
    created = 0
    for sale in recent_sales(sales, now):
        router = find_router(routers, sale)
        client_name = (sale.get("clientName") or "").strip()
        if router is None or not client_name:
            continue
        link = lookup.link_for(router, client_name)
        candidate = new_notification(
            "info",
            f"Client {client_name} billed for '{sale.get('planName')}' on {router_label(router)}.",
            link_to=link,
            context={"routerId": router.get("id"), "clientName": client_name, "saleId": sale.get("id")},
            dedup_key=make_dedup_key("billed", router.get("id"), sale.get("id") or client_name),
            now=now,
        )
        if offer(candidate, existing, settings, sink, TELEGRAM_FLAGS["billing"], now):
            created += 1
    return created

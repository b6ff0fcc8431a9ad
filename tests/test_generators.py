"""Tests for the PPPoE, DHCP portal, network and billed generators."""

import json
from datetime import timedelta

import pytest

from mtpanel.notifications import format_timestamp
from mtpanel.notifiers import billing, dhcp_portal, network, pppoe
from mtpanel.notifiers.sink import DeliverySink
from tests.conftest import NOW, ROUTER_A, ROUTER_B, MemoryStore, RecordingSend, make_notification

SETTINGS = {"debounceMinutes": 15, "dhcpNearExpiryHours": 24}


def per_router(mapping):
    """Fake fetcher: returns mapping[router id] or raises it when it is an exception."""

    def fetch(router):
        value = mapping[router["id"]]
        if isinstance(value, Exception):
            raise value
        return value

    return fetch


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def sink(store):
    return DeliverySink(store, {})


class TestPppoeGenerator:

    def test_failing_router_does_not_stop_others(self, monkeypatch, store, sink):
        monkeypatch.setattr(
            pppoe,
            "fetch_ppp_secrets",
            per_router({"r-a": ConnectionError("timed out"), "r-b": [{"id": "*1", "name": "alice", "disabled": "true", "comment": ""}]}),
        )
        created = pppoe.run([ROUTER_A, ROUTER_B], [], SETTINGS, sink, now=NOW)

        assert created == 1
        assert len(store.notifications) == 1
        notif = store.notifications[0]
        assert notif["link_to"] == "pppoe"
        assert notif["type"] == "pppoe-expired"
        assert notif["message"] == "PPPoE user 'alice' is expired/disconnected on Core-B."
        assert json.loads(notif["context_json"]) == {"routerId": "r-b", "username": "alice"}
        assert notif["is_read"] == 0

    @pytest.mark.parametrize(
        "secret, expired",
        [
            ({"name": "a", "disabled": "true", "comment": ""}, True),
            ({"name": "a", "disabled": "false", "comment": "Account EXPIRED"}, True),
            ({"name": "a", "disabled": "false", "comment": "Due: 2026-03-01"}, True),
            ({"name": "a", "disabled": "false", "comment": "vip client"}, False),
            ({"name": "a", "disabled": "false"}, False),
        ],
    )
    def test_expiry_predicate(self, secret, expired):
        assert pppoe.is_expired(secret) is expired

    def test_second_record_with_same_name_deduplicated_in_cycle(self, monkeypatch, store, sink):
        secrets = [{"name": "bob", "disabled": "true"}, {"name": "bob", "comment": "expired"}]
        monkeypatch.setattr(pppoe, "fetch_ppp_secrets", per_router({"r-a": secrets}))
        existing = []
        assert pppoe.run([ROUTER_A], existing, SETTINGS, sink, now=NOW) == 1
        assert len(existing) == 1

    def test_existing_unread_blocks_repeat(self, monkeypatch, store, sink):
        monkeypatch.setattr(pppoe, "fetch_ppp_secrets", per_router({"r-a": [{"name": "bob", "disabled": "true"}]}))
        existing = []
        pppoe.run([ROUTER_A], existing, SETTINGS, sink, now=NOW)
        later = NOW + timedelta(hours=5)
        assert pppoe.run([ROUTER_A], existing, SETTINGS, sink, now=later) == 0
        assert len(store.notifications) == 1

    def test_telegram_relay_uses_disconnected_flag(self, monkeypatch, store):
        send = RecordingSend()
        telegram = {"enabled": True, "botToken": "t", "chatId": "c", "enableClientDisconnected": True}
        monkeypatch.setattr(pppoe, "fetch_ppp_secrets", per_router({"r-a": [{"name": "bob", "disabled": "true"}]}))
        pppoe.run([ROUTER_A], [], SETTINGS, DeliverySink(store, telegram, send=send), now=NOW)
        assert len(send.sent) == 1
        assert send.sent[0]["text"] == "PPPoE user 'bob' is expired/disconnected on Core-A."


class TestDhcpPortalGenerator:

    def _client(self, timeout, host="laptop", mac="AA:BB:CC:00:00:01", comment=""):
        return {"status": "active", "address": "10.5.0.10", "macAddress": mac, "hostName": host, "timeout": timeout, "comment": comment}

    @pytest.mark.parametrize(
        "timeout, expected",
        [
            ("24h", dhcp_portal.EXPIRING),
            ("1d", dhcp_portal.EXPIRING),
            ("1d1s", None),
            ("0s", dhcp_portal.EXPIRED),
            ("5m", dhcp_portal.EXPIRING),
            ("garbage", None),
            (None, None),
        ],
    )
    def test_near_expiry_boundary(self, timeout, expected):
        assert dhcp_portal.classify(self._client(timeout), 24) == expected

    def test_expired_message(self, monkeypatch, store, sink):
        monkeypatch.setattr(dhcp_portal, "fetch_dhcp_clients", per_router({"r-a": [self._client("0s")]}))
        assert dhcp_portal.run([ROUTER_A], [], SETTINGS, sink, now=NOW) == 1
        notif = store.notifications[0]
        assert notif["message"] == "DHCP portal client laptop has expired on Core-A."
        assert notif["link_to"] == "dhcp-portal"
        assert notif["type"] == "info"

    def test_expiring_message_uses_threshold_and_mac_fallback(self, monkeypatch, store, sink):
        client = self._client("2h", host="N/A", comment='{"dueDateTime": "2026-03-01T14:00"}')
        monkeypatch.setattr(dhcp_portal, "fetch_dhcp_clients", per_router({"r-a": [client]}))
        dhcp_portal.run([ROUTER_A], [], {"dhcpNearExpiryHours": 6}, sink, now=NOW)
        notif = store.notifications[0]
        assert notif["message"] == "DHCP portal client AA:BB:CC:00:00:01 expires soon (<6h) on Core-A."
        context = json.loads(notif["context_json"])
        assert context["timeout"] == "2h"
        assert context["dueDateTime"] == "2026-03-01T14:00"

    def test_pending_clients_without_timeout_skipped(self, monkeypatch, store, sink):
        pending = {"status": "pending", "address": "10.5.0.11", "macAddress": "AA", "hostName": "phone"}
        monkeypatch.setattr(dhcp_portal, "fetch_dhcp_clients", per_router({"r-a": [pending]}))
        assert dhcp_portal.run([ROUTER_A], [], SETTINGS, sink, now=NOW) == 0

    def test_fetch_failure_isolated(self, monkeypatch, store, sink):
        monkeypatch.setattr(
            dhcp_portal,
            "fetch_dhcp_clients",
            per_router({"r-a": RuntimeError("boom"), "r-b": [self._client("0s")]}),
        )
        assert dhcp_portal.run([ROUTER_A, ROUTER_B], [], SETTINGS, sink, now=NOW) == 1


class TestNetworkGenerator:

    def test_disabled_and_down_routes(self, monkeypatch, store, sink):
        routes = [
            {"id": "*1", "dst-address": "0.0.0.0/0", "gateway": "192.168.1.1", "disabled": "true", "active": "false"},
            {"id": "*2", "dst-address": "0.0.0.0/0", "gateway": "192.168.2.1", "disabled": "false", "active": "false", "check-gateway": "ping"},
            {"id": "*3", "dst-address": "0.0.0.0/0", "gateway": "192.168.3.1", "disabled": "false", "active": "true"},
        ]
        monkeypatch.setattr(network, "fetch_wan_routes", per_router({"r-a": routes}))
        assert network.run([ROUTER_A], [], SETTINGS, sink, now=NOW) == 2
        messages = [n["message"] for n in store.notifications]
        assert messages == [
            "WAN route 192.168.1.1 is disabled on Core-A.",
            "WAN route 192.168.2.1 is down on Core-A.",
        ]
        assert all(n["link_to"] == "network" for n in store.notifications)
        assert json.loads(store.notifications[1]["context_json"])["failoverEnabled"] is True

    def test_missing_gateway_reported_as_unknown(self, monkeypatch, store, sink):
        monkeypatch.setattr(network, "fetch_wan_routes", per_router({"r-a": [{"disabled": "true"}]}))
        network.run([ROUTER_A], [], SETTINGS, sink, now=NOW)
        assert store.notifications[0]["message"] == "WAN route unknown is disabled on Core-A."


class TestBilledGenerator:

    def _sale(self, client, hours_ago=1, **extra):
        sale = {
            "id": f"sale-{client}",
            "date": format_timestamp(NOW - timedelta(hours=hours_ago)),
            "routerId": "r-a",
            "clientName": client,
            "planName": "10 Mbps",
        }
        sale.update(extra)
        return sale

    @pytest.fixture()
    def lookups(self, monkeypatch):
        monkeypatch.setattr(billing, "fetch_ppp_secrets", per_router({"r-a": [{"name": "alice"}]}))
        monkeypatch.setattr(
            billing,
            "fetch_dhcp_clients",
            per_router({"r-a": [{"hostName": "bob-pc", "customerInfo": "Bob Santos"}]}),
        )

    def test_link_targets(self, lookups, store, sink):
        sales = [self._sale("alice"), self._sale("Bob Santos"), self._sale("carol")]
        assert billing.run([ROUTER_A], [], SETTINGS, sink, sales=sales, now=NOW) == 3
        links = {json.loads(n["context_json"])["clientName"]: n["link_to"] for n in store.notifications}
        assert links == {"alice": "pppoe", "Bob Santos": "dhcp-portal", "carol": "billing"}
        assert store.notifications[0]["message"] == "Client alice billed for '10 Mbps' on Core-A."

    def test_old_sales_and_unknown_routers_ignored(self, lookups, store, sink):
        sales = [
            self._sale("alice", hours_ago=25),
            self._sale("alice", routerId="missing", id="s2"),
            self._sale("   ", id="s3"),
        ]
        assert billing.run([ROUTER_A], [], SETTINGS, sink, sales=sales, now=NOW) == 0

    def test_router_matched_by_name(self, lookups, store, sink):
        sale = self._sale("alice", routerId=None, routerName="Core-A")
        assert billing.run([ROUTER_A], [], SETTINGS, sink, sales=[sale], now=NOW) == 1

    def test_lookup_failure_falls_back_to_billing(self, monkeypatch, store, sink):
        monkeypatch.setattr(billing, "fetch_ppp_secrets", per_router({"r-a": OSError("down")}))
        monkeypatch.setattr(billing, "fetch_dhcp_clients", per_router({"r-a": OSError("down")}))
        billing.run([ROUTER_A], [], SETTINGS, sink, sales=[self._sale("alice")], now=NOW)
        assert store.notifications[0]["link_to"] == "billing"

    def test_sales_loaded_from_store(self, lookups):
        store = MemoryStore(sales=[self._sale("alice")])
        assert billing.run([ROUTER_A], [], SETTINGS, DeliverySink(store, {}), now=NOW) == 1

    def test_recent_identical_notification_debounced(self, lookups, store, sink):
        existing = [
            make_notification(
                "Client alice billed for '10 Mbps' on Core-A.",
                is_read=1,
                timestamp=format_timestamp(NOW - timedelta(minutes=5)),
            )
        ]
        assert billing.run([ROUTER_A], existing, SETTINGS, sink, sales=[self._sale("alice")], now=NOW) == 0

    def test_store_query_limited_to_recent_window(self, lookups):
        store = MemoryStore(sales=[self._sale("alice"), self._sale("old", hours_ago=30)])
        assert billing.run([ROUTER_A], [], SETTINGS, DeliverySink(store, {}), now=NOW) == 1
        assert ("sales", "2026-02-28T12:00:00.000Z") in store.calls

"""Shared fixtures for panel notification tests."""

from datetime import datetime, timezone

import pytest

from mtpanel import db


class MemoryStore:
    """In-memory stand-in for PanelStore."""

    def __init__(self, notifications=None, routers=None, sales=None):
        self.notifications = list(notifications or [])
        self.routers = list(routers or [])
        self.sales = list(sales or [])
        self.fail_create = False
        self.calls = []

    def list_notifications(self):
        self.calls.append("list")
        return [dict(n) for n in self.notifications]

    def create_notification(self, notification):
        self.calls.append("create")
        if self.fail_create:
            raise RuntimeError("database is locked")
        self.notifications.append(dict(notification))
        return notification

    def mark_notification_read(self, notification_id):
        self.calls.append("mark")
        for n in self.notifications:
            if n["id"] == notification_id:
                n["is_read"] = 1
                return True
        return False

    def mark_all_notifications_read(self):
        self.calls.append("mark_all")
        count = 0
        for n in self.notifications:
            if n["is_read"] == 0:
                n["is_read"] = 1
                count += 1
        return count

    def clear_notifications(self):
        self.calls.append("clear")
        count = len(self.notifications)
        self.notifications = []
        return count

    def list_routers(self):
        return list(self.routers)

    def list_sales_records(self, since_iso=None):
        self.calls.append(("sales", since_iso))
        if since_iso is None:
            return list(self.sales)
        return [s for s in self.sales if s["date"] >= since_iso]


class RecordingSend:
    """Captures Telegram sends instead of calling the Bot API."""

    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def __call__(self, token, chat_id, text, parse_mode=None):
        if self.error:
            raise self.error
        self.sent.append({"token": token, "chat_id": chat_id, "text": text, "parse_mode": parse_mode})


NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

ROUTER_A = {"id": "r-a", "name": "Core-A", "host": "10.0.0.1", "user": "admin", "password": "x", "port": 8728, "api_type": "legacy"}
ROUTER_B = {"id": "r-b", "name": "Core-B", "host": "10.0.0.2", "user": "admin", "password": "x", "port": 8728, "api_type": "legacy"}


def make_notification(message, is_read=0, timestamp="2026-03-01T11:00:00Z", dedup_key=None, id="n1"):
    return {
        "id": id,
        "type": "info",
        "message": message,
        "is_read": is_read,
        "timestamp": timestamp,
        "link_to": None,
        "context_json": None,
        "dedup_key": dedup_key,
    }


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    """Point the database layer at a fresh SQLite file."""
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "panel.db"))
    monkeypatch.setattr(db, "DB_URL", "")
    db.init_db()
    return db


@pytest.fixture()
def memory_store():
    return MemoryStore(routers=[ROUTER_A, ROUTER_B])


@pytest.fixture()
def telegram_send():
    return RecordingSend()

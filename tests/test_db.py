"""Tests for the SQLite storage layer."""

import sqlite3

from mtpanel import db
from tests.conftest import ROUTER_A, make_notification


class TestNotificationsTable:

    def test_insert_and_list_newest_first(self, temp_db):
        db.insert_notification(make_notification("old", timestamp="2026-03-01T09:00:00Z", id="a"))
        db.insert_notification(make_notification("new", timestamp="2026-03-01T10:00:00Z", id="b", dedup_key="pppoe:r-a:x"))
        rows = db.list_notifications()
        assert [r["id"] for r in rows] == ["b", "a"]
        assert rows[0]["dedup_key"] == "pppoe:r-a:x"
        assert set(rows[0]) == set(db.NOTIFICATION_COLUMNS)

    def test_mark_read(self, temp_db):
        db.insert_notification(make_notification("x", id="a"))
        assert db.mark_notification_read("a") is True
        assert db.get_notification("a")["is_read"] == 1
        assert db.mark_notification_read("missing") is False

    def test_mark_all_and_clear_counts(self, temp_db):
        for i, is_read in enumerate((0, 0, 1)):
            db.insert_notification(make_notification(f"m{i}", is_read=is_read, id=f"n{i}"))
        assert db.mark_all_notifications_read() == 2
        assert db.mark_all_notifications_read() == 0
        assert db.clear_notifications() == 3
        assert db.list_notifications() == []

    def test_init_db_adds_dedup_key_to_old_tables(self, tmp_path, monkeypatch):
        path = tmp_path / "old.db"
        conn = sqlite3.connect(path)
        conn.execute(
            "CREATE TABLE notifications (id TEXT PRIMARY KEY, type TEXT, message TEXT, is_read INTEGER,"
            " timestamp TEXT, link_to TEXT, context_json TEXT)"
        )
        conn.commit()
        conn.close()
        monkeypatch.setattr(db, "DB_PATH", str(path))
        monkeypatch.setattr(db, "DB_URL", "")

        db.init_db()
        db.init_db()

        db.insert_notification(make_notification("x", dedup_key="k"))
        assert db.list_notifications()[0]["dedup_key"] == "k"


class TestRoutersTable:

    def test_upsert_roundtrip_uses_api_field_names(self, temp_db):
        db.upsert_router({**ROUTER_A, "use_tls": True})
        (router,) = db.list_routers()
        assert router["user"] == "admin"
        assert "username" not in router
        assert router["port"] == 8728
        assert router["use_tls"] is True

        db.upsert_router({**ROUTER_A, "name": "Core-A2"})
        assert [r["name"] for r in db.list_routers()] == ["Core-A2"]

    def test_delete(self, temp_db):
        db.upsert_router(ROUTER_A)
        assert db.delete_router("r-a") is True
        assert db.delete_router("r-a") is False


class TestSalesTable:

    def test_camel_case_mapping_and_since_filter(self, temp_db):
        db.insert_sales_record({"id": "s1", "date": "2026-02-01T10:00:00Z", "routerId": "r-a", "clientName": "old"})
        db.insert_sales_record({"id": "s2", "date": "2026-03-01T10:00:00Z", "routerId": "r-a", "clientName": "alice", "planPrice": 500.0})
        recent = db.list_sales_records(since_iso="2026-02-15T00:00:00Z")
        assert [s["id"] for s in recent] == ["s2"]
        assert recent[0]["clientName"] == "alice"
        assert recent[0]["planPrice"] == 500.0
        assert len(db.list_sales_records()) == 2


class TestJobStatus:

    def test_partial_updates_keep_previous_fields(self, temp_db):
        db.update_job_status("notifications", last_run_at="t1", last_success_at="t1")
        db.update_job_status("notifications", last_run_at="t2", last_error="boom")
        (status,) = db.get_job_status()
        assert status["last_run_at"] == "t2"
        assert status["last_success_at"] == "t1"
        assert status["last_error"] == "boom"

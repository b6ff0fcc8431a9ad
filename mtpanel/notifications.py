import json
import random
import string
import time
from datetime import datetime, timezone

from . import db

NOTIFICATION_TYPES = ("pppoe-expired", "client-chat", "info")


def make_notification_id():
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"notif_{int(time.time() * 1000)}_{suffix}"


def make_dedup_key(event, router_id, subject):
    return f"{event}:{router_id}:{subject}"


def format_timestamp(dt):
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="milliseconds") + "Z"


def parse_timestamp(value):
    if not value:
        return None
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_notification(notification_type, message, link_to=None, context=None, dedup_key=None, now=None):
    now = now or datetime.now(timezone.utc)
    return {
        "id": make_notification_id(),
        "type": notification_type,
        "message": message,
        "is_read": 0,
        "timestamp": format_timestamp(now),
        "link_to": link_to,
        "context_json": json.dumps(context) if context is not None else None,
        "dedup_key": dedup_key,
    }


def normalize_notification(payload):
    """Validate a notification submitted by a client and fill in missing fields."""
    if not isinstance(payload, dict):
        raise ValueError("notification must be an object")
    notification_type = payload.get("type") or "info"
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"unknown notification type: {notification_type}")
    message = str(payload.get("message") or "").strip()
    if not message:
        raise ValueError("notification message is required")
    is_read = payload.get("is_read", 0)
    if is_read not in (0, 1):
        raise ValueError("is_read must be 0 or 1")
    timestamp = payload.get("timestamp")
    if timestamp and parse_timestamp(timestamp) is None:
        raise ValueError("timestamp must be ISO-8601")
    context_json = payload.get("context_json")
    if context_json is not None and not isinstance(context_json, str):
        context_json = json.dumps(context_json)
    return {
        "id": str(payload.get("id") or make_notification_id()),
        "type": notification_type,
        "message": message,
        "is_read": is_read,
        "timestamp": timestamp or format_timestamp(datetime.now(timezone.utc)),
        "link_to": payload.get("link_to") or None,
        "context_json": context_json,
        "dedup_key": payload.get("dedup_key") or None,
    }


def sort_newest_first(notifications):
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(notifications, key=lambda n: parse_timestamp(n.get("timestamp")) or epoch, reverse=True)


class PanelStore:
    """Notification, router and sales storage backed by the local database."""

    def list_notifications(self):
        return db.list_notifications()

    def create_notification(self, notification):
        db.insert_notification(notification)
        return notification

    def mark_notification_read(self, notification_id):
        return db.mark_notification_read(notification_id)

    def mark_all_notifications_read(self):
        return db.mark_all_notifications_read()

    def clear_notifications(self):
        return db.clear_notifications()

    def list_routers(self):
        return db.list_routers()

    def list_sales_records(self, since_iso=None):
        return db.list_sales_records(since_iso=since_iso)

import asyncio
import hmac
import json
import logging
import os
import time
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response

from .db import (
    delete_router,
    get_job_status,
    get_notification,
    init_db,
    insert_sales_record,
    list_routers,
    list_sales_records,
    upsert_router,
)
from .jobs import JobsManager
from .notifications import PanelStore, format_timestamp, normalize_notification, parse_timestamp
from .notifiers.common import utc_now
from .notifiers.telegram import TelegramError, send_test_message
from .parsers import parse_bool, parse_int
from .settings_defaults import MIN_GENERATOR_INTERVAL_SECONDS, NOTIFICATION_DEFAULTS
from .settings_store import export_settings, get_panel_settings, import_settings, update_panel_settings

logging.basicConfig(
    level=os.environ.get("PANEL_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ROUTER_API_TYPES = ("legacy", "rest")
DEFAULT_PORTS = {"legacy": 8728, "rest": 80}

store = PanelStore()
jobs_manager = JobsManager(store=store)

app = FastAPI(title="MikroTik panel notifications")


@app.on_event("startup")
async def startup_event():
    init_db()
    if not os.environ.get("PANEL_API_TOKEN"):
        logger.warning("PANEL_API_TOKEN is not set; API authentication is disabled")
    jobs_manager.start()


@app.on_event("shutdown")
async def shutdown_event():
    jobs_manager.stop()


def require_token(request: Request):
    expected = os.environ.get("PANEL_API_TOKEN", "")
    if not expected:
        return
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid or missing bearer token.")


async def read_json(request):
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Request body must be JSON.")


def normalize_notification_settings(data):
    if not isinstance(data, dict):
        raise ValueError("notificationSettings must be an object")
    out = {}
    for key, default in NOTIFICATION_DEFAULTS.items():
        if key not in data:
            continue
        if isinstance(default, bool):
            out[key] = parse_bool(data[key], default)
        else:
            floor = MIN_GENERATOR_INTERVAL_SECONDS if key == "generatorIntervalSeconds" else 0
            out[key] = max(parse_int(data[key], default), floor)
    return out


def normalize_router(data):
    if not isinstance(data, dict):
        raise ValueError("router must be an object")
    api_type = (data.get("api_type") or "legacy").strip().lower()
    if api_type not in ROUTER_API_TYPES:
        raise ValueError(f"api_type must be one of {', '.join(ROUTER_API_TYPES)}")
    router = {
        "id": str(data.get("id") or f"router_{int(time.time() * 1000)}"),
        "name": (data.get("name") or "").strip(),
        "host": (data.get("host") or "").strip(),
        "user": (data.get("user") or "").strip(),
        "password": data.get("password") or "",
        "api_type": api_type,
        "use_tls": parse_bool(data.get("use_tls")),
    }
    for field in ("name", "host", "user"):
        if not router[field]:
            raise ValueError(f"router {field} is required")
    default_port = 443 if api_type == "rest" and router["use_tls"] else DEFAULT_PORTS[api_type]
    router["port"] = parse_int(data.get("port"), default_port) or default_port
    return router


def normalize_sale(data):
    if not isinstance(data, dict):
        raise ValueError("sales record must be an object")
    date = data.get("date") or format_timestamp(utc_now())
    if parse_timestamp(date) is None:
        raise ValueError("date must be ISO-8601")
    price = data.get("planPrice")
    try:
        price = float(price) if price not in (None, "") else None
    except (TypeError, ValueError):
        raise ValueError("planPrice must be a number")
    return {
        "id": str(data.get("id") or f"sale_{int(time.time() * 1000)}"),
        "date": date,
        "routerId": data.get("routerId"),
        "routerName": data.get("routerName"),
        "clientName": (data.get("clientName") or "").strip(),
        "planName": data.get("planName"),
        "planPrice": price,
        "currency": data.get("currency"),
    }


# Notifications


@app.get("/api/db/notifications", dependencies=[Depends(require_token)])
async def list_notifications_route():
    return store.list_notifications()


@app.post("/api/db/notifications", status_code=201, dependencies=[Depends(require_token)])
async def create_notification_route(request: Request):
    payload = await read_json(request)
    try:
        notification = normalize_notification(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if get_notification(notification["id"]):
        raise HTTPException(status_code=409, detail="Notification id already exists.")
    store.create_notification(notification)
    return notification


@app.post("/api/db/notifications/mark-all-read", dependencies=[Depends(require_token)])
async def mark_all_read_route():
    return {"updated": store.mark_all_notifications_read()}


@app.post("/api/db/notifications/clear-all", dependencies=[Depends(require_token)])
async def clear_all_route():
    return {"deleted": store.clear_notifications()}


@app.patch("/api/db/notifications/{notification_id}", dependencies=[Depends(require_token)])
async def update_notification_route(notification_id: str, request: Request):
    payload = await read_json(request)
    if not isinstance(payload, dict) or set(payload) - {"is_read"}:
        raise HTTPException(status_code=400, detail="Only is_read can be updated.")
    if payload.get("is_read") != 1:
        raise HTTPException(status_code=400, detail="Notifications can only be marked as read.")
    if not store.mark_notification_read(notification_id):
        raise HTTPException(status_code=404, detail="Notification not found.")
    return get_notification(notification_id)


# Panel settings


@app.get("/api/db/panel-settings", dependencies=[Depends(require_token)])
async def get_panel_settings_route():
    return get_panel_settings()


@app.post("/api/db/panel-settings", dependencies=[Depends(require_token)])
async def save_panel_settings_route(request: Request):
    payload = await read_json(request)
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Panel settings must be an object.")
    try:
        if "notificationSettings" in payload:
            payload = {**payload, "notificationSettings": normalize_notification_settings(payload["notificationSettings"])}
        update_panel_settings(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"message": "Panel settings saved."}


# Routers and sales records


@app.get("/api/db/routers", dependencies=[Depends(require_token)])
async def list_routers_route():
    return list_routers()


@app.post("/api/db/routers", status_code=201, dependencies=[Depends(require_token)])
async def save_router_route(request: Request):
    payload = await read_json(request)
    try:
        router = normalize_router(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    upsert_router(router)
    return router


@app.delete("/api/db/routers/{router_id}", dependencies=[Depends(require_token)])
async def delete_router_route(router_id: str):
    if not delete_router(router_id):
        raise HTTPException(status_code=404, detail="Router not found.")
    return {"message": "Router deleted."}


@app.get("/api/db/sales_records", dependencies=[Depends(require_token)])
async def list_sales_route(since: Optional[str] = None):
    if since and parse_timestamp(since) is None:
        raise HTTPException(status_code=400, detail="since must be ISO-8601")
    return list_sales_records(since_iso=since)


@app.post("/api/db/sales_records", status_code=201, dependencies=[Depends(require_token)])
async def create_sale_route(request: Request):
    payload = await read_json(request)
    try:
        sale = normalize_sale(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    insert_sales_record(sale)
    return sale


# Jobs, Telegram and backup


@app.post("/api/notifications/run", dependencies=[Depends(require_token)])
async def run_generators_route():
    ran = await asyncio.to_thread(jobs_manager.run_cycle)
    return {"ran": ran}


@app.get("/api/jobs/status", dependencies=[Depends(require_token)])
async def job_status_route():
    return get_job_status()


@app.post("/api/telegram/test", dependencies=[Depends(require_token)])
async def telegram_test_route():
    telegram = get_panel_settings().get("telegramSettings", {}) or {}
    try:
        await asyncio.to_thread(send_test_message, telegram)
    except TelegramError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"message": "Test message sent."}


@app.get("/api/settings/export", dependencies=[Depends(require_token)])
async def export_settings_route():
    payload = export_settings()
    data = json.dumps(payload, ensure_ascii=True, indent=2).encode("utf-8")
    headers = {"Content-Disposition": "attachment; filename=mtpanel-settings.json"}
    return Response(content=data, media_type="application/json", headers=headers)


@app.post("/api/settings/import", dependencies=[Depends(require_token)])
async def import_settings_route(request: Request):
    payload = await read_json(request)
    try:
        imported = import_settings(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"message": "Settings imported successfully.", "imported": imported}

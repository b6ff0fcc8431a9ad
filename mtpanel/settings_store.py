import copy
import json

from .db import fetch_all_settings, get_json, set_json
from .settings_defaults import PANEL_DEFAULTS

PANEL_SETTINGS_KEY = "panel"


def deep_merge(defaults, overrides):
    merged = copy.deepcopy(defaults)
    for key, value in (overrides or {}).items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def get_settings(key, defaults):
    return deep_merge(defaults, get_json("settings", key, None))


def get_panel_settings():
    return get_settings(PANEL_SETTINGS_KEY, PANEL_DEFAULTS)


def update_panel_settings(partial):
    """Merge a partial settings payload into the stored panel settings and return the result."""
    if not isinstance(partial, dict):
        raise ValueError("panel settings payload must be an object")
    stored = deep_merge(get_json("settings", PANEL_SETTINGS_KEY, None) or {}, partial)
    set_json("settings", PANEL_SETTINGS_KEY, stored)
    return deep_merge(PANEL_DEFAULTS, stored)


def _decode(value):
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def export_settings():
    return {"settings": {key: _decode(value) for key, value in fetch_all_settings().items()}}


def import_settings(data):
    """Restore an export. A bare mapping is read as the settings section. Returns the number of keys written."""
    if not isinstance(data, dict):
        raise ValueError("settings payload must be an object")
    entries = data.get("settings", {}) if "settings" in data else data
    if not isinstance(entries, dict):
        raise ValueError("settings section must be an object")
    written = 0
    for key, value in entries.items():
        if isinstance(key, str):
            set_json("settings", key, value)
            written += 1
    return written

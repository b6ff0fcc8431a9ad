import json
import urllib.error
import urllib.parse
import urllib.request


class PanelAPIError(RuntimeError):
    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class SessionExpired(PanelAPIError):
    pass


class PanelClient:
    """Talks to the panel's /api/db endpoints with a bearer token.

    Exposes the same store methods as PanelStore, so notification code can
    run against a remote panel.
    """

    def __init__(self, base_url, token, timeout=15):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _request(self, method, path, payload=None):
        url = f"{self.base_url}/api/db{path}"
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            if exc.code == 401:
                raise SessionExpired("Session expired. Please log in again.", status=401) from exc
            message = f"Request failed with status {exc.code}"
            try:
                detail = json.loads(exc.read().decode("utf-8", errors="replace"))
                message = detail.get("detail") or detail.get("message") or message
            except (ValueError, AttributeError, OSError):
                pass
            raise PanelAPIError(message, status=exc.code) from exc
        except urllib.error.URLError as exc:
            raise PanelAPIError(f"Panel unreachable: {exc.reason}") from exc
        if not body.strip():
            return {}
        return json.loads(body)

    def list_notifications(self):
        return self._request("GET", "/notifications")

    def create_notification(self, notification):
        return self._request("POST", "/notifications", notification)

    def mark_notification_read(self, notification_id):
        self._request("PATCH", f"/notifications/{urllib.parse.quote(notification_id, safe='')}", {"is_read": 1})
        return True

    def mark_all_notifications_read(self):
        return self._request("POST", "/notifications/mark-all-read", {}).get("updated", 0)

    def clear_notifications(self):
        return self._request("POST", "/notifications/clear-all", {}).get("deleted", 0)

    def list_routers(self):
        return self._request("GET", "/routers")

    def list_sales_records(self, since_iso=None):
        query = f"?{urllib.parse.urlencode({'since': since_iso})}" if since_iso else ""
        return self._request("GET", f"/sales_records{query}")

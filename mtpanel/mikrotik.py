import base64
import hashlib
import json
import logging
import socket
import ssl
import urllib.error
import urllib.request

from .parsers import parse_client_comment, parse_routeros_bool

logger = logging.getLogger(__name__)

AUTHORIZED_DHCP_LIST = "authorized-dhcp-users"
DEFAULT_ROUTE = "0.0.0.0/0"


class RouterOSError(RuntimeError):
    pass


def _encode_length(length):
    if length < 0x80:
        return bytes([length])
    if length < 0x4000:
        return (length | 0x8000).to_bytes(2, "big")
    if length < 0x200000:
        return (length | 0xC00000).to_bytes(3, "big")
    if length < 0x10000000:
        return (length | 0xE0000000).to_bytes(4, "big")
    return b"\xf0" + length.to_bytes(4, "big")


def _encode_word(word):
    data = word.encode("utf-8")
    return _encode_length(len(data)) + data


def _recv_exact(sock, count):
    data = b""
    while len(data) < count:
        chunk = sock.recv(count - len(data))
        if not chunk:
            raise ConnectionError("RouterOS API connection closed.")
        data += chunk
    return data


def _read_length(sock):
    first = _recv_exact(sock, 1)[0]
    if first < 0x80:
        return first
    if first < 0xC0:
        return int.from_bytes(bytes([first & 0x3F]) + _recv_exact(sock, 1), "big")
    if first < 0xE0:
        return int.from_bytes(bytes([first & 0x1F]) + _recv_exact(sock, 2), "big")
    if first < 0xF0:
        return int.from_bytes(bytes([first & 0x0F]) + _recv_exact(sock, 3), "big")
    return int.from_bytes(_recv_exact(sock, 4), "big")


def _read_word(sock):
    length = _read_length(sock)
    if length == 0:
        return ""
    return _recv_exact(sock, length).decode("utf-8", errors="replace")


def _sentence_to_dict(sentence):
    # ["!re", "=name=foo", "=disabled=true"] -> {"name": "foo", "disabled": "true"}
    data = {}
    for word in sentence[1:]:
        if not word:
            continue
        if word.startswith("="):
            word = word[1:]
        if "=" not in word:
            continue
        key, value = word.split("=", 1)
        data[key] = value
    return data


def _raise_on_trap(replies, action):
    for sentence in replies:
        if sentence and sentence[0] in ("!trap", "!fatal"):
            message = _sentence_to_dict(sentence).get("message") or " ".join(sentence[1:])
            raise RouterOSError(f"RouterOS {action} failed: {message}")


class RouterOSClient:
    """Client for the RouterOS API service (binary sentences, port 8728)."""

    def __init__(self, host, port, username, password, timeout=5):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout
        self.sock = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def connect(self):
        self.sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        self.sock.settimeout(self.timeout)
        try:
            self._login()
        except Exception:
            self.close()
            raise
        return self

    def close(self):
        if self.sock:
            try:
                self.sock.close()
            except OSError:
                pass
        self.sock = None

    def _write_sentence(self, words):
        self.sock.sendall(b"".join(_encode_word(word) for word in words) + b"\x00")

    def _read_sentence(self):
        words = []
        while True:
            word = _read_word(self.sock)
            if word == "":
                return words
            words.append(word)

    def talk(self, words):
        self._write_sentence(words)
        replies = []
        while True:
            sentence = self._read_sentence()
            if not sentence:
                continue
            replies.append(sentence)
            if sentence[0] in ("!done", "!trap", "!fatal"):
                if sentence[0] == "!trap":
                    # A trap is followed by its own !done.
                    continue
                return replies

    def _login(self):
        replies = self.talk(["/login", f"=name={self.username}", f"=password={self.password}"])
        _raise_on_trap(replies, "login")
        challenge = _sentence_to_dict(replies[-1]).get("ret")
        if challenge:
            # Pre-6.43 routers answer with an MD5 challenge.
            digest = hashlib.md5(b"\x00" + self.password.encode("utf-8") + bytes.fromhex(challenge)).hexdigest()
            replies = self.talk(["/login", f"=name={self.username}", f"=response=00{digest}"])
            _raise_on_trap(replies, "login challenge")

    def print_rows(self, path, proplist=None):
        words = [f"{path.rstrip('/')}/print"]
        if proplist:
            words.append(f"=.proplist={','.join(proplist)}")
        replies = self.talk(words)
        _raise_on_trap(replies, f"{path} print")
        return [_sentence_to_dict(sentence) for sentence in replies if sentence[0] == "!re"]


class RouterOSRestClient:
    """Client for the RouterOS v7 REST API (/rest/... over www or www-ssl)."""

    def __init__(self, host, port, username, password, use_tls=False, timeout=10):
        scheme = "https" if use_tls else "http"
        self.base_url = f"{scheme}://{host}:{port}/rest"
        token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        self.headers = {"Authorization": f"Basic {token}", "Accept": "application/json"}
        self.timeout = timeout
        self.ssl_context = None
        if use_tls:
            # Router certificates are usually self-signed.
            self.ssl_context = ssl.create_default_context()
            self.ssl_context.check_hostname = False
            self.ssl_context.verify_mode = ssl.CERT_NONE

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return None

    def print_rows(self, path, proplist=None):
        url = f"{self.base_url}/{path.strip('/')}"
        if proplist:
            url += "?.proplist=" + ",".join(proplist)
        req = urllib.request.Request(url, headers=self.headers)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout, context=self.ssl_context) as resp:
                body = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            detail = ""
            try:
                detail = json.loads(exc.read().decode("utf-8", errors="replace")).get("detail", "")
            except (ValueError, AttributeError):
                detail = ""
            raise RouterOSError(f"RouterOS REST {path} failed: HTTP {exc.code} {detail}".strip()) from exc
        except urllib.error.URLError as exc:
            raise RouterOSError(f"RouterOS REST {path} unreachable: {exc.reason}") from exc
        data = json.loads(body) if body.strip() else []
        if isinstance(data, dict):
            return [data]
        return data


def open_client(router, timeout=5):
    host = (router.get("host") or "").strip()
    if not host:
        raise RouterOSError(f"Router {router.get('name') or router.get('id')} has no host configured.")
    username = router.get("user") or ""
    password = router.get("password") or ""
    if (router.get("api_type") or "legacy") == "rest":
        use_tls = bool(router.get("use_tls"))
        port = int(router.get("port") or (443 if use_tls else 80))
        return RouterOSRestClient(host, port, username, password, use_tls=use_tls, timeout=timeout)
    port = int(router.get("port") or 8728)
    return RouterOSClient(host, port, username, password, timeout=timeout)


def _with_id(row):
    row = dict(row)
    if ".id" in row:
        row["id"] = row.pop(".id")
    return row


def fetch_ppp_secrets(router):
    with open_client(router) as client:
        rows = client.print_rows("/ppp/secret")
    return [_with_id(row) for row in rows]


def fetch_dhcp_clients(router):
    """DHCP portal clients: leases joined with the authorized address list.

    A lease whose address is on the authorized list is an active client and
    carries that entry's id, timeout and comment; any other lease is pending.
    """
    with open_client(router) as client:
        leases = client.print_rows("/ip/dhcp-server/lease")
        address_list = client.print_rows("/ip/firewall/address-list")

    authorized = {}
    for entry in address_list:
        if entry.get("list") == AUTHORIZED_DHCP_LIST and entry.get("address"):
            authorized[entry["address"]] = entry

    clients = []
    for lease in leases:
        address = lease.get("address") or ""
        base = {
            "address": address,
            "macAddress": lease.get("mac-address") or "",
            "hostName": lease.get("host-name") or "N/A",
        }
        entry = authorized.get(address)
        if entry is None:
            clients.append({**base, "id": lease.get(".id") or "", "status": "pending"})
            continue
        comment = entry.get("comment") or ""
        info = parse_client_comment(comment) or {}
        clients.append(
            {
                **base,
                "id": entry.get(".id") or "",
                "status": "active",
                "customerInfo": str(info.get("customerInfo") or ""),
                "contactNumber": str(info.get("contactNumber") or ""),
                "email": str(info.get("email") or ""),
                "timeout": entry.get("timeout"),
                "creationTime": entry.get("creation-time"),
                "comment": comment,
            }
        )
    return clients


def fetch_wan_routes(router):
    with open_client(router) as client:
        rows = client.print_rows("/ip/route")
    return [_with_id(row) for row in rows if (row.get("dst-address") or "") == DEFAULT_ROUTE]


def wan_failover_enabled(routes):
    return any((route.get("check-gateway") or "").strip() for route in routes if not parse_routeros_bool(route.get("disabled")))

"""
HTTP wrapper around the homedash server API.
"""
import mimetypes
import pathlib
from typing import Optional
from urllib.parse import quote

import requests

REQUEST_TIMEOUT_SECONDS = 10
SAVE_TIMEOUT_SECONDS = 30


def normalize_url(url: str) -> str:
    u = (url or "").strip()
    if not u:
        return u
    if not u.startswith("http://") and not u.startswith("https://"):
        u = "http://" + u
    return u.rstrip("/")


class ApiError(Exception):
    def __init__(self, msg, status: Optional[int] = None, payload: Optional[dict] = None):
        super().__init__(msg)
        self.status = status
        self.payload = payload or {}

    @property
    def code(self):
        return self.payload.get("error")


class ConfigApi:
    def __init__(self, base_url: str, session=None, timeout: float = REQUEST_TIMEOUT_SECONDS):
        self.base_url = normalize_url(base_url)
        self.session = session or requests.Session()
        self.timeout = timeout

    def _call(self, method, path, timeout=None, **kwargs):
        url = self.base_url + path
        try:
            r = self.session.request(method, url, timeout=timeout or self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ApiError(f"{method} {path}: {e}") from e
        try:
            data = r.json()
        except ValueError:
            data = None
        if not 200 <= r.status_code < 300:
            payload = data if isinstance(data, dict) else {}
            msg = payload.get("msg") or payload.get("error") or (r.text or "")[:200]
            raise ApiError(f"{method} {path}: HTTP {r.status_code}: {msg}", status=r.status_code, payload=payload)
        if data is None:
            # captive portals and misrouted proxies answer 2xx with HTML
            raise ApiError(f"{method} {path}: HTTP {r.status_code}: not a JSON reply", status=r.status_code)
        return data

    def _fields(self, data, path, *keys):
        if not isinstance(data, dict) or any(k not in data for k in keys):
            raise ApiError(f"{path}: unexpected reply, expected {', '.join(keys)}")
        return [data[k] for k in keys]

    def ping(self) -> bool:
        try:
            self._call("GET", "/api/health", timeout=5)
            return True
        except ApiError:
            return False

    # config document
    def get_config(self):
        config, marker = self._fields(self._call("GET", "/api/config"), "/api/config", "config", "modificationMarker")
        if not isinstance(config, dict):
            raise ApiError("/api/config: config is not an object")
        return config, marker

    def save_config(self, config: dict, expected_marker: Optional[float] = None) -> float:
        params = {"expectedMarker": repr(expected_marker)} if expected_marker is not None else None
        data = self._call("PUT", "/api/config", json=config, params=params, timeout=SAVE_TIMEOUT_SECONDS)
        return self._fields(data, "/api/config", "modificationMarker")[0]

    def check_for_changes(self, since: float):
        data = self._call("GET", "/api/config/check", params={"since": repr(float(since or 0))})
        changed, marker = self._fields(data, "/api/config/check", "changed", "modificationMarker")
        return bool(changed), marker

    # backups
    def list_backups(self):
        data = self._call("GET", "/api/backups")
        if not isinstance(data, list):
            raise ApiError("/api/backups: expected a list")
        return data

    def create_backup(self, name: Optional[str] = None) -> str:
        data = self._call("POST", "/api/backups", json={"name": name})
        return self._fields(data, "/api/backups", "filename")[0]

    def restore_backup(self, filename: str) -> dict:
        return self._call("POST", f"/api/backups/restore/{quote(filename, safe='')}")

    def delete_backup(self, filename: str) -> bool:
        data = self._call("DELETE", f"/api/backups/{quote(filename, safe='')}")
        return bool(self._fields(data, "/api/backups", "success")[0])

    # icons
    def upload_icon(self, path) -> str:
        p = pathlib.Path(path)
        mime = mimetypes.guess_type(p.name)[0] or "image/png"
        data = self._call(
            "POST",
            "/api/upload-icon",
            params={"name": p.name},
            data=p.read_bytes(),
            headers={"Content-Type": mime},
        )
        return data["url"]

    def proxy_icon(self, url: str) -> dict:
        return self._call("GET", "/api/icons/proxy", params={"url": url})

    def icon_cache_info(self) -> dict:
        return self._call("GET", "/api/icons/cache-info")

    def clear_icon_cache(self) -> dict:
        return self._call("DELETE", "/api/icons/cache")

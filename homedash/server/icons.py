"""
Icon Cache: fetch remote icons once and serve them locally.

Entries are named by the SHA-256 of the source URL string, so a lookup
never needs the network.
"""
import hashlib
import io
import pathlib
import posixpath
from typing import Optional
from urllib.parse import urlparse

import requests
from PIL import Image, UnidentifiedImageError

from homedash.server.errors import InvalidURL
from homedash.server.logs import log_flask

FETCH_TIMEOUT_SECONDS = 10
DEFAULT_EXTENSION = "png"
CACHE_URL_PREFIX = "/icons/cache"

KNOWN_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "svg", "ico", "webp", "bmp", "avif")

CONTENT_TYPE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/pjpeg": "jpg",
    "image/gif": "gif",
    "image/svg+xml": "svg",
    "image/x-icon": "ico",
    "image/vnd.microsoft.icon": "ico",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/avif": "avif",
}

PIL_FORMAT_EXTENSIONS = {
    "PNG": "png",
    "JPEG": "jpg",
    "GIF": "gif",
    "ICO": "ico",
    "WEBP": "webp",
    "BMP": "bmp",
}


def cache_key(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def validate_url(url) -> str:
    if not url or not isinstance(url, str):
        raise InvalidURL("url is required")
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidURL(f"not an absolute http(s) URL: {url}")
    return url.strip()


def extension_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    mime = content_type.split(";", 1)[0].strip().lower()
    return CONTENT_TYPE_EXTENSIONS.get(mime)


def extension_from_url(url: str) -> Optional[str]:
    ext = posixpath.splitext(urlparse(url).path)[1].lstrip(".").lower()
    if ext in KNOWN_EXTENSIONS:
        return "jpg" if ext == "jpeg" else ext
    return None


def extension_from_bytes(data: bytes) -> Optional[str]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return PIL_FORMAT_EXTENSIONS.get((img.format or "").upper())
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def format_size(num: int) -> str:
    size = float(num)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{int(size)} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


class IconCache:
    def __init__(self, cache_dir, timeout: float = FETCH_TIMEOUT_SECONDS, session=None):
        self.dir = pathlib.Path(cache_dir)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", "homedash-icon-cache")

    def local_url(self, filename: str) -> str:
        return f"{CACHE_URL_PREFIX}/{filename}"

    def find_cached(self, key: str) -> Optional[pathlib.Path]:
        for ext in KNOWN_EXTENSIONS:
            p = self.dir / f"{key}.{ext}"
            if p.is_file():
                return p
        return None

    def proxy(self, url) -> dict:
        url = validate_url(url)
        key = cache_key(url)
        hit = self.find_cached(key)
        if hit is not None:
            return {"cached": True, "localUrl": self.local_url(hit.name)}

        try:
            r = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            log_flask(f"ICON fetch failed {url}: {e}")
            return {"cached": False, "fallbackUrl": url}
        if not 200 <= r.status_code < 300:
            log_flask(f"ICON fetch HTTP {r.status_code} {url}")
            return {"cached": False, "fallbackUrl": url}

        data = r.content
        ext = (
            extension_from_content_type(r.headers.get("Content-Type"))
            or extension_from_url(url)
            or extension_from_bytes(data)
            or DEFAULT_EXTENSION
        )
        target = self.dir / f"{key}.{ext}"
        tmp = target.with_name(target.name + ".tmp")
        try:
            self.dir.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            tmp.replace(target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            log_flask(f"ICON cache write failed {url}: {e}")
            return {"cached": False, "fallbackUrl": url}
        log_flask(f"ICON cached {url} -> {target.name}")
        return {"cached": False, "localUrl": self.local_url(target.name)}

    def _entries(self):
        if not self.dir.is_dir():
            return []
        return [p for p in self.dir.iterdir() if p.is_file() and not p.name.endswith(".tmp")]

    def cache_info(self) -> dict:
        count = 0
        total = 0
        for p in self._entries():
            try:
                total += p.stat().st_size
                count += 1
            except OSError:
                continue
        return {"count": count, "totalSize": total, "totalSizeFormatted": format_size(total)}

    def clear_cache(self) -> dict:
        deleted = 0
        failed = 0
        for p in self._entries():
            try:
                p.unlink()
                deleted += 1
            except OSError as e:
                failed += 1
                log_flask(f"ICON cache delete failed {p.name}: {e}")
        log_flask(f"ICON cache cleared: {deleted} deleted, {failed} failed")
        return {"success": failed == 0, "deletedCount": deleted, "failedCount": failed}

"""
Configuration Document helpers shared by the server and the client.

The document is one JSON object. Only the hash-relevant subset (user data)
feeds the content hash; `metadata` is bookkeeping and never hashed.
"""
import copy
import hashlib
import json
from datetime import datetime, timezone
from typing import Optional

VERSION = "1.0.0"

HASH_FIELDS = ("services", "categoryOrder", "gridColumns", "theme", "settings", "collapsedCategories")

CADENCE_MIN = 5
CADENCE_MAX = 1440
CADENCE_DEFAULT = 60

DEFAULT_COLORS = {
    "primary": "#6366f1",
    "secondary": "#475569",
    "background": "#0a0a0a",
    "surface": "#1a1a1a",
    "textPrimary": "#ffffff",
    "textSecondary": "#a1a1aa",
    "border": "#27272a",
    "accent": "#8b5cf6",
    "success": "#22c55e",
    "warning": "#eab308",
    "error": "#f87171",
}


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def iso_to_dt(iso_str):
    if not iso_str:
        return None
    try:
        dt = datetime.fromisoformat(str(iso_str).replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except Exception:
        return None


def default_config():
    return {
        "services": [],
        "collapsedCategories": [],
        "gridColumns": "3",
        "theme": "dark",
        "settings": {
            "timezone": "UTC",
            "customCSS": "",
            "autoSync": True,
            "syncInterval": 5000,
        },
        "metadata": {
            "version": VERSION,
            "lastModified": now_iso(),
            "backupEnabled": True,
            "lastBackup": None,
            "backupCadenceMinutes": CADENCE_DEFAULT,
            "configHash": "",
        },
        "categoryOrder": [],
        "colors": dict(DEFAULT_COLORS),
    }


def merge_over_defaults(doc: dict) -> dict:
    """Shallow-merge `doc` over the default document.

    Top-level keys from `doc` win. `metadata` is merged one level deeper so
    bookkeeping keys added by newer versions are always present.
    """
    merged = default_config()
    incoming = copy.deepcopy(doc or {})
    meta = incoming.pop("metadata", None)
    merged.update(incoming)
    if isinstance(meta, dict):
        merged["metadata"].update(meta)
    merged["metadata"]["backupCadenceMinutes"] = clamp_cadence(merged["metadata"].get("backupCadenceMinutes"))
    return merged


def has_valid_services(doc) -> bool:
    if not isinstance(doc, dict):
        return False
    services = doc.get("services")
    if not isinstance(services, list):
        return False
    return all(isinstance(s, dict) for s in services)


def require_services(doc, exc_type, what="document"):
    """Raise `exc_type` unless `doc` carries a well-formed `services` list."""
    if not isinstance(doc, dict):
        raise exc_type(f"{what} must be a JSON object")
    if "services" not in doc:
        raise exc_type(f"{what} is missing 'services'")
    if not has_valid_services(doc):
        raise exc_type(f"{what}: 'services' must be a list of objects")


def hash_subset(doc: dict) -> dict:
    return {k: doc.get(k) for k in HASH_FIELDS}


def content_hash(doc: dict) -> str:
    canonical = json.dumps(hash_subset(doc or {}), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def clamp_cadence(value) -> int:
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        return CADENCE_DEFAULT
    return max(CADENCE_MIN, min(CADENCE_MAX, minutes))


def validate_service(service) -> list:
    errors = []
    if not isinstance(service, dict):
        return ["Service must be an object"]
    if not service.get("name") or not isinstance(service.get("name"), str):
        errors.append("Service name is required and must be a string")
    if not service.get("url") or not isinstance(service.get("url"), str):
        errors.append("Service URL is required and must be a string")
    if not service.get("category") or not isinstance(service.get("category"), str):
        errors.append("Service category is required and must be a string")
    if service.get("icon") and not isinstance(service.get("icon"), str):
        errors.append("Service icon must be a string")
    if service.get("description") and not isinstance(service.get("description"), str):
        errors.append("Service description must be a string")
    return errors


def service_count(doc: Optional[dict]) -> int:
    if not has_valid_services(doc):
        return 0
    return len(doc["services"])

"""
Config Store: the on-disk Configuration Document.

Writes are temp-file-then-replace so a reader never sees a half-written
file. The modification marker is the file mtime in milliseconds and is
forced forward on every write when the clock did not advance.
"""
import copy
import json
import os
import pathlib
import shutil
import threading
from datetime import datetime, timezone
from typing import Optional

from homedash.document import (
    clamp_cadence,
    default_config,
    merge_over_defaults,
    now_iso,
    require_services,
)
from homedash.server.errors import Conflict, StoreCorrupted, ValidationError
from homedash.server.logs import log, log_flask

MARKER_STEP_NS = 1_000_000

# bookkeeping the server owns; client copies of these are ignored on write
SERVER_OWNED_META = ("lastBackup", "configHash")


class ConfigStore:
    def __init__(self, config_file):
        self.path = pathlib.Path(config_file)
        self.backups = None
        self._write_lock = threading.Lock()
        self._last_mtime_ns = self._stat_ns()

    def _stat_ns(self) -> int:
        try:
            return self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return 0

    def modification_marker(self) -> float:
        return self._stat_ns() / MARKER_STEP_NS

    def exists(self) -> bool:
        return self.path.exists()

    def read_raw(self) -> dict:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise StoreCorrupted(f"{self.path.name} is not valid UTF-8: {e}")
        try:
            doc = json.loads(raw)
        except ValueError as e:
            raise StoreCorrupted(f"{self.path.name} is not valid JSON: {e}")
        if not isinstance(doc, dict):
            raise StoreCorrupted(f"{self.path.name} does not hold a JSON object")
        return doc

    def load(self) -> dict:
        if not self.path.exists():
            doc = default_config()
            with self._write_lock:
                self._write(doc)
            log_flask(f"Created default {self.path.name}")
            return doc
        return merge_over_defaults(self.read_raw())

    def load_or_default(self) -> dict:
        try:
            return self.load()
        except StoreCorrupted as e:
            # leave the corrupt bytes on disk for recovery
            log(f"CONFIG_CORRUPT: {e}; serving defaults")
            return default_config()

    def save(self, doc, expected_marker: Optional[float] = None, auto_backup: bool = True) -> float:
        """Validate, stamp and atomically write `doc`; return the new marker.

        When a backup manager is attached and `auto_backup` is set, the
        previous committed document is snapshotted first if the backup
        policy asks for it.
        """
        require_services(doc, ValidationError, "config")
        if not isinstance(doc.get("metadata", {}), dict):
            raise ValidationError("config: 'metadata' must be an object")

        with self._write_lock:
            current = self.modification_marker()
            if expected_marker is not None and float(expected_marker) != current:
                raise Conflict("config changed since expected marker", modificationMarker=current)

            new = copy.deepcopy(doc)
            meta = dict(new.get("metadata") or {})
            previous = self._read_previous()
            if previous is not None:
                prev_meta = previous.get("metadata") if isinstance(previous.get("metadata"), dict) else {}
                for key in SERVER_OWNED_META:
                    if key in prev_meta:
                        meta[key] = prev_meta[key]
                    else:
                        meta.pop(key, None)
                if auto_backup and self.backups is not None:
                    stamp = self.backups.backup_before_write(previous)
                    if stamp:
                        meta["lastBackup"], meta["configHash"] = stamp

            meta["lastModified"] = now_iso()
            if "backupCadenceMinutes" in meta:
                meta["backupCadenceMinutes"] = clamp_cadence(meta["backupCadenceMinutes"])
            new["metadata"] = meta
            return self._write(new)

    def _read_previous(self) -> Optional[dict]:
        if not self.path.exists():
            return None
        try:
            return self.read_raw()
        except StoreCorrupted as e:
            keep = self.path.with_name(
                f"{self.path.name}.corrupt-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S%f')}"
            )
            try:
                shutil.copy2(self.path, keep)
                log(f"CONFIG_CORRUPT: {e}; kept copy as {keep.name}")
            except OSError as copy_err:
                log(f"CONFIG_CORRUPT: {e}; could not keep copy: {copy_err}")
            return None

    def _write(self, doc: dict) -> float:
        try:
            data = json.dumps(doc, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"config is not JSON serializable: {e}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            tmp.replace(self.path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        ns = self.path.stat().st_mtime_ns
        if ns <= self._last_mtime_ns:
            ns = self._last_mtime_ns + MARKER_STEP_NS
            os.utime(self.path, ns=(ns, ns))
        self._last_mtime_ns = ns
        return ns / MARKER_STEP_NS

    def check_for_changes(self, since_marker) -> dict:
        """Pure read: strictly-greater comparison against `since_marker`."""
        try:
            since = float(since_marker)
        except (TypeError, ValueError):
            since = 0.0
        marker = self.modification_marker()
        return {"changed": marker > since, "modificationMarker": marker}

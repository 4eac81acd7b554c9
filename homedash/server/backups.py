"""
Backup Manager: snapshot policy, storage, retention and restore.

Backups are plain JSON copies of the Configuration Document in the backup
directory. Creation time comes from the file's mtime.
"""
import json
import pathlib
import re
from datetime import datetime, timezone
from typing import Optional

from homedash.document import (
    clamp_cadence,
    content_hash,
    iso_to_dt,
    merge_over_defaults,
    now_iso,
    require_services,
    service_count,
)
from homedash.server.errors import (
    InvalidBackup,
    InvalidSource,
    NotFound,
    PathTraversal,
    StoreCorrupted,
)
from homedash.server.logs import log, log_flask

# Fixed for now; meant to become a server setting like the cadence.
BACKUP_RETENTION = 10

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def backup_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def sanitize_name(name: str) -> str:
    name = (name or "").strip()
    if name.lower().endswith(".json"):
        name = name[:-5]
    return _UNSAFE_NAME_CHARS.sub("_", name)


def check_filename(filename: str):
    """Reject anything that could leave the backup directory."""
    if not filename or not isinstance(filename, str):
        raise PathTraversal("empty filename")
    if ".." in filename or "/" in filename or "\\" in filename or "\0" in filename:
        raise PathTraversal(f"invalid filename: {filename!r}")


class BackupManager:
    def __init__(self, backup_dir, store, retention: int = BACKUP_RETENTION):
        self.dir = pathlib.Path(backup_dir)
        self.store = store
        self.retention = retention
        store.backups = self

    # ---------------------
    # Policy
    # ---------------------
    def should_backup(self, previous: dict, now: Optional[datetime] = None) -> bool:
        """Policy for the document about to be overwritten.

        Every setting comes from `previous`, the committed state being
        snapshotted. A save that switches `backupEnabled` off is therefore
        still backed up once; the switch governs later saves.
        """
        meta = previous.get("metadata") if isinstance(previous, dict) else None
        if not isinstance(meta, dict):
            meta = {}
        if not meta.get("backupEnabled", True):
            return False
        last = iso_to_dt(meta.get("lastBackup"))
        if last is None:
            return True
        now = now or datetime.now(timezone.utc)
        minutes_since = (now - last).total_seconds() / 60
        if minutes_since < clamp_cadence(meta.get("backupCadenceMinutes")):
            return False
        return content_hash(previous) != (meta.get("configHash") or "")

    def backup_before_write(self, previous: dict):
        """Snapshot `previous` if policy says so; return (lastBackup, configHash) or None."""
        if not self.should_backup(previous):
            return None
        try:
            filename = self.create_backup(previous, name=f"config-backup-{backup_stamp()}")
        except (InvalidSource, OSError) as e:
            log(f"AUTO_BACKUP skipped: {e}")
            return None
        log_flask(f"AUTO_BACKUP saved: {filename}")
        return now_iso(), content_hash(previous)

    # ---------------------
    # Storage
    # ---------------------
    def _unique_path(self, base: str) -> pathlib.Path:
        path = self.dir / f"{base}.json"
        n = 1
        while path.exists():
            path = self.dir / f"{base}-{n}.json"
            n += 1
        return path

    def create_backup(self, doc: Optional[dict] = None, name: Optional[str] = None) -> str:
        if doc is None:
            try:
                doc = self.store.read_raw()
            except (StoreCorrupted, FileNotFoundError) as e:
                raise InvalidSource(f"live config unreadable: {e}")
        require_services(doc, InvalidSource, "backup source")

        base = sanitize_name(name) if name else ""
        if not base:
            base = f"backup-{backup_stamp()}"
        self.dir.mkdir(parents=True, exist_ok=True)
        path = self._unique_path(base)
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp.replace(path)
        except (OSError, TypeError, ValueError) as e:
            tmp.unlink(missing_ok=True)
            raise InvalidSource(f"could not write backup: {e}")
        log_flask(f"BACKUP saved: {path.name} ({service_count(doc)} services)")
        self.prune()
        return path.name

    def _backup_files(self):
        if not self.dir.is_dir():
            return []
        files = []
        for p in self.dir.glob("*.json"):
            try:
                files.append((p.stat().st_mtime_ns, p.name, p))
            except OSError:
                continue
        files.sort(reverse=True)
        return files

    def prune(self):
        files = self._backup_files()
        if len(files) <= self.retention:
            return 0
        removed = 0
        for _, name, p in files[self.retention:]:
            try:
                p.unlink()
                removed += 1
                log_flask(f"Pruned backup {name}")
            except OSError as e:
                log_flask(f"Prune error {name}: {e}")
        return removed

    def list_backups(self):
        backups = []
        for mtime_ns, name, p in self._backup_files():
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
                size = p.stat().st_size
            except (OSError, ValueError) as e:
                log_flask(f"Skipping unreadable backup {name}: {e}")
                continue
            backups.append({
                "name": p.stem,
                "filename": name,
                "createdAt": datetime.fromtimestamp(mtime_ns / 1e9, tz=timezone.utc).isoformat(),
                "size": size,
                "serviceCount": service_count(data),
            })
        return backups

    def backup_path(self, filename: str) -> pathlib.Path:
        check_filename(filename)
        path = self.dir / filename
        if not path.is_file():
            raise NotFound(f"backup not found: {filename}")
        return path

    # ---------------------
    # Restore / delete
    # ---------------------
    def restore(self, filename: str) -> dict:
        path = self.backup_path(filename)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise InvalidBackup(f"backup unreadable: {e}")
        require_services(payload, InvalidBackup, "backup")

        safety = None
        try:
            safety = self.create_backup(self.store.read_raw(), name=f"pre-restore-{backup_stamp()}")
        except (StoreCorrupted, InvalidSource, OSError) as e:
            log(f"RESTORE safety backup failed, continuing: {e}")

        doc = merge_over_defaults(payload)
        doc["metadata"]["restoredFrom"] = filename
        doc["metadata"]["restoredAt"] = now_iso()
        marker = self.store.save(doc, auto_backup=False)
        log(f"RESTORE applied {filename} (safety={safety})")
        return {
            "success": True,
            "servicesCount": len(doc["services"]),
            "safetyBackupFilename": safety,
            "modificationMarker": marker,
        }

    def delete_backup(self, filename: str) -> bool:
        check_filename(filename)
        (self.dir / filename).unlink(missing_ok=True)
        log_flask(f"BACKUP deleted: {filename}")
        return True

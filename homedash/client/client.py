#!/usr/bin/env python3
"""
homedash client: keeps a local copy of the dashboard config in sync with
the server.

Local edits are applied immediately and pushed after a short debounce; a
poll loop pulls the server copy when its modification marker moves. The
server copy is authoritative and the last completed write wins.

Usage:
  homedash-client --server http://homelab:3001 sync --watch
"""
import argparse
import copy
import hashlib
import json
import os
import pathlib
import sys
import threading
import time
import traceback
from datetime import datetime, timezone
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from homedash.client.api import ApiError, ConfigApi, normalize_url
from homedash.document import (
    default_config,
    merge_over_defaults,
    now_iso,
    require_services,
    validate_service,
)

APP_DIR = pathlib.Path(os.environ.get("HOMEDASH_CLIENT_DIR", pathlib.Path.home() / ".homedash"))
CONF_FILE_NAME = "config.json"
CACHE_FILE_NAME = "dashboard.json"
UI_STATE_FILE_NAME = "ui_state.json"

DEFAULT_SERVER_URL = "http://localhost:3001"
DEFAULT_POLL_INTERVAL = 5
SAVE_DEBOUNCE = 0.5
MIRROR_DEBOUNCE = 1.0
ERROR_REPEAT_SECONDS = 60


class SyncState:
    LOADING = "loading"
    SYNCED = "synced"
    SYNCING = "syncing"
    OFFLINE = "offline"


class InvalidConfig(ValueError):
    pass


def ensure_dirs(app_dir=APP_DIR):
    pathlib.Path(app_dir).mkdir(parents=True, exist_ok=True)


def load_config(app_dir=APP_DIR):
    conf_file = pathlib.Path(app_dir) / CONF_FILE_NAME
    if not conf_file.exists():
        cfg = {
            "server_url": DEFAULT_SERVER_URL,
            "poll_interval": DEFAULT_POLL_INTERVAL,
            "debounce_seconds": SAVE_DEBOUNCE,
            "strict_writes": False,
            "watch_mirror": False,
        }
        save_config(cfg, app_dir)
        return cfg
    return json.loads(conf_file.read_text(encoding="utf-8"))


def save_config(cfg, app_dir=APP_DIR):
    ensure_dirs(app_dir)
    (pathlib.Path(app_dir) / CONF_FILE_NAME).write_text(json.dumps(cfg, indent=2), encoding="utf-8")


def compute_signature(doc) -> str:
    """Deterministic signature of a whole document (key order independent)."""
    h = hashlib.sha256()
    h.update(json.dumps(doc, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))
    return h.hexdigest()


def _write_json_atomic(path: pathlib.Path, data) -> str:
    text = json.dumps(data, indent=2, ensure_ascii=False)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)
    return text


class DebounceHandler(FileSystemEventHandler):
    """Fires `callback` once `delay` seconds after the last event for `path`."""

    def __init__(self, callback, path, delay=MIRROR_DEBOUNCE):
        super().__init__()
        self.callback = callback
        self.path = os.path.abspath(str(path))
        self.delay = delay
        self._timer = None
        self._lock = threading.Lock()

    def _start_timer(self):
        with self._lock:
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self):
        try:
            self.callback()
        except Exception as e:
            print("watcher callback error:", e)

    def cancel(self):
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None

    def on_any_event(self, event):
        # editors often save by renaming a temp file over the target
        paths = {os.path.abspath(str(event.src_path))}
        dest = getattr(event, "dest_path", None)
        if dest:
            paths.add(os.path.abspath(str(dest)))
        if self.path in paths:
            self._start_timer()


class SyncController:
    """Client-side state holder for one dashboard connection.

    Mutations queue an intent and reschedule a single debounced push that
    drains the queue into one write. The poll loop skips while a push is in
    flight so a pull never overwrites the write being sent. An unpushed
    local edit can still be replaced by a newer server copy (last writer
    wins).
    """

    def __init__(
        self,
        api: ConfigApi,
        app_dir=APP_DIR,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        debounce: float = SAVE_DEBOUNCE,
        strict_writes: bool = False,
    ):
        self.api = api
        self.app_dir = pathlib.Path(app_dir)
        self.cache_file = self.app_dir / CACHE_FILE_NAME
        self.ui_state_file = self.app_dir / UI_STATE_FILE_NAME
        self.poll_interval = poll_interval
        self.debounce = debounce
        self.strict_writes = strict_writes

        self.config = default_config()
        self.marker = 0.0
        self.state = SyncState.LOADING
        self.sync_error: Optional[str] = None
        self.last_sync_time: Optional[datetime] = None
        self.backups = []
        self.collapsed_categories = self._load_ui_state().get("collapsedCategories", [])

        self._lock = threading.RLock()
        self._intents = []
        self._timer: Optional[threading.Timer] = None
        self._push_in_flight = False
        self._stop = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None
        self._observer = None
        self._mirror_handler = None
        self._mirror_sig = ""
        self._listeners = []
        self._last_error_msg = None
        self._last_error_print_ts = 0.0

    # ---------- lifecycle ----------
    def start(self, watch_mirror: bool = False):
        ensure_dirs(self.app_dir)
        self._stop.clear()
        self.load()
        self._poll_thread = threading.Thread(target=self.poll_loop, daemon=True)
        self._poll_thread.start()
        if watch_mirror:
            self.start_watcher()

    def stop(self):
        self._stop.set()
        self.stop_watcher()
        self.flush()
        if self._poll_thread:
            self._poll_thread.join(timeout=self.poll_interval + 1)
            self._poll_thread = None

    def subscribe(self, callback: Callable[["SyncController"], None]):
        self._listeners.append(callback)

    def _notify(self):
        for cb in list(self._listeners):
            try:
                cb(self)
            except Exception:
                traceback.print_exc()

    def _set_state(self, state, error=None):
        with self._lock:
            self.state = state
            if state == SyncState.SYNCED:
                self.sync_error = None
                self.last_sync_time = datetime.now(timezone.utc)
            elif error is not None:
                self.sync_error = error
        self._notify()

    def _report(self, what, err):
        msg = f"{what}: {err}"
        now_ts = time.time()
        if msg != self._last_error_msg or (now_ts - self._last_error_print_ts) >= ERROR_REPEAT_SECONDS:
            print("sync error", msg)
            self._last_error_msg = msg
            self._last_error_print_ts = now_ts

    # ---------- local copies ----------
    def _read_local_copy(self) -> Optional[dict]:
        if not self.cache_file.exists():
            return None
        try:
            doc = json.loads(self.cache_file.read_text(encoding="utf-8"))
            require_services(doc, InvalidConfig, "local copy")
            return doc
        except (OSError, ValueError) as e:
            self._report("local copy", e)
            return None

    def _write_local_copy(self, doc):
        try:
            ensure_dirs(self.app_dir)
            with self._lock:
                self._mirror_sig = compute_signature(doc)
            _write_json_atomic(self.cache_file, doc)
        except OSError as e:
            self._report("local copy", e)

    def _load_ui_state(self) -> dict:
        try:
            return json.loads(self.ui_state_file.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    def _save_ui_state(self):
        try:
            ensure_dirs(self.app_dir)
            _write_json_atomic(self.ui_state_file, {"collapsedCategories": self.collapsed_categories})
        except OSError as e:
            self._report("ui state", e)

    # ---------- load / push / poll ----------
    def load(self) -> bool:
        self._set_state(SyncState.LOADING)
        try:
            config, marker = self.api.get_config()
        except ApiError as e:
            self._report("load", e)
            cached = self._read_local_copy()
            with self._lock:
                self.config = cached if cached is not None else default_config()
            self._set_state(SyncState.OFFLINE, error="Failed to connect to server")
            return False
        with self._lock:
            self.config = config
            self.marker = marker
        self._write_local_copy(config)
        self._set_state(SyncState.SYNCED)
        self.refresh_backups()
        return True

    def mutate(self, intent: str, fn: Callable[[dict], None]):
        """Apply `fn` to a copy of the document, adopt it, and queue a push."""
        with self._lock:
            new = copy.deepcopy(self.config)
            fn(new)
            meta = new.get("metadata")
            if not isinstance(meta, dict):
                meta = new["metadata"] = {}
            meta["lastModified"] = now_iso()
            self.config = new
            self._intents.append(intent)
            self._schedule_push()
        self._notify()

    def _schedule_push(self):
        with self._lock:
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce, self._drain)
            self._timer.daemon = True
            self._timer.start()

    def pending_intents(self):
        with self._lock:
            return list(self._intents)

    def flush(self):
        """Push queued intents now instead of waiting for the debounce timer."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
        self._drain()

    def _drain(self):
        with self._lock:
            self._timer = None
            if not self._intents or self._push_in_flight:
                return
            intents, self._intents = self._intents, []
            snapshot = copy.deepcopy(self.config)
            expected = self.marker if self.strict_writes else None
            self._push_in_flight = True
        self._set_state(SyncState.SYNCING)
        try:
            marker = self.api.save_config(snapshot, expected_marker=expected)
        except Exception as e:
            with self._lock:
                self._push_in_flight = False
            self._write_local_copy(snapshot)
            if isinstance(e, ApiError) and e.status == 409 and self.strict_writes:
                self._report("save", f"server copy changed, dropping {len(intents)} local edit(s)")
                self.pull()
                return
            with self._lock:
                # retried on the next poll cycle
                self._intents = intents + self._intents
            self._report("save", e)
            self._set_state(SyncState.OFFLINE, error="Failed to save to server")
            return
        with self._lock:
            self.marker = marker
            self._push_in_flight = False
        self._write_local_copy(snapshot)
        self._set_state(SyncState.SYNCED)

    def poll_loop(self):
        while not self._stop.wait(self.poll_interval):
            try:
                self.poll_once()
            except Exception as e:
                self._report("poll", e)

    def poll_once(self) -> bool:
        """One poll cycle; True when a newer server copy was pulled."""
        with self._lock:
            if self._push_in_flight:
                return False
            retry = bool(self._intents) and self._timer is None
            since = self.marker
        if retry:
            self._drain()
            return False
        try:
            changed, _ = self.api.check_for_changes(since)
        except ApiError as e:
            self._report("check", e)
            self._set_state(SyncState.OFFLINE, error="Failed to reach server")
            return False
        if not changed:
            if self.state == SyncState.OFFLINE:
                self._set_state(SyncState.SYNCED)
            return False
        return self.pull()

    def pull(self) -> bool:
        self._set_state(SyncState.SYNCING)
        try:
            config, marker = self.api.get_config()
        except ApiError as e:
            self._report("pull", e)
            self._set_state(SyncState.OFFLINE, error="Failed to reach server")
            return False
        with self._lock:
            if self._push_in_flight:
                return False
            if self._timer:
                self._timer.cancel()
                self._timer = None
            self._intents = []
            self.config = config
            self.marker = marker
        self._write_local_copy(config)
        self._set_state(SyncState.SYNCED)
        return True

    # ---------- document operations ----------
    def set_config(self, new_config: dict):
        require_services(new_config, InvalidConfig, "config")
        replacement = copy.deepcopy(new_config)

        def apply(doc):
            doc.clear()
            doc.update(replacement)

        self.mutate("set_config", apply)

    def add_service(self, service: dict):
        errors = validate_service(service)
        if errors:
            raise InvalidConfig(", ".join(errors))

        def apply(doc):
            doc.setdefault("services", []).append(dict(service))
            order = doc.setdefault("categoryOrder", [])
            if service["category"] not in order:
                order.append(service["category"])

        self.mutate("add_service", apply)

    def update_service(self, index: int, service: dict):
        errors = validate_service(service)
        if errors:
            raise InvalidConfig(", ".join(errors))
        if not 0 <= index < len(self.config.get("services", [])):
            raise IndexError(f"no service at index {index}")

        def apply(doc):
            doc["services"][index] = dict(service)

        self.mutate("update_service", apply)

    def delete_service(self, index: int):
        if not 0 <= index < len(self.config.get("services", [])):
            raise IndexError(f"no service at index {index}")

        def apply(doc):
            del doc["services"][index]

        self.mutate("delete_service", apply)

    def add_category(self, name: str):
        if name in self.config.get("categoryOrder", []):
            return

        def apply(doc):
            doc.setdefault("categoryOrder", []).append(name)

        self.mutate("add_category", apply)

    def update_category(self, old_name: str, new_name: str):
        def apply(doc):
            for s in doc.get("services", []):
                if s.get("category") == old_name:
                    s["category"] = new_name
            doc["categoryOrder"] = [new_name if c == old_name else c for c in doc.get("categoryOrder", [])]

        self.mutate("update_category", apply)
        if old_name in self.collapsed_categories:
            self.collapsed_categories = [new_name if c == old_name else c for c in self.collapsed_categories]
            self._save_ui_state()

    def delete_category(self, name: str):
        def apply(doc):
            doc["services"] = [s for s in doc.get("services", []) if s.get("category") != name]
            doc["categoryOrder"] = [c for c in doc.get("categoryOrder", []) if c != name]

        self.mutate("delete_category", apply)

    def reorder_categories(self, new_order):
        new_order = list(new_order)

        def apply(doc):
            doc["categoryOrder"] = new_order

        self.mutate("reorder_categories", apply)

    def toggle_category_collapse(self, category: str):
        """UI-only state: kept in the client's own file and never pushed."""
        with self._lock:
            if category in self.collapsed_categories:
                self.collapsed_categories = [c for c in self.collapsed_categories if c != category]
            else:
                self.collapsed_categories = self.collapsed_categories + [category]
        self._save_ui_state()
        self._notify()
        return category in self.collapsed_categories

    def grouped_services(self):
        """Services grouped by categoryOrder; orphans go under 'Uncategorized'."""
        with self._lock:
            services = list(self.config.get("services", []))
            order = list(self.config.get("categoryOrder", []))
        groups = {c: [] for c in order}
        for s in services:
            cat = s.get("category") if s.get("category") in groups else "Uncategorized"
            groups.setdefault(cat, []).append(s)
        return groups

    # ---------- backups ----------
    def refresh_backups(self):
        try:
            self.backups = self.api.list_backups()
        except ApiError as e:
            self._report("backups", e)
        return self.backups

    def create_backup(self, name: Optional[str] = None) -> Optional[str]:
        try:
            filename = self.api.create_backup(name)
        except ApiError as e:
            self._report("create backup", e)
            self.sync_error = "Failed to create backup"
            return None
        self.refresh_backups()
        return filename

    def restore_backup(self, filename: str) -> Optional[dict]:
        try:
            result = self.api.restore_backup(filename)
        except ApiError as e:
            self._report("restore backup", e)
            self.sync_error = "Failed to restore backup"
            return None
        self.pull()
        with self._lock:
            self.collapsed_categories = list(self.config.get("collapsedCategories") or [])
        self._save_ui_state()
        self.refresh_backups()
        return result

    def delete_backup(self, filename: str) -> bool:
        try:
            self.api.delete_backup(filename)
        except ApiError as e:
            self._report("delete backup", e)
            self.sync_error = "Failed to delete backup"
            return False
        self.refresh_backups()
        return True

    # ---------- import / export ----------
    def import_config(self, path):
        try:
            doc = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise InvalidConfig(f"cannot read {path}: {e}")
        require_services(doc, InvalidConfig, "imported config")
        self.set_config(merge_over_defaults(doc))

    def export_config(self, path) -> pathlib.Path:
        target = pathlib.Path(path)
        if target.is_dir():
            target = target / f"homedash-config-{datetime.now().strftime('%Y-%m-%d')}.json"
        with self._lock:
            doc = copy.deepcopy(self.config)
        target.write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")
        return target

    # ---------- local mirror watching ----------
    def start_watcher(self):
        if self._observer:
            return
        ensure_dirs(self.app_dir)
        if not self.cache_file.exists():
            self._write_local_copy(self.config)
        self._mirror_handler = DebounceHandler(self._on_mirror_changed, self.cache_file)
        self._observer = Observer()
        self._observer.schedule(self._mirror_handler, path=str(self.app_dir), recursive=False)
        self._observer.daemon = True
        self._observer.start()

    def stop_watcher(self):
        if self._mirror_handler:
            self._mirror_handler.cancel()
            self._mirror_handler = None
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=1.0)
            self._observer = None

    def _on_mirror_changed(self):
        try:
            doc = json.loads(self.cache_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            self._report("mirror", e)
            return
        with self._lock:
            if compute_signature(doc) == self._mirror_sig:
                # our own write
                return
        try:
            self.set_config(doc)
        except InvalidConfig as e:
            self._report("mirror", e)


# ---------------------
# CLI
# ---------------------
def _print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False))


def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="homedash-client")
    p.add_argument("--server", help="server URL (remembered in the client config)")
    p.add_argument("--app-dir", default=str(APP_DIR))
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("sync", help="keep the local copy in sync until interrupted")
    s.add_argument("--watch", action="store_true", help="push hand edits of the local copy")
    sub.add_parser("status")
    sub.add_parser("backups")
    b = sub.add_parser("backup")
    b.add_argument("name", nargs="?")
    r = sub.add_parser("restore")
    r.add_argument("filename")
    d = sub.add_parser("delete-backup")
    d.add_argument("filename")
    e = sub.add_parser("export")
    e.add_argument("path", nargs="?", default=".")
    i = sub.add_parser("import")
    i.add_argument("path")
    a = sub.add_parser("add-service")
    a.add_argument("--name", required=True)
    a.add_argument("--url", required=True)
    a.add_argument("--category", required=True)
    a.add_argument("--icon", default="")
    a.add_argument("--description", default="")
    sub.add_parser("cache-info")
    sub.add_parser("clear-cache")
    px = sub.add_parser("proxy-icon")
    px.add_argument("url")
    return p.parse_args(argv)


def _print_state(ctrl: SyncController):
    suffix = f" ({ctrl.sync_error})" if ctrl.state == SyncState.OFFLINE and ctrl.sync_error else ""
    print(f"[{now_iso()}] {ctrl.state}{suffix}")


def run_sync(ctrl: SyncController, watch: bool):
    last = {"state": None}

    def on_change(c):
        if c.state != last["state"]:
            last["state"] = c.state
            _print_state(c)

    ctrl.subscribe(on_change)
    ctrl.start(watch_mirror=watch)
    print(f"Local copy: {ctrl.cache_file}")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print()
    finally:
        ctrl.stop()
    return 0


def main(argv=None):
    args = parse_args(argv)
    app_dir = pathlib.Path(args.app_dir)
    cfg = load_config(app_dir)
    if args.server:
        cfg["server_url"] = normalize_url(args.server)
        save_config(cfg, app_dir)

    api = ConfigApi(cfg.get("server_url") or DEFAULT_SERVER_URL)
    ctrl = SyncController(
        api,
        app_dir=app_dir,
        poll_interval=float(cfg.get("poll_interval", DEFAULT_POLL_INTERVAL)),
        debounce=float(cfg.get("debounce_seconds", SAVE_DEBOUNCE)),
        strict_writes=bool(cfg.get("strict_writes", False)),
    )

    if args.command == "sync":
        return run_sync(ctrl, args.watch or bool(cfg.get("watch_mirror", False)))

    try:
        if args.command == "cache-info":
            _print_json(api.icon_cache_info())
            return 0
        if args.command == "clear-cache":
            _print_json(api.clear_icon_cache())
            return 0
        if args.command == "proxy-icon":
            _print_json(api.proxy_icon(args.url))
            return 0
    except ApiError as e:
        print(f"error: {e}")
        return 1

    online = ctrl.load()
    if args.command == "status":
        _print_state(ctrl)
        groups = ctrl.grouped_services()
        for cat, services in groups.items():
            mark = " (collapsed)" if cat in ctrl.collapsed_categories else ""
            print(f"{cat}{mark}")
            for s in services:
                print(f"  {s.get('name')}: {s.get('url')}")
        return 0 if online else 1
    if args.command == "export":
        print(ctrl.export_config(args.path))
        return 0
    if not online:
        print(f"error: server unreachable ({ctrl.sync_error})")
        return 1

    if args.command == "backups":
        for i, b in enumerate(ctrl.backups):
            print(f"{i+1}. {b['filename']} @ {b.get('createdAt')} ({b.get('serviceCount')} services)")
        return 0
    if args.command == "backup":
        filename = ctrl.create_backup(args.name)
        print(filename or f"error: {ctrl.sync_error}")
        return 0 if filename else 1
    if args.command == "restore":
        res = ctrl.restore_backup(args.filename)
        if res is None:
            print(f"error: {ctrl.sync_error}")
            return 1
        _print_json(res)
        return 0
    if args.command == "delete-backup":
        return 0 if ctrl.delete_backup(args.filename) else 1

    try:
        if args.command == "import":
            ctrl.import_config(args.path)
        elif args.command == "add-service":
            ctrl.add_service({
                "name": args.name,
                "url": args.url,
                "category": args.category,
                "icon": args.icon,
                "description": args.description,
            })
    except InvalidConfig as e:
        print(f"error: {e}")
        return 1
    ctrl.flush()
    _print_state(ctrl)
    return 0 if ctrl.state == SyncState.SYNCED else 1


if __name__ == "__main__":
    sys.exit(main())

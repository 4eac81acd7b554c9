#!/usr/bin/env python3
"""
homedash server: Flask API over the dashboard config, backups and icon cache,
with an interactive admin console.
"""
import argparse
import logging
import os
import pathlib
import re
import socket
import sys
import threading
import time

from flask import Flask, jsonify, request, send_file, send_from_directory

from homedash import __version__
from homedash.document import now_iso, validate_service
from homedash.server.backups import BackupManager
from homedash.server.errors import HomedashError, NotFound, StoreCorrupted, ValidationError
from homedash.server.icons import CACHE_URL_PREFIX, IconCache
from homedash.server.logs import log, log_flask, log_lines, set_log_file
from homedash.server.store import ConfigStore

# ---------------------
# Config & Globals
# ---------------------
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = int(os.environ.get("PORT", "3001"))
DATA_DIR = pathlib.Path(os.environ.get("HOMEDASH_DATA_DIR", pathlib.Path.cwd() / "data"))

MAX_BODY_BYTES = 10 * 1024 * 1024
MAX_ICON_BYTES = 5 * 1024 * 1024

_UNSAFE_UPLOAD_CHARS = re.compile(r"[^A-Za-z0-9._-]")

_started_at = time.time()


class Homedash:
    """Per-process server state: one store, its backups and the icon cache."""

    def __init__(self, data_dir):
        self.data_dir = pathlib.Path(data_dir)
        self.config_file = self.data_dir / "config.json"
        self.backups_dir = self.data_dir / "backups"
        self.icon_dir = self.data_dir / "icon-cache"
        self.uploads_dir = self.data_dir / "uploads"
        for d in (self.data_dir, self.backups_dir, self.icon_dir, self.uploads_dir):
            d.mkdir(parents=True, exist_ok=True)
        self.store = ConfigStore(self.config_file)
        self.backups = BackupManager(self.backups_dir, self.store)
        self.icons = IconCache(self.icon_dir)

    def start(self):
        """Create the default document on first run; tolerate a corrupt one."""
        try:
            self.store.load()
        except StoreCorrupted as e:
            log(f"CONFIG_CORRUPT at startup: {e}; serving defaults until next save")


def get_lan_ip():
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError:
        return "127.0.0.1"


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError("request body must be JSON")
    return data


def _expected_marker():
    raw = request.args.get("expectedMarker") or request.headers.get("X-Expected-Marker")
    if raw in (None, ""):
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"bad expectedMarker: {raw}")


def _ok(**payload):
    return jsonify({"success": True, **payload, "timestamp": now_iso()})


# ---------------------
# Flask App
# ---------------------
def create_app(data_dir=None) -> Flask:
    hd = Homedash(data_dir or DATA_DIR)
    hd.start()

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_BODY_BYTES
    app.extensions["homedash"] = hd
    logging.getLogger("werkzeug").setLevel(logging.ERROR)

    @app.errorhandler(HomedashError)
    def _homedash_error(e):
        if e.status >= 500:
            log_flask(f"{request.method} {request.path} failed: {e.code}: {e.msg}")
        return jsonify(e.to_json()), e.status

    @app.route("/", methods=["GET"])
    def index():
        return jsonify({"ok": True, "name": "homedash", "version": __version__})

    @app.route("/api/health", methods=["GET"])
    def health():
        return jsonify({
            "success": True,
            "status": "healthy",
            "timestamp": now_iso(),
            "version": __version__,
            "uptime": round(time.time() - _started_at, 3),
        })

    @app.route("/api/logs", methods=["GET"])
    def logs():
        return jsonify({"lines": log_lines()})

    # ----- config document -----
    @app.route("/api/config", methods=["GET"])
    def get_config():
        return jsonify({"config": hd.store.load_or_default(), "modificationMarker": hd.store.modification_marker()})

    @app.route("/api/config", methods=["PUT", "POST"])
    def put_config():
        doc = _json_body()
        marker = hd.store.save(doc, expected_marker=_expected_marker())
        log_flask(f"CONFIG saved ({len(doc['services'])} services) marker={marker}")
        return jsonify({"success": True, "modificationMarker": marker})

    @app.route("/api/config/check", methods=["GET"])
    def check_config():
        return jsonify(hd.store.check_for_changes(request.args.get("since", 0)))

    # ----- backups -----
    @app.route("/api/backups", methods=["GET"])
    def list_backups():
        return jsonify(hd.backups.list_backups())

    @app.route("/api/backups", methods=["POST"])
    def create_backup():
        data = request.get_json(silent=True) or {}
        filename = hd.backups.create_backup(name=data.get("name"))
        return jsonify({"success": True, "filename": filename})

    @app.route("/api/backups/restore/<path:filename>", methods=["POST"])
    def restore_backup(filename):
        return jsonify(hd.backups.restore(filename))

    @app.route("/api/backups/<path:filename>", methods=["GET"])
    def download_backup(filename):
        path = hd.backups.backup_path(filename)
        return send_file(str(path), as_attachment=True, download_name=path.name, mimetype="application/json")

    @app.route("/api/backups/<path:filename>", methods=["DELETE"])
    def delete_backup(filename):
        return jsonify({"success": hd.backups.delete_backup(filename)})

    # ----- icons -----
    @app.route("/api/icons/proxy", methods=["GET"])
    def proxy_icon():
        return jsonify(hd.icons.proxy(request.args.get("url")))

    @app.route("/api/icons/cache-info", methods=["GET"])
    def icon_cache_info():
        return jsonify(hd.icons.cache_info())

    @app.route("/api/icons/cache", methods=["DELETE"])
    def clear_icon_cache():
        return jsonify(hd.icons.clear_cache())

    @app.route(f"{CACHE_URL_PREFIX}/<filename>", methods=["GET"])
    def cached_icon(filename):
        return send_from_directory(str(hd.icon_dir), filename)

    @app.route("/api/upload-icon", methods=["POST"])
    def upload_icon():
        if not (request.content_type or "").startswith("image/"):
            raise ValidationError("upload must be an image/* body")
        body = request.get_data()
        if not body:
            raise ValidationError("empty upload")
        if len(body) > MAX_ICON_BYTES:
            raise ValidationError("icon larger than 5 MB")
        name = _UNSAFE_UPLOAD_CHARS.sub("_", request.args.get("name") or "icon.png").lstrip(".") or "icon.png"
        filename = f"{int(time.time() * 1000)}-{name}"
        (hd.uploads_dir / filename).write_bytes(body)
        log_flask(f"UPLOAD icon saved: {filename}")
        return jsonify({"url": f"/uploads/{filename}"})

    @app.route("/uploads/<filename>", methods=["GET"])
    def uploaded_icon(filename):
        return send_from_directory(str(hd.uploads_dir), filename)

    # ----- services / settings (thin CRUD over the store) -----
    @app.route("/api/services", methods=["GET"])
    def list_services():
        services = hd.store.load_or_default()["services"]
        return _ok(data=services, count=len(services))

    @app.route("/api/services", methods=["POST"])
    def add_service():
        service = _json_body()
        errors = validate_service(service)
        if errors:
            raise ValidationError(", ".join(errors))
        config = hd.store.load()
        if any(s.get("name") == service["name"] for s in config["services"]):
            raise ValidationError("Service with this name already exists")
        config["services"].append(service)
        if service["category"] not in config["categoryOrder"]:
            config["categoryOrder"].append(service["category"])
        hd.store.save(config)
        return _ok(message="Service added successfully", service=service)

    @app.route("/api/services/<name>", methods=["PUT"])
    def update_service(name):
        service = _json_body()
        errors = validate_service(service)
        if errors:
            raise ValidationError(", ".join(errors))
        config = hd.store.load()
        idx = next((i for i, s in enumerate(config["services"]) if s.get("name") == name), None)
        if idx is None:
            raise NotFound("Service not found")
        if service["name"] != name and any(s.get("name") == service["name"] for s in config["services"]):
            raise ValidationError("Service with this name already exists")
        config["services"][idx] = service
        hd.store.save(config)
        return _ok(message="Service updated successfully", service=service)

    @app.route("/api/services/<name>", methods=["DELETE"])
    def delete_service(name):
        config = hd.store.load()
        remaining = [s for s in config["services"] if s.get("name") != name]
        if len(remaining) == len(config["services"]):
            raise NotFound("Service not found")
        config["services"] = remaining
        hd.store.save(config)
        return _ok(message="Service deleted successfully")

    @app.route("/api/settings", methods=["PATCH"])
    def patch_settings():
        patch = _json_body()
        if not isinstance(patch, dict):
            raise ValidationError("settings patch must be an object")
        config = hd.store.load()
        settings = config.get("settings") if isinstance(config.get("settings"), dict) else {}
        config["settings"] = {**settings, **patch}
        hd.store.save(config)
        return _ok(message="Settings updated successfully", settings=config["settings"])

    return app


# ---------------------
# Admin Command Handler
# ---------------------
def _resolve_backup(hd: Homedash, ref: str) -> str:
    """Accept a 1-based slot from displaybackups or a filename."""
    if ref.isdigit():
        backups = hd.backups.list_backups()
        slot = int(ref)
        if not (1 <= slot <= len(backups)):
            raise NotFound(f"bad slot {slot}")
        return backups[slot - 1]["filename"]
    return ref


def admin_command_handler(hd: Homedash, cmdline: str):
    cmdline = (cmdline or "").strip()
    if not cmdline:
        return {"ok": False, "output": "empty"}
    parts = cmdline.split()
    cmd = parts[0].lower()
    args = parts[1:]
    try:
        if cmd == "help":
            out = (
                "Commands:\n"
                " help\n"
                " status\n"
                " displaybackups\n"
                " backup [name]\n"
                " restorebackup <slot|filename>\n"
                " deletebackup <slot|filename>\n"
                " cacheinfo\n"
                " clearcache\n"
                " exit\n"
            )
            return {"ok": True, "output": out}

        if cmd == "status":
            config = hd.store.load_or_default()
            meta = config.get("metadata", {})
            out = [
                f"config: {hd.config_file}",
                f"services: {len(config.get('services', []))}",
                f"categories: {len(config.get('categoryOrder', []))}",
                f"marker: {hd.store.modification_marker()}",
                f"lastModified: {meta.get('lastModified')}",
                f"lastBackup: {meta.get('lastBackup')} (every {meta.get('backupCadenceMinutes')} min, "
                f"enabled={meta.get('backupEnabled')})",
            ]
            return {"ok": True, "output": "\n".join(out)}

        if cmd == "displaybackups":
            backups = hd.backups.list_backups()
            out = [
                f"{i+1}. {b['filename']} @ {b['createdAt']} ({b['serviceCount']} services)"
                for i, b in enumerate(backups)
            ]
            return {"ok": True, "output": "\n".join(out) or "(none)"}

        if cmd == "backup":
            filename = hd.backups.create_backup(name=" ".join(args) or None)
            print(f"ADMIN: backup {filename}")
            return {"ok": True, "output": f"backup saved {filename}"}

        if cmd in ("restorebackup", "restore"):
            if not args:
                return {"ok": False, "output": "usage: restorebackup <slot|filename>"}
            res = hd.backups.restore(_resolve_backup(hd, args[0]))
            print(f"ADMIN: restored {args[0]}")
            return {"ok": True, "output": f"restored {res['servicesCount']} services "
                                          f"(safety backup: {res['safetyBackupFilename']})"}

        if cmd == "deletebackup":
            if not args:
                return {"ok": False, "output": "usage: deletebackup <slot|filename>"}
            filename = _resolve_backup(hd, args[0])
            hd.backups.delete_backup(filename)
            return {"ok": True, "output": f"deleted {filename}"}

        if cmd == "cacheinfo":
            info = hd.icons.cache_info()
            return {"ok": True, "output": f"{info['count']} icons, {info['totalSizeFormatted']}"}

        if cmd == "clearcache":
            res = hd.icons.clear_cache()
            return {"ok": True, "output": f"deleted {res['deletedCount']} icons ({res['failedCount']} failed)"}

        if cmd == "exit":
            return {"ok": True, "output": "exit"}

        return {"ok": False, "output": f"unknown command: {cmd}"}

    except HomedashError as e:
        return {"ok": False, "output": f"{e.code}: {e.msg}"}
    except Exception as e:
        log(f"ADMIN_CMD_ERROR: {e}")
        return {"ok": False, "output": str(e)}


def make_wsgi_server(app, host, port):
    from werkzeug.serving import make_server
    return make_server(host, port, app, threaded=True)


def run_flask_background(app, host, port):
    srv = make_wsgi_server(app, host, port)
    log_flask(f"Listening on http://{host}:{port}")
    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    return srv


def admin_repl_loop(hd: Homedash, host, port):
    print("===== homedash Admin Terminal =====")
    print(f"Server (LAN): http://{get_lan_ip()}:{port}")
    print(f"Server (bind): http://{host}:{port}")
    print(f"Data dir: {hd.data_dir}")
    print("Type 'help' for commands.")
    while True:
        try:
            cmd = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            print("Admin console exiting by interrupt")
            break
        if not cmd:
            continue
        res = admin_command_handler(hd, cmd)
        if res.get("output"):
            print(res["output"])
        if cmd.lower() == "exit":
            print("Admin requested exit")
            break
    print("Server shutting down.")


def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="homedash-server")
    p.add_argument("--host", default=DEFAULT_HOST)
    p.add_argument("--port", type=int, default=DEFAULT_PORT)
    p.add_argument("--data-dir", default=str(DATA_DIR))
    p.add_argument("--headless", action="store_true", help="serve in the foreground without the admin console")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    data_dir = pathlib.Path(args.data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    set_log_file(str(data_dir / "server.log"))

    app = create_app(data_dir)
    hd = app.extensions["homedash"]
    log(f"homedash {__version__} starting, data dir: {data_dir}")
    log(f"Config file: {hd.config_file}")
    log(f"Backups dir: {hd.backups_dir}")

    headless = args.headless or not sys.stdin.isatty()
    if headless:
        srv = make_wsgi_server(app, args.host, args.port)
        log(f"Listening on http://{args.host}:{args.port}")
        try:
            srv.serve_forever()
        except KeyboardInterrupt:
            log("Server shutting down.")
        finally:
            srv.server_close()
        return 0

    srv = run_flask_background(app, args.host, args.port)
    try:
        admin_repl_loop(hd, args.host, args.port)
    finally:
        srv.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())

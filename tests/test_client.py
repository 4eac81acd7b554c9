"""
Tests for the client sync controller and its CLI, run against the Flask app.
"""

import json
import threading
import time
from unittest.mock import MagicMock

import pytest

from homedash.client.api import ApiError, ConfigApi, normalize_url
from homedash.client.client import (
    InvalidConfig,
    SyncController,
    SyncState,
    compute_signature,
    load_config,
    main,
)

from conftest import make_doc, make_service

PUT = ("PUT", "/api/config")


def wait_for(predicate, timeout=3.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class _HtmlReply:
    status_code = 200
    text = "<html><body>Sign in to continue</body></html>"

    def json(self):
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


class PortalSession:
    """Answers every request with a 2xx HTML page, like a captive portal."""

    def __init__(self):
        self.calls = 0

    def request(self, method, url, **kwargs):
        self.calls += 1
        return _HtmlReply()


class TestLoad:
    def test_load_online(self, make_controller):
        ctrl = make_controller()
        assert ctrl.load() is True
        assert ctrl.state == SyncState.SYNCED
        assert ctrl.marker > 0
        assert ctrl.cache_file.exists()
        assert ctrl.last_sync_time is not None

    def test_load_offline_uses_local_copy(self, make_controller, hd):
        hd.store.save(make_doc("Grafana"))
        ctrl = make_controller()
        ctrl.load()
        ctrl.session.down = True
        assert ctrl.load() is False
        assert ctrl.state == SyncState.OFFLINE
        assert ctrl.sync_error == "Failed to connect to server"
        assert ctrl.config["services"][0]["name"] == "Grafana"

    def test_load_html_reply_falls_back_to_local_copy(self, make_controller, hd):
        hd.store.save(make_doc("Grafana"))
        ctrl = make_controller()
        ctrl.load()
        ctrl.api.session = PortalSession()
        assert ctrl.load() is False
        assert ctrl.state == SyncState.OFFLINE
        assert ctrl.config["services"][0]["name"] == "Grafana"

    def test_load_offline_without_local_copy(self, make_controller):
        ctrl = make_controller()
        ctrl.session.down = True
        assert ctrl.load() is False
        assert ctrl.config["services"] == []


class TestPush:
    def test_edits_are_coalesced_into_one_write(self, make_controller, hd):
        ctrl = make_controller(debounce=0.2)
        ctrl.load()
        ctrl.add_service(make_service("Grafana"))
        ctrl.add_service(make_service("Plex"))
        ctrl.add_category("Media")
        assert ctrl.pending_intents() == ["add_service", "add_service", "add_category"]
        assert wait_for(lambda: not ctrl.pending_intents() and ctrl.state == SyncState.SYNCED)
        assert ctrl.session.count(*PUT) == 1
        names = [s["name"] for s in hd.store.load()["services"]]
        assert names == ["Grafana", "Plex"]

    def test_flush_pushes_immediately(self, make_controller, hd):
        ctrl = make_controller(debounce=60)
        ctrl.load()
        ctrl.add_service(make_service("Grafana"))
        ctrl.flush()
        assert ctrl.session.count(*PUT) == 1
        assert ctrl.marker == hd.store.modification_marker()
        assert json.loads(ctrl.cache_file.read_text())["services"][0]["name"] == "Grafana"

    def test_failed_push_is_retried_on_next_poll(self, make_controller, hd):
        ctrl = make_controller(debounce=60)
        ctrl.load()
        ctrl.add_service(make_service("Grafana"))
        ctrl.session.down = True
        ctrl.flush()
        assert ctrl.state == SyncState.OFFLINE
        assert ctrl.sync_error == "Failed to save to server"
        assert ctrl.pending_intents() == ["add_service"]
        ctrl.session.down = False
        ctrl.poll_once()
        assert ctrl.state == SyncState.SYNCED
        assert hd.store.load()["services"][0]["name"] == "Grafana"

    def test_html_reply_to_push_keeps_edits_queued(self, make_controller, hd):
        ctrl = make_controller(debounce=60)
        ctrl.load()
        flask_session = ctrl.api.session
        ctrl.add_service(make_service("Grafana"))
        ctrl.api.session = PortalSession()
        ctrl.flush()
        assert ctrl.state == SyncState.OFFLINE
        assert ctrl.pending_intents() == ["add_service"]
        assert ctrl._push_in_flight is False
        # polls keep running and the next one retries the push
        ctrl.poll_once()
        assert ctrl.api.session.calls == 2
        ctrl.api.session = flask_session
        ctrl.poll_once()
        assert ctrl.state == SyncState.SYNCED
        assert ctrl.pending_intents() == []
        assert hd.store.load()["services"][0]["name"] == "Grafana"

    def test_unexpected_error_during_push_is_retried(self, tmp_path):
        api = MagicMock()
        api.get_config.return_value = (make_doc(), 1.0)
        api.list_backups.return_value = []
        api.save_config.side_effect = [KeyError("modificationMarker"), 3.0]
        ctrl = SyncController(api, app_dir=tmp_path / "c", debounce=60)
        ctrl.load()
        ctrl.add_service(make_service("Grafana"))
        ctrl.flush()
        assert ctrl.state == SyncState.OFFLINE
        assert ctrl.pending_intents() == ["add_service"]
        ctrl.flush()
        assert ctrl.marker == 3.0
        assert ctrl.state == SyncState.SYNCED

    def test_invalid_service_rejected_locally(self, make_controller):
        ctrl = make_controller()
        ctrl.load()
        with pytest.raises(InvalidConfig):
            ctrl.add_service({"name": "x"})
        with pytest.raises(InvalidConfig):
            ctrl.set_config({"nope": 1})
        assert ctrl.pending_intents() == []


class TestPoll:
    def test_poll_pulls_foreign_change(self, make_controller, hd):
        ctrl = make_controller()
        ctrl.load()
        assert ctrl.poll_once() is False
        hd.store.save(make_doc("Grafana"))
        assert ctrl.poll_once() is True
        assert ctrl.config["services"][0]["name"] == "Grafana"
        assert ctrl.marker == hd.store.modification_marker()
        assert ctrl.poll_once() is False

    def test_poll_skipped_while_push_in_flight(self, tmp_path):
        api = MagicMock()
        api.get_config.return_value = (make_doc(), 1.0)
        api.list_backups.return_value = []
        release = threading.Event()
        entered = threading.Event()

        def slow_save(config, expected_marker=None):
            entered.set()
            release.wait(2)
            return 2.0

        api.save_config.side_effect = slow_save
        ctrl = SyncController(api, app_dir=tmp_path / "c", debounce=60)
        ctrl.load()
        ctrl.add_service(make_service("Grafana"))
        pusher = threading.Thread(target=ctrl.flush)
        pusher.start()
        assert entered.wait(2)
        assert ctrl.state == SyncState.SYNCING
        assert ctrl.poll_once() is False
        api.check_for_changes.assert_not_called()
        release.set()
        pusher.join(2)
        assert ctrl.marker == 2.0
        assert ctrl.state == SyncState.SYNCED

    def test_poll_offline_then_recovers(self, make_controller):
        ctrl = make_controller()
        ctrl.load()
        ctrl.session.down = True
        ctrl.poll_once()
        assert ctrl.state == SyncState.OFFLINE
        ctrl.session.down = False
        ctrl.poll_once()
        assert ctrl.state == SyncState.SYNCED

    def test_background_poll_loop(self, make_controller, hd):
        ctrl = make_controller()
        ctrl.start()
        try:
            hd.store.save(make_doc("Grafana"))
            assert wait_for(lambda: len(ctrl.config["services"]) == 1)
        finally:
            ctrl.stop()


class TestTwoClients:
    def test_edit_on_one_client_appears_on_the_other(self, make_controller):
        a = make_controller("a", debounce=60)
        b = make_controller("b")
        a.load()
        b.load()
        a.add_service(make_service("Grafana", url="http://grafana.lan:3000"))
        a.flush()
        assert b.poll_once() is True
        svc = b.config["services"][0]
        assert svc["name"] == "Grafana" and svc["url"] == "http://grafana.lan:3000"
        assert b.config["categoryOrder"] == ["Monitoring"]

    def test_first_run_through_second_client_check(self, make_controller, hd):
        a = make_controller("a", debounce=0.1)
        b = make_controller("b")
        a.load()
        b.load()
        assert hd.store.load()["services"] == []
        old_marker = a.marker
        a.add_service(make_service("Grafana", url="http://grafana.local:3000"))
        assert wait_for(lambda: a.marker > old_marker)
        changed, marker = b.api.check_for_changes(old_marker)
        assert changed is True
        assert marker == a.marker

    def test_strict_writes_drop_stale_edit(self, make_controller, hd):
        a = make_controller("a", strict=True, debounce=60)
        b = make_controller("b", strict=True, debounce=60)
        a.load()
        b.load()
        a.add_service(make_service("Grafana"))
        a.flush()
        b.add_service(make_service("Plex"))
        b.flush()
        assert [s["name"] for s in hd.store.load()["services"]] == ["Grafana"]
        assert [s["name"] for s in b.config["services"]] == ["Grafana"]
        assert b.state == SyncState.SYNCED


class TestCategoryOps:
    def test_category_lifecycle(self, make_controller, hd):
        ctrl = make_controller(debounce=60)
        ctrl.load()
        ctrl.add_service(make_service("Grafana", "Monitoring"))
        ctrl.add_service(make_service("Plex", "Media"))
        ctrl.update_category("Media", "Streaming")
        assert ctrl.config["services"][1]["category"] == "Streaming"
        ctrl.reorder_categories(["Streaming", "Monitoring"])
        ctrl.delete_category("Monitoring")
        ctrl.flush()
        doc = hd.store.load()
        assert doc["categoryOrder"] == ["Streaming"]
        assert [s["name"] for s in doc["services"]] == ["Plex"]

    def test_update_and_delete_service_by_index(self, make_controller):
        ctrl = make_controller(debounce=60)
        ctrl.load()
        ctrl.add_service(make_service("Grafana"))
        ctrl.update_service(0, make_service("Grafana", url="http://g.lan"))
        assert ctrl.config["services"][0]["url"] == "http://g.lan"
        with pytest.raises(IndexError):
            ctrl.delete_service(5)
        ctrl.delete_service(0)
        assert ctrl.config["services"] == []

    def test_collapse_is_local_only(self, make_controller):
        ctrl = make_controller()
        ctrl.load()
        assert ctrl.toggle_category_collapse("Media") is True
        assert ctrl.pending_intents() == []
        assert ctrl.session.count(*PUT) == 0
        again = SyncController(ctrl.api, app_dir=ctrl.app_dir)
        assert again.collapsed_categories == ["Media"]
        assert ctrl.toggle_category_collapse("Media") is False

    def test_grouped_services(self, make_controller):
        ctrl = make_controller(debounce=60)
        ctrl.load()
        ctrl.set_config({
            "services": [make_service("A", "One"), make_service("B", "Gone")],
            "categoryOrder": ["One"],
        })
        groups = ctrl.grouped_services()
        assert [s["name"] for s in groups["One"]] == ["A"]
        assert [s["name"] for s in groups["Uncategorized"]] == ["B"]


class TestBackupOps:
    def test_create_restore_delete(self, make_controller, hd):
        ctrl = make_controller(debounce=60)
        ctrl.load()
        ctrl.add_service(make_service("Grafana"))
        ctrl.flush()
        filename = ctrl.create_backup("before")
        assert filename == "before.json"
        assert any(b["filename"] == filename for b in ctrl.backups)

        ctrl.delete_service(0)
        ctrl.flush()
        result = ctrl.restore_backup(filename)
        assert result["servicesCount"] == 1
        assert ctrl.config["services"][0]["name"] == "Grafana"
        assert ctrl.marker == hd.store.modification_marker()

        assert ctrl.delete_backup(filename) is True
        assert all(b["filename"] != filename for b in ctrl.backups)

    def test_restore_missing_reports_error(self, make_controller):
        ctrl = make_controller()
        ctrl.load()
        assert ctrl.restore_backup("missing.json") is None
        assert ctrl.sync_error == "Failed to restore backup"


class TestImportExport:
    def test_export_then_import(self, make_controller, hd, tmp_path):
        ctrl = make_controller(debounce=60)
        ctrl.load()
        ctrl.add_service(make_service("Grafana"))
        out = ctrl.export_config(tmp_path)
        assert out.name.startswith("homedash-config-") and out.suffix == ".json"

        other = make_controller("b", debounce=60)
        other.load()
        other.import_config(out)
        other.flush()
        assert hd.store.load()["services"][0]["name"] == "Grafana"

    def test_import_rejects_bad_file(self, make_controller, tmp_path):
        ctrl = make_controller()
        ctrl.load()
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"theme": "dark"}))
        with pytest.raises(InvalidConfig):
            ctrl.import_config(bad)
        bad.write_text("{")
        with pytest.raises(InvalidConfig):
            ctrl.import_config(bad)


class TestMirror:
    def test_own_write_is_ignored(self, make_controller):
        ctrl = make_controller()
        ctrl.load()
        ctrl._on_mirror_changed()
        assert ctrl.pending_intents() == []

    def test_hand_edit_is_pushed(self, make_controller, hd):
        ctrl = make_controller(debounce=60)
        ctrl.load()
        doc = json.loads(ctrl.cache_file.read_text())
        doc["services"].append(make_service("Grafana"))
        ctrl.cache_file.write_text(json.dumps(doc))
        ctrl._on_mirror_changed()
        assert ctrl.pending_intents() == ["set_config"]
        ctrl.flush()
        assert hd.store.load()["services"][0]["name"] == "Grafana"


class TestHelpers:
    def test_normalize_url(self):
        assert normalize_url("homelab:3001/") == "http://homelab:3001"
        assert normalize_url("https://x") == "https://x"

    def test_signature_is_key_order_independent(self):
        assert compute_signature({"a": 1, "b": 2}) == compute_signature({"b": 2, "a": 1})

    def test_load_config_writes_defaults(self, tmp_path):
        cfg = load_config(tmp_path)
        assert cfg["server_url"] == "http://localhost:3001"
        assert (tmp_path / "config.json").exists()

    def test_api_error_carries_status(self, api):
        with pytest.raises(ApiError) as exc:
            api.restore_backup("missing.json")
        assert exc.value.status == 404
        assert exc.value.code == "not_found"

    def test_api_rejects_html_reply(self):
        api = ConfigApi("http://homedash.test", session=PortalSession())
        for call in (api.get_config, lambda: api.save_config(make_doc()), lambda: api.check_for_changes(0)):
            with pytest.raises(ApiError) as exc:
                call()
            assert exc.value.status == 200

    def test_api_rejects_reply_missing_fields(self):
        session = MagicMock()
        session.request.return_value.status_code = 200
        session.request.return_value.json.return_value = {"ok": True}
        api = ConfigApi("http://homedash.test", session=session)
        with pytest.raises(ApiError):
            api.get_config()
        with pytest.raises(ApiError):
            api.check_for_changes(0)
        with pytest.raises(ApiError):
            api.list_backups()

    def test_api_offline(self, session):
        session.down = True
        api = ConfigApi("http://homedash.test", session=session)
        assert api.ping() is False


class TestCli:
    def test_export_offline(self, tmp_path, capsys):
        app_dir = tmp_path / "cli"
        rc = main(["--server", "http://127.0.0.1:9", "--app-dir", str(app_dir), "export", str(tmp_path)])
        assert rc == 0
        assert "homedash-config-" in capsys.readouterr().out
        assert load_config(app_dir)["server_url"] == "http://127.0.0.1:9"

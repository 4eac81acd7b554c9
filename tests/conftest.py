"""
Pytest fixtures for homedash tests.
"""

import json
from urllib.parse import urlparse

import pytest
import requests

from homedash.client.api import ConfigApi
from homedash.client.client import SyncController
from homedash.server.backups import BackupManager
from homedash.server.server import create_app
from homedash.server.store import ConfigStore


def make_service(name="Grafana", category="Monitoring", url=None):
    return {
        "name": name,
        "url": url or f"http://{name.lower()}.lan",
        "category": category,
        "icon": "",
        "description": "",
    }


def make_doc(*names, category="Monitoring"):
    return {
        "services": [make_service(n, category) for n in names],
        "categoryOrder": [category] if names else [],
        "theme": "dark",
    }


@pytest.fixture
def store(tmp_path):
    return ConfigStore(tmp_path / "config.json")


@pytest.fixture
def backups(tmp_path, store):
    return BackupManager(tmp_path / "backups", store)


@pytest.fixture
def app(tmp_path):
    app = create_app(tmp_path / "data")
    app.config["TESTING"] = True
    return app


@pytest.fixture
def hd(app):
    return app.extensions["homedash"]


@pytest.fixture
def http(app):
    return app.test_client()


class _Response:
    def __init__(self, resp):
        self.status_code = resp.status_code
        self.text = resp.get_data(as_text=True)

    def json(self):
        return json.loads(self.text)


class FlaskSession:
    """requests.Session stand-in that routes calls into a Flask test client.

    Set `down` to simulate an unreachable server; `calls` records
    (method, path) pairs.
    """

    def __init__(self, app):
        self.client = app.test_client()
        self.down = False
        self.calls = []

    def request(self, method, url, params=None, json=None, data=None, headers=None, timeout=None):
        path = urlparse(url).path
        self.calls.append((method, path))
        if self.down:
            raise requests.ConnectionError("connection refused")
        resp = self.client.open(
            path,
            method=method,
            query_string=params,
            json=json,
            data=data,
            headers=headers,
        )
        return _Response(resp)

    def count(self, method, path):
        return sum(1 for c in self.calls if c == (method, path))


@pytest.fixture
def session(app):
    return FlaskSession(app)


@pytest.fixture
def api(session):
    return ConfigApi("http://homedash.test", session=session)


@pytest.fixture
def make_controller(app, tmp_path):
    """Build controllers that share the server but keep separate client dirs."""
    made = []

    def _make(name="a", strict=False, debounce=0.05):
        sess = FlaskSession(app)
        ctrl = SyncController(
            ConfigApi("http://homedash.test", session=sess),
            app_dir=tmp_path / f"client-{name}",
            poll_interval=0.05,
            debounce=debounce,
            strict_writes=strict,
        )
        ctrl.session = sess
        made.append(ctrl)
        return ctrl

    yield _make
    for ctrl in made:
        ctrl._stop.set()
        with ctrl._lock:
            if ctrl._timer:
                ctrl._timer.cancel()

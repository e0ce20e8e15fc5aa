"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
import yaml

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for collections during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    monkeypatch.delenv("BAZAAR_CONFIG", raising=False)
    for var in [k for k in os.environ if k.startswith("BAZAAR__")]:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function")
def config_path(tmp_path: Path, tmp_data_dir: Path, clean_env) -> Path:
    """Config with an admin and two regular bootstrap users, cheap bcrypt."""
    cfg = {
        "storage": {
            "data_dir": str(tmp_data_dir),
            "uploads_dir": str(tmp_data_dir / "uploads"),
            "max_upload_mb": 1,
        },
        "auth": {
            "admins": ["admin"],
            "bootstrap_users": [
                {"id": "admin", "secret": "admin-pw"},
                {"id": "alice", "secret": "alice-pw"},
                {"id": "bob", "secret": "bob-pw"},
            ],
            "bcrypt_rounds": 4,
        },
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return path


@pytest.fixture(scope="function")
def app(config_path: Path):
    from bazaar.server import create_app

    return create_app(str(config_path))


@pytest.fixture(scope="function")
def client_factory(app):
    """Open independent clients (separate cookie jars) against one app."""
    from fastapi.testclient import TestClient

    opened = []

    def _make(user: str | None = None, secret: str | None = None) -> TestClient:
        client = TestClient(app)
        client.__enter__()
        opened.append(client)
        if user is not None:
            r = client.post("/api/login", json={"id": user, "secret": secret or f"{user}-pw"})
            assert r.status_code == 200, r.text
        return client

    yield _make
    for c in opened:
        c.__exit__(None, None, None)

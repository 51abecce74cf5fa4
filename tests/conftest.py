"""
Shared pytest fixtures and test utilities for the registry tests.

This module provides:
- Database setup/teardown with isolation
- TestClient setup with proper environment configuration
- Component fixtures wired to the test database
- Helper functions for creating devices and commands
"""
import os
import sqlite3
from pathlib import Path
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient

# ─────────────────────────── PATH SETUP ───────────────────────────

TEST_ROOT = Path(__file__).resolve().parent
DATA_DIR = TEST_ROOT / "tmp_data"
DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_FILE = DATA_DIR / "registry.db"

ADMIN_TOKEN = "admin-test-token"

# ─────────────────────────── ENVIRONMENT ───────────────────────────

def configure_test_environment():
    """Configure environment variables for testing."""
    os.environ["DB_PATH"] = str(DB_FILE)
    os.environ["ADMIN_TOKEN"] = ADMIN_TOKEN
    os.environ["DEVICE_SECRET_MIN_LENGTH"] = "12"
    os.environ["POLL_MIN_BATCH"] = "1"
    os.environ["POLL_MAX_BATCH"] = "20"
    os.environ["POLL_DEFAULT_BATCH"] = "10"
    os.environ.setdefault("LOG_LEVEL", "WARNING")
    os.environ.pop("LOG_FILE", None)

configure_test_environment()

# Now we can import registry modules
import sys
sys.path.insert(0, str(TEST_ROOT.parent))

from registry.devices import DeviceRegistry  # noqa: E402
from registry.identity import DeviceIdentityStore  # noqa: E402
from registry.main import app  # noqa: E402
from registry.protocol import PollHandler  # noqa: E402
from registry.queue import CommandQueue  # noqa: E402
from registry.storage import Storage  # noqa: E402

DEVICE_SECRET = "s3cret-device-key"  # 17 chars

# ─────────────────────────── DATABASE HELPERS ───────────────────────────

def get_test_db():
    """Get a database connection for test operations."""
    conn = sqlite3.connect(DB_FILE)
    conn.row_factory = sqlite3.Row
    return conn

def clear_all_test_data():
    """Initialize the schema and clear all test data."""
    Storage(str(DB_FILE)).init_db()
    conn = get_test_db()
    # children before parents
    for table in ("commands", "device_events", "device_notes", "devices"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()

def command_status(command_id: str) -> str:
    conn = get_test_db()
    row = conn.execute("SELECT status FROM commands WHERE id = ?", (command_id,)).fetchone()
    conn.close()
    return row["status"] if row else None

def count_rows(table: str) -> int:
    conn = get_test_db()
    total = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    conn.close()
    return total

# ─────────────────────────── PYTEST FIXTURES ───────────────────────────

@pytest.fixture
def storage():
    """Fresh database, returned as the Storage the components use."""
    clear_all_test_data()
    return Storage(str(DB_FILE))

@pytest.fixture
def identity(storage):
    return DeviceIdentityStore(storage, min_secret_length=12)

@pytest.fixture
def devices(storage):
    return DeviceRegistry(storage)

@pytest.fixture
def queue(storage):
    return CommandQueue(storage, min_batch=1, max_batch=20, default_batch=10)

@pytest.fixture
def poll_handler(identity, devices, queue):
    return PollHandler(identity, devices, queue)

@pytest.fixture
def client():
    """
    Function-scoped test client with clean database state.
    Each test gets a fresh database.
    """
    clear_all_test_data()
    with TestClient(app) as client:
        yield client

@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}

# ─────────────────────────── FACTORIES ───────────────────────────

def register_device(client, device_id: str = "dev-1", secret: str = DEVICE_SECRET, **extra) -> dict:
    """Register a device through the public API and return the response body."""
    body = {
        "deviceId": device_id,
        "secret": secret,
        "hostname": f"{device_id}-host",
        "username": "alice",
        "osName": "Linux",
        "osVersion": "6.1",
        "arch": "x86_64",
    }
    body.update(extra)
    resp = client.post("/api/register", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()

def enqueue(client, admin_headers, device_id: str, kind: str, payload: dict = None) -> str:
    resp = client.post(
        f"/admin/api/devices/{device_id}/commands",
        json={"kind": kind, "payload": payload or {}},
        headers=admin_headers,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["id"]

def poll(client, device_id: str = "dev-1", secret: str = DEVICE_SECRET, max_count=None, results: List[dict] = None):
    body = {"deviceId": device_id, "secret": secret}
    if max_count is not None:
        body["maxCount"] = max_count
    if results is not None:
        body["results"] = results
    return client.post("/api/poll", json=body)

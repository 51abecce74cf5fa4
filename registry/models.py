"""
Data models and schema definitions for the device registry.

This module defines:
- Device records and their management status
- Queued commands and their delivery lifecycle
- Device events (audit trail) and admin notes
- The SQL schema and indexes created at startup
"""

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


# ─────────────────────────── ENUMS ───────────────────────────

class DeviceStatus(str, Enum):
    """Management status of a device (informational, does not gate polling)"""
    ACTIVE = "active"
    DISABLED = "disabled"
    RETIRED = "retired"


class CommandStatus(str, Enum):
    """Command lifecycle: queued -> sent -> done | failed, never backward"""
    QUEUED = "queued"
    SENT = "sent"
    DONE = "done"
    FAILED = "failed"


class EventType(str, Enum):
    """Types of device events recorded in the audit trail"""
    REGISTERED = "registered"
    HEARTBEAT = "heartbeat"
    SECRET_BOOTSTRAPPED = "secret_bootstrapped"
    SECRET_ROTATED = "secret_rotated"
    STATUS_CHANGED = "status_changed"
    NOTE_ADDED = "note_added"
    COMMAND_ENQUEUED = "command_enqueued"
    COMMANDS_DISPATCHED = "commands_dispatched"
    COMMAND_RESULT = "command_result"


def json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=False)


# ─────────────────────────── DATA CLASSES ───────────────────────────

@dataclass
class Device:
    """A registered client identity"""
    device_id: str
    status: DeviceStatus = DeviceStatus.ACTIVE
    secret_hash: Optional[str] = None

    hostname: Optional[str] = None
    username: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    arch: Optional[str] = None
    app_version: Optional[str] = None
    ip_last: Optional[str] = None

    first_seen_at: Optional[str] = None
    last_seen_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Device":
        return cls(
            device_id=row["device_id"],
            status=DeviceStatus(row["status"]),
            secret_hash=row["secret_hash"],
            hostname=row["hostname"],
            username=row["username"],
            os_name=row["os_name"],
            os_version=row["os_version"],
            arch=row["arch"],
            app_version=row["app_version"],
            ip_last=row["ip_last"],
            first_seen_at=row["first_seen_at"],
            last_seen_at=row["last_seen_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict:
        # secret_hash never leaves the server
        return {
            "deviceId": self.device_id,
            "status": self.status.value,
            "hostname": self.hostname,
            "username": self.username,
            "osName": self.os_name,
            "osVersion": self.os_version,
            "arch": self.arch,
            "appVersion": self.app_version,
            "ipLast": self.ip_last,
            "hasSecret": bool(self.secret_hash),
            "firstSeenAt": self.first_seen_at,
            "lastSeenAt": self.last_seen_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Command:
    """An administrator-issued instruction queued for one device"""
    id: str
    device_id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: CommandStatus = CommandStatus.QUEUED
    created_at: Optional[str] = None
    sent_at: Optional[str] = None
    done_at: Optional[str] = None
    error: Optional[str] = None
    created_by: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Command":
        return cls(
            id=row["id"],
            device_id=row["device_id"],
            kind=row["kind"],
            payload=json_loads(row["payload_json"], {}),
            status=CommandStatus(row["status"]),
            created_at=row["created_at"],
            sent_at=row["sent_at"],
            done_at=row["done_at"],
            error=row["error"],
            created_by=row["created_by"],
        )

    def to_delivery(self) -> dict:
        """The shape handed to a device on poll."""
        return {"id": self.id, "kind": self.kind, "payload": self.payload}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "kind": self.kind,
            "payload": self.payload,
            "status": self.status.value,
            "createdAt": self.created_at,
            "sentAt": self.sent_at,
            "doneAt": self.done_at,
            "error": self.error,
            "createdBy": self.created_by,
        }


@dataclass
class DeviceEvent:
    """Audit trail entry for one device"""
    id: str
    device_id: str
    event_type: str
    created_at: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DeviceEvent":
        return cls(
            id=row["id"],
            device_id=row["device_id"],
            event_type=row["event_type"],
            created_at=row["created_at"],
            payload=json_loads(row["payload_json"], {}),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "eventType": self.event_type,
            "payload": self.payload,
            "createdAt": self.created_at,
        }


@dataclass
class DeviceNote:
    """Freeform admin note attached to a device"""
    id: str
    device_id: str
    note: str
    created_by: str
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DeviceNote":
        return cls(
            id=row["id"],
            device_id=row["device_id"],
            note=row["note"],
            created_by=row["created_by"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "note": self.note,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
        }


# ─────────────────────────── SQL SCHEMA ───────────────────────────

DEVICES_TABLE = """
CREATE TABLE IF NOT EXISTS devices (
    device_id TEXT PRIMARY KEY,
    secret_hash TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    hostname TEXT,
    username TEXT,
    os_name TEXT,
    os_version TEXT,
    arch TEXT,
    app_version TEXT,
    ip_last TEXT,
    first_seen_at TEXT,
    last_seen_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

COMMANDS_TABLE = """
CREATE TABLE IF NOT EXISTS commands (
    id TEXT PRIMARY KEY,
    device_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    payload_json TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'queued',
    created_at TEXT NOT NULL,
    sent_at TEXT,
    done_at TEXT,
    error TEXT,
    created_by TEXT,
    FOREIGN KEY(device_id) REFERENCES devices(device_id)
)
"""

DEVICE_EVENTS_TABLE = """
CREATE TABLE IF NOT EXISTS device_events (
    id TEXT PRIMARY KEY,
    device_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload_json TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY(device_id) REFERENCES devices(device_id)
)
"""

DEVICE_NOTES_TABLE = """
CREATE TABLE IF NOT EXISTS device_notes (
    id TEXT PRIMARY KEY,
    device_id TEXT NOT NULL,
    note TEXT NOT NULL,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(device_id) REFERENCES devices(device_id)
)
"""

ALL_TABLES = [
    DEVICES_TABLE,
    COMMANDS_TABLE,
    DEVICE_EVENTS_TABLE,
    DEVICE_NOTES_TABLE,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_devices_last_seen ON devices(last_seen_at)",
    "CREATE INDEX IF NOT EXISTS idx_devices_status ON devices(status)",
    "CREATE INDEX IF NOT EXISTS idx_commands_queue ON commands(device_id, status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_events_device ON device_events(device_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_notes_device ON device_notes(device_id, created_at)",
]

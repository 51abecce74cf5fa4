import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from registry.errors import InvalidArgument, NotFound
from registry.models import Device, DeviceEvent, DeviceNote, DeviceStatus, EventType
from registry.storage import Storage, now_iso, record_event

logger = logging.getLogger("registry.devices")

REQUIRED_REGISTER_FIELDS = ("deviceId", "secret", "hostname", "osName", "osVersion")

# wire name -> column
REGISTER_METADATA_FIELDS = {
    "hostname": "hostname",
    "username": "username",
    "osName": "os_name",
    "osVersion": "os_version",
    "arch": "arch",
    "appVersion": "app_version",
}

MAX_PAGE_SIZE = 200
MAX_EVENTS = 500
MAX_SQLITE_INT = 2**63 - 1


def parse_status(value: Any) -> DeviceStatus:
    try:
        return DeviceStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in DeviceStatus)
        raise InvalidArgument(f"status must be one of: {allowed}")


class DeviceRegistry:
    """Device records, their audit trail and admin notes."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def register(self, device_id: str, metadata: Dict[str, Any], ip: Optional[str] = None) -> Device:
        """Upsert registration metadata. The identity must already be authenticated."""
        columns = {
            column: (str(metadata[wire]).strip() or None) if metadata.get(wire) is not None else None
            for wire, column in REGISTER_METADATA_FIELDS.items()
        }
        ts = now_iso()
        with self.storage.session() as conn:
            conn.execute(
                """
                INSERT INTO devices
                    (device_id, status, hostname, username, os_name, os_version, arch, app_version,
                     ip_last, first_seen_at, last_seen_at, created_at, updated_at)
                VALUES (?, 'active', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(device_id) DO UPDATE SET
                    hostname = excluded.hostname,
                    username = excluded.username,
                    os_name = excluded.os_name,
                    os_version = excluded.os_version,
                    arch = excluded.arch,
                    app_version = COALESCE(excluded.app_version, devices.app_version),
                    ip_last = COALESCE(excluded.ip_last, devices.ip_last),
                    first_seen_at = COALESCE(devices.first_seen_at, excluded.first_seen_at),
                    last_seen_at = excluded.last_seen_at,
                    updated_at = excluded.updated_at
                """,
                (
                    device_id,
                    columns["hostname"],
                    columns["username"],
                    columns["os_name"],
                    columns["os_version"],
                    columns["arch"],
                    columns["app_version"],
                    ip,
                    ts,
                    ts,
                    ts,
                    ts,
                ),
            )
            record_event(
                conn,
                device_id,
                EventType.REGISTERED,
                {"hostname": columns["hostname"], "osName": columns["os_name"], "osVersion": columns["os_version"]},
            )
            row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        logger.info("Device %s registered", device_id)
        return Device.from_row(row)

    def touch(self, device_id: str, ip: Optional[str] = None, *, activate: bool = False) -> None:
        """Mark an authenticated contact; ``activate`` also resets status to active."""
        ts = now_iso()
        with self.storage.session() as conn:
            if activate:
                conn.execute(
                    """
                    UPDATE devices
                    SET last_seen_at = ?, updated_at = ?, ip_last = COALESCE(?, ip_last), status = 'active'
                    WHERE device_id = ?
                    """,
                    (ts, ts, ip, device_id),
                )
                record_event(conn, device_id, EventType.HEARTBEAT, {"ip": ip})
            else:
                conn.execute(
                    "UPDATE devices SET last_seen_at = ?, updated_at = ?, ip_last = COALESCE(?, ip_last) WHERE device_id = ?",
                    (ts, ts, ip, device_id),
                )

    def get(self, device_id: str) -> Device:
        conn = self.storage.connect()
        try:
            row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFound("Device", device_id)
        return Device.from_row(row)

    def exists(self, device_id: str) -> bool:
        conn = self.storage.connect()
        try:
            row = conn.execute("SELECT 1 FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        finally:
            conn.close()
        return row is not None

    def search(
        self,
        q: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 25,
    ) -> Tuple[List[Device], int]:
        page = max(1, page)
        limit = max(1, min(MAX_PAGE_SIZE, limit))
        offset = (page - 1) * limit
        if offset > MAX_SQLITE_INT:
            raise InvalidArgument("page is out of range")

        where = []
        params: List[Any] = []
        if q:
            like = f"%{q.lower()}%"
            where.append(
                "(LOWER(device_id) LIKE ? OR LOWER(COALESCE(hostname, '')) LIKE ?"
                " OR LOWER(COALESCE(username, '')) LIKE ? OR LOWER(COALESCE(os_name, '')) LIKE ?)"
            )
            params.extend([like, like, like, like])
        if status:
            where.append("status = ?")
            params.append(parse_status(status).value)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        conn = self.storage.connect()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM devices {where_sql}", params).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM devices {where_sql}
                ORDER BY COALESCE(last_seen_at, updated_at) DESC, device_id ASC
                LIMIT ? OFFSET ?
                """,
                params + [limit, offset],
            ).fetchall()
        finally:
            conn.close()
        return [Device.from_row(r) for r in rows], total

    def set_status(self, device_id: str, status: Any, actor: Optional[str] = None) -> Device:
        new_status = parse_status(status)
        with self.storage.session() as conn:
            row = conn.execute("SELECT status FROM devices WHERE device_id = ?", (device_id,)).fetchone()
            if not row:
                raise NotFound("Device", device_id)
            conn.execute(
                "UPDATE devices SET status = ?, updated_at = ? WHERE device_id = ?",
                (new_status.value, now_iso(), device_id),
            )
            record_event(
                conn,
                device_id,
                EventType.STATUS_CHANGED,
                {"from": row["status"], "to": new_status.value, "by": actor},
            )
            updated = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        logger.info("Device %s status %s -> %s", device_id, row["status"], new_status.value)
        return Device.from_row(updated)

    def events(self, device_id: str, limit: int = 50) -> List[DeviceEvent]:
        limit = max(1, min(MAX_EVENTS, limit))
        self._require(device_id)
        conn = self.storage.connect()
        try:
            rows = conn.execute(
                "SELECT * FROM device_events WHERE device_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (device_id, limit),
            ).fetchall()
        finally:
            conn.close()
        return [DeviceEvent.from_row(r) for r in rows]

    def notes(self, device_id: str) -> List[DeviceNote]:
        self._require(device_id)
        conn = self.storage.connect()
        try:
            rows = conn.execute(
                "SELECT * FROM device_notes WHERE device_id = ? ORDER BY created_at DESC, rowid DESC",
                (device_id,),
            ).fetchall()
        finally:
            conn.close()
        return [DeviceNote.from_row(r) for r in rows]

    def add_note(self, device_id: str, note: Any, created_by: Any = None) -> DeviceNote:
        text = note.strip() if isinstance(note, str) else ""
        if not text:
            raise InvalidArgument("note is required")
        author = created_by.strip() if isinstance(created_by, str) and created_by.strip() else "admin"

        entry = DeviceNote(
            id=str(uuid.uuid4()),
            device_id=device_id,
            note=text,
            created_by=author,
            created_at=now_iso(),
        )
        with self.storage.session() as conn:
            if not conn.execute("SELECT 1 FROM devices WHERE device_id = ?", (device_id,)).fetchone():
                raise NotFound("Device", device_id)
            conn.execute(
                "INSERT INTO device_notes (id, device_id, note, created_by, created_at) VALUES (?, ?, ?, ?, ?)",
                (entry.id, entry.device_id, entry.note, entry.created_by, entry.created_at),
            )
            record_event(conn, device_id, EventType.NOTE_ADDED, {"noteId": entry.id, "by": author})
        return entry

    def _require(self, device_id: str) -> None:
        if not self.exists(device_id):
            raise NotFound("Device", device_id)

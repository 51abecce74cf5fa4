"""
Per-device command queue.

Commands move queued -> sent -> done | failed and never backward. Only this
module changes a command's status:

- ``enqueue`` appends a queued command for an existing device.
- ``take_next_batch`` claims the oldest queued commands for one device and
  marks them sent in a single conditional UPDATE, so two concurrent polls
  for the same device can never both receive a command.
- ``record_result`` finalises a sent command; anything else is a silent
  no-op, which makes duplicate or stale reports harmless.
"""

import logging
import uuid
from collections.abc import Mapping
from typing import Any, List, Optional

from registry.errors import InvalidArgument, NotFound
from registry.models import Command, CommandStatus, EventType, json_dumps
from registry.storage import Storage, now_iso, record_event

logger = logging.getLogger("registry.queue")

MAX_ERROR_LENGTH = 2000
MAX_KIND_LENGTH = 64


class CommandQueue:
    def __init__(self, storage: Storage, min_batch: int = 1, max_batch: int = 20, default_batch: int = 10):
        self.storage = storage
        self.min_batch = min_batch
        self.max_batch = max_batch
        self.default_batch = default_batch

    def clamp_batch(self, max_count: Any) -> int:
        if isinstance(max_count, bool):
            return self.default_batch
        try:
            count = int(max_count)
        except (TypeError, ValueError):
            return self.default_batch
        except OverflowError:
            # +/-inf from a JSON number like 1e400
            return self.max_batch if max_count > 0 else self.min_batch
        return max(self.min_batch, min(self.max_batch, count))

    def enqueue(self, device_id: str, kind: Any, payload: Any, *, created_by: Optional[str] = None) -> str:
        if not isinstance(kind, str) or not kind.strip():
            raise InvalidArgument("kind is required")
        kind = kind.strip()
        if len(kind) > MAX_KIND_LENGTH:
            raise InvalidArgument(f"kind must be at most {MAX_KIND_LENGTH} characters")
        if not isinstance(payload, Mapping):
            raise InvalidArgument("payload must be an object")

        cmd_id = str(uuid.uuid4())
        with self.storage.session() as conn:
            if not conn.execute("SELECT 1 FROM devices WHERE device_id = ?", (device_id,)).fetchone():
                raise NotFound("Device", device_id)
            conn.execute(
                """
                INSERT INTO commands (id, device_id, kind, payload_json, status, created_at, created_by)
                VALUES (?, ?, ?, ?, 'queued', ?, ?)
                """,
                (cmd_id, device_id, kind, json_dumps(dict(payload)), now_iso(), created_by),
            )
            record_event(conn, device_id, EventType.COMMAND_ENQUEUED, {"commandId": cmd_id, "kind": kind})
        logger.info("Enqueued %s command %s for %s", kind, cmd_id, device_id)
        return cmd_id

    def take_next_batch(self, device_id: str, max_count: Any) -> List[Command]:
        """Claim up to ``max_count`` queued commands for ``device_id``, oldest first."""
        limit = self.clamp_batch(max_count)
        ts = now_iso()

        conn = self.storage.connect()
        try:
            # Take the write lock up front so the claim below is serialised
            # against every other writer on this database.
            conn.execute("BEGIN IMMEDIATE")
            claimed = conn.execute(
                """
                UPDATE commands
                SET status = 'sent', sent_at = ?
                WHERE id IN (
                    SELECT id FROM commands
                    WHERE device_id = ? AND status = 'queued'
                    ORDER BY created_at ASC, rowid ASC
                    LIMIT ?
                )
                AND status = 'queued'
                RETURNING id
                """,
                (ts, device_id, limit),
            ).fetchall()
            rows = []
            if claimed:
                marks = ", ".join("?" for _ in claimed)
                rows = conn.execute(
                    f"SELECT * FROM commands WHERE id IN ({marks}) ORDER BY created_at ASC, rowid ASC",
                    [r["id"] for r in claimed],
                ).fetchall()
                record_event(
                    conn,
                    device_id,
                    EventType.COMMANDS_DISPATCHED,
                    {"commandIds": [r["id"] for r in rows]},
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        if rows:
            logger.info("Dispatched %d command(s) to %s", len(rows), device_id)
        return [Command.from_row(r) for r in rows]

    def record_result(
        self,
        command_id: str,
        device_id: str,
        succeeded: bool,
        error_message: Optional[str] = None,
    ) -> bool:
        """Finalise a sent command. Returns False (and changes nothing) when no
        command with this id is currently sent to this device."""
        if succeeded:
            status, error = CommandStatus.DONE, None
        else:
            status = CommandStatus.FAILED
            error = (str(error_message) if error_message else "unknown")[:MAX_ERROR_LENGTH]

        with self.storage.session() as conn:
            updated = conn.execute(
                """
                UPDATE commands
                SET status = ?, done_at = ?, error = ?
                WHERE id = ? AND device_id = ? AND status = 'sent'
                """,
                (status.value, now_iso(), error, command_id, device_id),
            )
            if updated.rowcount != 1:
                logger.debug("Ignored result for %s from %s (not in sent state)", command_id, device_id)
                return False
            record_event(
                conn,
                device_id,
                EventType.COMMAND_RESULT,
                {"commandId": command_id, "status": status.value, "error": error},
            )
        return True

    def get(self, command_id: str) -> Command:
        conn = self.storage.connect()
        try:
            row = conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFound("Command", command_id)
        return Command.from_row(row)

    def list_for_device(self, device_id: str, status: Optional[str] = None, limit: int = 50) -> List[Command]:
        limit = max(1, min(500, limit))
        if status is not None:
            try:
                status = CommandStatus(status).value
            except ValueError:
                allowed = ", ".join(s.value for s in CommandStatus)
                raise InvalidArgument(f"status must be one of: {allowed}")

        conn = self.storage.connect()
        try:
            if not conn.execute("SELECT 1 FROM devices WHERE device_id = ?", (device_id,)).fetchone():
                raise NotFound("Device", device_id)
            if status:
                rows = conn.execute(
                    """
                    SELECT * FROM commands WHERE device_id = ? AND status = ?
                    ORDER BY created_at DESC, rowid DESC LIMIT ?
                    """,
                    (device_id, status, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM commands WHERE device_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (device_id, limit),
                ).fetchall()
        finally:
            conn.close()
        return [Command.from_row(r) for r in rows]

"""
SQLite storage for the registry.

A ``Storage`` instance owns the database location and hands out short-lived
connections; it is created once per app and passed to the components that
need it. Nothing in the package opens a connection on its own.
"""

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from registry.models import ALL_TABLES, INDEXES, EventType, json_dumps

logger = logging.getLogger("registry.storage")


def now_iso() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec="milliseconds") + "Z"


class Storage:
    def __init__(self, db_path: str, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """Connection that commits on success and rolls back on error."""
        conn = self.connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            cur = conn.cursor()
            for table_sql in ALL_TABLES:
                cur.execute(table_sql)
            for index_sql in INDEXES:
                cur.execute(index_sql)
            conn.commit()
        finally:
            conn.close()
        logger.info("Database ready at %s", self.db_path)

    def ping(self) -> bool:
        try:
            conn = self.connect()
        except sqlite3.Error:
            return False
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as exc:
            logger.error("Database ping failed: %s", exc)
            return False
        finally:
            conn.close()


def record_event(
    conn: sqlite3.Connection,
    device_id: str,
    event_type: EventType,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Append to the device audit trail. Never fails the caller."""
    try:
        conn.execute(
            """
            INSERT INTO device_events (id, device_id, event_type, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (str(uuid.uuid4()), device_id, event_type.value, json_dumps(details or {}), now_iso()),
        )
    except sqlite3.Error as exc:
        logger.warning("event write failed for %s (%s): %s", device_id, event_type.value, exc)

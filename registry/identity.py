"""
Device identity store.

Devices authenticate with ``deviceId`` + ``secret``. Identities are not
provisioned out-of-band: the first caller to present a secret that meets the
strength policy for an unclaimed ``deviceId`` claims it (trust-on-first-use),
and from then on only that secret is accepted. This is a trust boundary of
the system, not something the store tries to detect.
"""

import hashlib
import logging
import secrets
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from registry.errors import InvalidArgument, Unauthorized
from registry.models import DeviceStatus, EventType
from registry.storage import Storage, now_iso, record_event

logger = logging.getLogger("registry.identity")


def hash_secret(secret: str) -> str:
    return "sha256:" + hashlib.sha256(secret.encode("utf-8")).hexdigest()


def verify_secret(secret: str, stored_hash: Optional[str]) -> bool:
    if not secret or not stored_hash:
        return False
    return secrets.compare_digest(hash_secret(secret), stored_hash)


class AuthOutcome(str, Enum):
    VERIFIED = "verified"          # stored hash matched
    BOOTSTRAPPED = "bootstrapped"  # no hash yet, this secret was just claimed


@dataclass(frozen=True)
class AuthResult:
    device_id: str
    outcome: AuthOutcome

    @property
    def is_new_claim(self) -> bool:
        return self.outcome is AuthOutcome.BOOTSTRAPPED


class DeviceIdentityStore:
    def __init__(self, storage: Storage, min_secret_length: int = 12):
        self.storage = storage
        self.min_secret_length = min_secret_length

    def meets_policy(self, secret: Any) -> bool:
        return isinstance(secret, str) and len(secret) >= self.min_secret_length

    def authenticate(self, device_id: str, secret: Any, *, allow_bootstrap: bool = True) -> AuthResult:
        """Verify ``secret`` for ``device_id``, claiming the identity if unclaimed.

        Raises ``Unauthorized`` when the secret does not match the stored hash,
        or when nothing is stored and either bootstrapping is not allowed or
        the secret is too weak to be accepted as the reference credential.
        """
        if not device_id or not isinstance(secret, str) or not secret:
            raise Unauthorized()

        with self.storage.session() as conn:
            row = conn.execute(
                "SELECT secret_hash FROM devices WHERE device_id = ?", (device_id,)
            ).fetchone()
            stored = row["secret_hash"] if row else None

            if stored:
                if verify_secret(secret, stored):
                    return AuthResult(device_id, AuthOutcome.VERIFIED)
                logger.warning("Secret mismatch for device %s", device_id)
                raise Unauthorized()

            if not allow_bootstrap:
                logger.warning("Rejected contact from unclaimed device %s", device_id)
                raise Unauthorized()
            if not self.meets_policy(secret):
                logger.warning("Rejected weak bootstrap secret for device %s", device_id)
                raise Unauthorized()

            return self._bootstrap(conn, device_id, secret)

    def _bootstrap(self, conn: sqlite3.Connection, device_id: str, secret: str) -> AuthResult:
        ts = now_iso()
        conn.execute(
            """
            INSERT INTO devices (device_id, status, first_seen_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(device_id) DO NOTHING
            """,
            (device_id, DeviceStatus.ACTIVE.value, ts, ts, ts),
        )
        claimed = conn.execute(
            "UPDATE devices SET secret_hash = ?, updated_at = ? WHERE device_id = ? AND secret_hash IS NULL",
            (hash_secret(secret), ts, device_id),
        )
        if claimed.rowcount == 1:
            record_event(conn, device_id, EventType.SECRET_BOOTSTRAPPED)
            logger.info("Device %s claimed on first contact", device_id)
            return AuthResult(device_id, AuthOutcome.BOOTSTRAPPED)

        # Another request claimed the identity between our read and write.
        row = conn.execute("SELECT secret_hash FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        if row and verify_secret(secret, row["secret_hash"]):
            return AuthResult(device_id, AuthOutcome.VERIFIED)
        logger.warning("Lost bootstrap race for device %s", device_id)
        raise Unauthorized()

    def rotate_secret(self, device_id: str, current_secret: Any, new_secret: Any) -> None:
        auth = self.authenticate(device_id, current_secret, allow_bootstrap=False)
        if not self.meets_policy(new_secret):
            raise InvalidArgument(f"newSecret must be at least {self.min_secret_length} characters")

        with self.storage.session() as conn:
            updated = conn.execute(
                "UPDATE devices SET secret_hash = ?, updated_at = ? WHERE device_id = ? AND secret_hash = ?",
                (hash_secret(new_secret), now_iso(), auth.device_id, hash_secret(current_secret)),
            )
            if updated.rowcount != 1:
                raise Unauthorized()
            record_event(conn, device_id, EventType.SECRET_ROTATED)
        logger.info("Secret rotated for device %s", device_id)

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    db_path: str
    admin_token: str
    secret_min_length: int
    poll_min_batch: int
    poll_max_batch: int
    poll_default_batch: int
    log_level: str
    log_file: str


def get_settings() -> Settings:
    """Read settings from the environment.

    Called once per app instance rather than at import time so tests can
    change the environment and build a fresh app.
    """
    poll_min = max(1, _env_int("POLL_MIN_BATCH", 1))
    poll_max = max(poll_min, _env_int("POLL_MAX_BATCH", 20))
    poll_default = min(poll_max, max(poll_min, _env_int("POLL_DEFAULT_BATCH", 10)))
    return Settings(
        db_path=os.getenv("DB_PATH", "/data/registry.db"),
        admin_token=os.getenv("ADMIN_TOKEN", "").strip(),
        secret_min_length=max(1, _env_int("DEVICE_SECRET_MIN_LENGTH", 12)),
        poll_min_batch=poll_min,
        poll_max_batch=poll_max,
        poll_default_batch=poll_default,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_file=os.getenv("LOG_FILE", ""),
    )

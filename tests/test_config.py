from registry.config import get_settings


def test_defaults(monkeypatch):
    for name in ("DB_PATH", "ADMIN_TOKEN", "DEVICE_SECRET_MIN_LENGTH", "POLL_MIN_BATCH",
                 "POLL_MAX_BATCH", "POLL_DEFAULT_BATCH", "LOG_LEVEL", "LOG_FILE"):
        monkeypatch.delenv(name, raising=False)
    settings = get_settings()
    assert settings.db_path == "/data/registry.db"
    assert settings.admin_token == ""
    assert settings.secret_min_length == 12
    assert (settings.poll_min_batch, settings.poll_max_batch, settings.poll_default_batch) == (1, 20, 10)
    assert settings.log_level == "INFO"


def test_poll_range_is_kept_consistent(monkeypatch):
    monkeypatch.setenv("POLL_MIN_BATCH", "5")
    monkeypatch.setenv("POLL_MAX_BATCH", "3")
    monkeypatch.setenv("POLL_DEFAULT_BATCH", "50")
    settings = get_settings()
    assert settings.poll_min_batch == 5
    assert settings.poll_max_batch == 5
    assert settings.poll_default_batch == 5


def test_garbage_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("DEVICE_SECRET_MIN_LENGTH", "lots")
    monkeypatch.setenv("ADMIN_TOKEN", "  tok  ")
    settings = get_settings()
    assert settings.secret_min_length == 12
    assert settings.admin_token == "tok"

from pathlib import Path

import pytest

from config import load_config, ConfigurationError


def test_defaults(env):
    config = load_config()

    assert config.terminal.outlet_id == "outlet_1"
    assert config.terminal.staff_id == "staff_7"
    assert config.terminal.tax_rate == 0.10
    assert config.backend.api_url == "http://localhost:3000"
    assert config.backend.ws_url == "ws://localhost:3010"
    assert config.realtime.reconnect_attempts == 5
    assert config.realtime.reconnect_delay == 1.0
    assert config.realtime.heartbeat_interval == 30.0
    assert config.offline.storage_limit == 50
    assert config.features.enable_offline_mode is True
    assert config.server.port == 8000


def test_missing_required_variable(env):
    env.delenv("POS_OUTLET_ID")

    with pytest.raises(ConfigurationError, match="POS_OUTLET_ID"):
        load_config()


def test_overrides(env):
    env.setenv("POS_API_URL", "https://api.example.com/")
    env.setenv("POS_TAX_RATE", "0.08")
    env.setenv("POS_WS_RECONNECT_ATTEMPTS", "2")
    env.setenv("ENABLE_OFFLINE_MODE", "false")
    env.setenv("LOG_LEVEL", "debug")

    config = load_config()

    assert config.backend.api_url == "https://api.example.com"
    assert config.terminal.tax_rate == 0.08
    assert config.realtime.reconnect_attempts == 2
    assert config.features.enable_offline_mode is False
    assert config.server.log_level == "DEBUG"


@pytest.mark.parametrize("key, value", [
    ("PORT", "eighty"),
    ("POS_TAX_RATE", "1.5"),
    ("POS_API_URL", "ftp://nope"),
    ("POS_WS_URL", "http://not-a-socket"),
    ("POS_WS_BACKOFF_FACTOR", "0.5"),
    ("POS_OFFLINE_STORAGE_LIMIT", "0"),
    ("LOG_LEVEL", "LOUD"),
])
def test_invalid_values(env, key, value):
    env.setenv(key, value)

    with pytest.raises(ConfigurationError):
        load_config()


def test_env_file_is_loaded(env, tmp_path):
    env.delenv("POS_STAFF_ID")
    Path(tmp_path / ".env").write_text("POS_STAFF_ID=staff_from_file\n", encoding="utf-8")

    assert load_config().terminal.staff_id == "staff_from_file"


def test_safe_summary_hides_token(env):
    env.setenv("POS_AUTH_TOKEN", "super-secret")

    summary = load_config().get_safe_summary()

    assert summary["has_auth_token"] is True
    assert "super-secret" not in str(summary)

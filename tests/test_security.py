import pytest

from upscaler.core import security
from upscaler.settings import Settings


@pytest.mark.parametrize("token,expected", [
    ("tpz-1234567890abcdef", "tpz-1234..."),
    ("tpz-1234567890", "tpz-123..."),
    ("abcd1234", "abcd..."),
    ("abc", "a..."),
    ("x", "..."),
    ("", "..."),
])
def test_mask_token(token, expected):
    assert security.mask_token(token) == expected


def test_mask_never_shows_the_whole_token():
    for length in range(1, 20):
        token = "k" * length
        assert security.mask_token(token).rstrip(".") != token


def test_encrypt_round_trip_uses_key_file(tmp_path, monkeypatch):
    key_file = tmp_path / "keys" / "secret.key"
    monkeypatch.setattr(security, "KEY_FILE", str(key_file))
    security._cipher.cache_clear()
    try:
        encrypted = security.encrypt_token("tpz-secret-token")
        assert encrypted != "tpz-secret-token"
        assert security.decrypt_token(encrypted) == "tpz-secret-token"
        assert key_file.exists()
        assert security.encrypt_token("") == ""
    finally:
        security._cipher.cache_clear()


def test_settings_defaults(monkeypatch):
    for name in ["DATABASE_URL", "SECRET_KEY_FILE", "API_BASE_URL", "LOG_DIR"]:
        monkeypatch.delenv(f"UPSCALER_{name}", raising=False)

    settings = Settings(_env_file=None)

    assert settings.database_url == "sqlite:///./data/db/upscaler.db"
    assert settings.secret_key_file == "data/secret.key"
    assert settings.api_base_url == "https://api.topazlabs.com"
    assert settings.log_dir == "data/logs"


def test_settings_read_prefixed_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("UPSCALER_DATABASE_URL", f"sqlite:///{tmp_path}/up.db")
    monkeypatch.setenv("UPSCALER_API_BASE_URL", "https://api.example")
    monkeypatch.setenv("UPSCALER_LOG_DIR", str(tmp_path / "logs"))

    settings = Settings(_env_file=None)

    assert settings.database_url == f"sqlite:///{tmp_path}/up.db"
    assert settings.api_base_url == "https://api.example"
    assert settings.log_dir == str(tmp_path / "logs")

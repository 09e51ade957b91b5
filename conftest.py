"""
Root conftest — isolate secret environment variables so that Settings
tests are not affected by real tokens in the developer's or CI environment.
"""
import pytest

_SECRET_ENV_VARS = [
    "GATEWAY_TOKEN",
    "SHORTLINK_SECRET",
    "TELEGRAM_BOT_TOKEN",
    "CHATBRIDGE_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_secrets_from_env(monkeypatch):
    """Remove secret env vars for every test so Settings() behaves as if no
    secrets are present unless the test explicitly provides them.
    Also disables .env file loading so local developer .env files don't
    leak real credentials into tests."""
    for var in _SECRET_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import chatbridge.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)

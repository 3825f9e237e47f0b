import pytest

from app.config import Settings
from app.exceptions import ConfigurationError
from app.services.panel_client import create_xui_api


def _settings(**overrides) -> Settings:
    values = {
        "XUI_API_URL": "https://panel.example.com:2053",
        "XUI_API_USERNAME": "admin",
        "XUI_API_PASSWORD": "secret",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_valid_panel_settings():
    settings = _settings()

    settings.validate_panel_settings()
    assert settings.get_xui_server_address() == "panel.example.com"


@pytest.mark.parametrize(
    "overrides",
    [
        {"XUI_API_URL": ""},
        {"XUI_API_PASSWORD": ""},
        {"XUI_API_URL": "panel.example.com"},
        {"XUI_DEFAULT_INBOUND_ID": 0},
    ],
)
def test_invalid_panel_settings(overrides):
    with pytest.raises(ConfigurationError):
        _settings(**overrides).validate_panel_settings()


@pytest.mark.parametrize("raw, expected", [("token", "bearer"), ("JWT", "bearer"), ("session", "cookie"), (None, "cookie")])
def test_auth_mode_aliases(raw, expected):
    assert _settings(XUI_AUTH_MODE=raw).XUI_AUTH_MODE == expected


def test_unknown_auth_mode_is_rejected():
    with pytest.raises(ValueError):
        _settings(XUI_AUTH_MODE="basic")


def test_panel_client_is_built_from_settings(panel_settings):
    api = create_xui_api()

    assert api.base_url == "https://panel.example.com:2053"
    assert api.username == "admin"
    assert api.auth_mode == "cookie"


def test_panel_client_requires_configuration(panel_settings, monkeypatch):
    monkeypatch.setattr(panel_settings, "XUI_API_URL", None)

    with pytest.raises(ConfigurationError):
        create_xui_api()

import pytest
import yaml
from pydantic import ValidationError

from tether_mcp.config import MCPSettings, OAuthSettings, ServerDescriptor, Settings, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("OPENROUTER_API_KEY", "OPENAI_API_KEY", "LOG_LEVEL", "LOG_FILE"):
        monkeypatch.delenv(key, raising=False)


def write_yaml(path, data):
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestServerDescriptor:
    def test_defaults(self):
        descriptor = ServerDescriptor(name=" Weather ", url="https://weather.example.com/mcp")
        assert descriptor.name == "Weather"
        assert descriptor.auth == "none"
        assert descriptor.max_reconnect_attempts == 5
        assert not descriptor.is_local
        assert not descriptor.requires_oauth

    def test_local_sentinel(self):
        assert ServerDescriptor(name="Demo", url="local", local_server="demo").is_local

    def test_rejects_blank_name(self):
        with pytest.raises(ValidationError):
            ServerDescriptor(name="   ", url="https://x.example.com")

    def test_rejects_unknown_auth(self):
        with pytest.raises(ValidationError):
            ServerDescriptor(name="x", url="https://x.example.com", auth="basic")

    def test_is_frozen(self):
        descriptor = ServerDescriptor(name="x", url="https://x.example.com")
        with pytest.raises(ValidationError):
            descriptor.name = "y"


def test_oauth_state_ttl_is_bounded():
    with pytest.raises(ValidationError):
        OAuthSettings(state_ttl_seconds=601)
    assert OAuthSettings().state_ttl_seconds == 300


def test_servers_are_named_by_key():
    settings = MCPSettings.model_validate({"servers": {"Notes": {"url": "https://notes.example.com", "auth": "oauth"}}})
    assert settings.servers["Notes"].name == "Notes"
    assert settings.servers["Notes"].requires_oauth


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_config(str(tmp_path / "absent.yaml"))
        assert isinstance(settings, Settings)
        assert settings.agent.max_iterations == 10
        assert settings.mcp.reconnect.max_delay_seconds == 16

    def test_yaml_secrets_and_env(self, tmp_path, monkeypatch):
        config_path = write_yaml(
            tmp_path / "tether_mcp.config.yaml",
            {
                "inference": {"model": "anthropic/claude-3.5-haiku"},
                "agent": {"max_iterations": 4},
                "mcp": {"servers": {"Weather": {"url": "https://weather.example.com/mcp"}}},
            },
        )
        write_yaml(tmp_path / "tether_mcp.config.secrets.yaml", {"inference": {"api_key": "from-secrets"}})
        monkeypatch.setenv("TETHER_AGENT__MAX_ITERATIONS", "7")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = load_config(config_path)

        assert settings.inference.model == "anthropic/claude-3.5-haiku"
        assert settings.inference.api_key == "from-secrets"
        assert settings.agent.max_iterations == 7
        assert settings.logging.level == "debug"
        assert settings.mcp.servers["Weather"].url == "https://weather.example.com/mcp"

    def test_api_key_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or")
        settings = load_config(str(tmp_path / "absent.yaml"))
        assert settings.inference.api_key == "sk-or"

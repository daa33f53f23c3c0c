import pytest
import yaml

from cli_code.config import Config, ModelSelection, validate_config_value


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("CLI_CODE_WORKER_URL", "CLI_CODE_BACKEND_URL", "CLI_CODE_VERBOSE", "OPENAI_API_KEY"):
        monkeypatch.delenv(var, raising=False)


def test_load_creates_default_file(tmp_dir):
    path = tmp_dir / "home" / "config.yml"

    config = Config.load(str(path))

    assert path.exists()
    assert config.accept_all_tool_calls is False
    assert config.plan.mode == "lite"
    assert config.selected_model is None
    assert not config.is_logged_in


def test_round_trip(tmp_dir):
    path = tmp_dir / "config.yml"
    config = Config.load(str(path))
    config.update(
        access_token="tok",
        refresh_token="ref",
        selected_model=ModelSelection("gemini", "gemini-pro"),
        accept_all_tool_calls=True,
    )

    reloaded = Config.load(str(path))

    assert reloaded.access_token == "tok"
    assert reloaded.refresh_token == "ref"
    assert reloaded.selected_model == ModelSelection("gemini", "gemini-pro")
    assert reloaded.accept_all_tool_calls is True
    raw = yaml.safe_load(path.read_text())
    assert raw["selected-model"]["provider"] == "gemini"


def test_malformed_yaml_falls_back_to_defaults(tmp_dir):
    path = tmp_dir / "config.yml"
    path.write_text("access-token: [unclosed")

    config = Config.load(str(path))

    assert config.access_token is None
    assert config.command_timeout == 15


def test_invalid_values_replaced(tmp_dir):
    path = tmp_dir / "config.yml"
    path.write_text(yaml.safe_dump({
        "plan": {"mode": "turbo"},
        "command-timeout": 9999,
        "worker-url": "http://worker.example/",
    }))

    config = Config.load(str(path))

    assert config.plan.mode == "lite"
    assert config.command_timeout == 15
    assert config.worker_url == "http://worker.example"


def test_env_overrides(tmp_dir, monkeypatch):
    monkeypatch.setenv("CLI_CODE_WORKER_URL", "http://override/")
    monkeypatch.setenv("CLI_CODE_VERBOSE", "1")

    config = Config.load(str(tmp_dir / "config.yml"))

    assert config.worker_url == "http://override"
    assert config.verbose is True


def test_dotenv_file(tmp_dir):
    (tmp_dir / ".env").write_text("CLI_CODE_BACKEND_URL=http://from-dotenv\n")

    config = Config.load(str(tmp_dir / "config.yml"))

    assert config.backend_url == "http://from-dotenv"


class TestSetValue:
    def test_valid(self, config):
        ok, err = config.set_value("command-timeout", "30")
        assert ok and err == ""
        assert config.command_timeout == 30

    def test_bool_coercion(self, config):
        config.set_value("accept-all-tool-calls", "yes")
        assert config.accept_all_tool_calls is True

    def test_invalid(self, config):
        ok, err = config.set_value("command-timeout", "abc")
        assert not ok
        assert err == "Must be an integer"
        assert config.command_timeout == 15

    def test_unknown_key(self):
        valid, _, err = validate_config_value("colour", "red")
        assert not valid
        assert "Unknown configuration key" in err

    def test_url_validation(self):
        assert validate_config_value("worker-url", "ftp://x")[0] is False
        assert validate_config_value("worker-url", "https://x/") == (True, "https://x", "")


class TestCredentials:
    def test_api_key_lookup(self, config, monkeypatch):
        config.set_api_key("anthropic", "sk-ant")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

        assert config.api_key_for("anthropic") == "sk-ant"
        assert config.api_key_for("openai") == "sk-env"
        assert config.api_key_for(None) is None

        config.set_api_key("anthropic", None)
        assert "anthropic" not in config.api_keys

    def test_clear_credentials(self, config):
        config.clear_credentials()
        assert config.access_token is None
        assert config.refresh_token is None
        assert not config.is_logged_in

    def test_update_rejects_unknown_field(self, config):
        with pytest.raises(AttributeError):
            config.update(colour="red")

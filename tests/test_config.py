import json

import pytest

from core.config import DEFAULT_PORT, ConfigStore, mask_api_key
from models.models import McpServerConfig


@pytest.fixture
def store(tmp_path):
    return ConfigStore(str(tmp_path / "data"))


def test_missing_files_mean_unconfigured(store):
    assert not store.is_configured()
    assert store.load_mcp_servers() == {}
    assert store.get_mcp_server("cron") is None
    assert store.server_port() == DEFAULT_PORT


def test_default_data_dir_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("GOTO_DATA_DIR", str(tmp_path / "elsewhere"))
    assert ConfigStore().data_dir == str(tmp_path / "elsewhere")


def test_save_config_creates_data_dir(store):
    store.save_config({"provider": "claude", "server": {"port": 4123}})
    assert store.is_configured()
    assert store.server_port() == 4123
    assert store.load_config()["provider"] == "claude"


def test_invalid_port_falls_back_to_default(store):
    store.save_config({"provider": "claude", "server": {"port": "80"}})
    assert store.server_port() == DEFAULT_PORT


def test_env_api_keys_override_file(store, monkeypatch):
    store.save_config({"provider": "claude", "claude": {"apiKey": "from-file"}})
    monkeypatch.setenv("ANTHROPIC_API_KEY", "from-env")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config = store.load_config()
    assert config["claude"]["apiKey"] == "from-env"
    assert "openai" not in config


def test_mcp_servers_round_trip(store):
    store.save_mcp_servers({
        "cron": {"command": "npx", "args": ["-y", "mcp-cron"]},
        "other": McpServerConfig("uvx", ["tool"], {"TZ": "UTC"}),
    })
    servers = store.load_mcp_servers()
    assert servers["cron"] == McpServerConfig("npx", ["-y", "mcp-cron"], {})
    assert servers["other"].env == {"TZ": "UTC"}

    with open(store.mcp_config_path) as f:
        raw = json.load(f)
    assert set(raw["mcpServers"]) == {"cron", "other"}


def test_invalid_registry_entries_are_skipped(store):
    store.save_mcp_servers({})
    with open(store.mcp_config_path, "w") as f:
        json.dump({"mcpServers": {
            "cron": {"command": "npx", "args": ["mcp-cron"]},
            "broken": {"command": "npx", "args": "not-a-list"},
        }}, f)
    assert list(store.load_mcp_servers()) == ["cron"]


def test_save_rejects_invalid_entry_without_writing(store):
    store.save_mcp_servers({"cron": {"command": "npx"}})
    with pytest.raises(ValueError):
        store.save_mcp_servers({"cron": {"command": ""}})
    assert store.get_mcp_server("cron").command == "npx"


def test_mask_api_key():
    assert mask_api_key("sk-ant-1234567890") == "sk-a****7890"
    assert mask_api_key("short") == "****"


def test_masked_views(store):
    masked = ConfigStore.masked_config(
        {"provider": "openai", "openai": {"apiKey": "sk-proj-abcdefgh", "model": "gpt"}}
    )
    assert masked["openai"] == {"apiKey": "sk-p****efgh", "model": "gpt"}

    servers = {"x": McpServerConfig("run", [], {"API_KEY": "supersecretvalue", "TZ": "UTC"})}
    env = ConfigStore.masked_mcp_servers(servers)["x"]["env"]
    assert env == {"API_KEY": "supe****alue", "TZ": "UTC"}


def test_corrupt_registry_reads_as_empty(store):
    store.save_mcp_servers({"cron": {"command": "npx"}})
    with open(store.mcp_config_path, "w") as f:
        f.write("{not json")
    assert store.load_mcp_servers() == {}
    assert store.get_mcp_server("cron") is None

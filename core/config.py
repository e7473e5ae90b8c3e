"""goto-assistant — Config Store

Two JSON files live in the data directory:
- config.json: LLM provider settings and the HTTP port
- mcp.json:    {"mcpServers": {name: {command, args, env}}}, the tool-server registry
"""

from __future__ import annotations
import json
import logging
import os
import tempfile
from typing import Any, Dict, Optional

from models.models import McpServerConfig

logger = logging.getLogger("assistant.config")

DEFAULT_PORT = 3000
CONFIG_FILE = "config.json"
MCP_CONFIG_FILE = "mcp.json"
CRON_SERVER_NAME = "cron"


def default_data_dir() -> str:
    return os.environ.get("GOTO_DATA_DIR") or os.path.join(os.getcwd(), "data")


def mask_api_key(key: str) -> str:
    if len(key) <= 8:
        return "****"
    return key[:4] + "****" + key[-4:]


def _atomic_write_json(path: str, data: Any) -> None:
    """Write JSON via temp file + rename so readers never see a partial file."""
    content = json.dumps(data, indent=2)
    fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class ConfigStore:
    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = data_dir or default_data_dir()

    @property
    def config_path(self) -> str:
        return os.path.join(self.data_dir, CONFIG_FILE)

    @property
    def mcp_config_path(self) -> str:
        return os.path.join(self.data_dir, MCP_CONFIG_FILE)

    def is_configured(self) -> bool:
        return os.path.exists(self.config_path)

    def load_config(self) -> Dict[str, Any]:
        """Load config.json; API keys from the environment take precedence."""
        with open(self.config_path, "r", encoding="utf-8") as f:
            config = json.load(f)

        if os.environ.get("ANTHROPIC_API_KEY"):
            config.setdefault("claude", {})["apiKey"] = os.environ["ANTHROPIC_API_KEY"]
        if os.environ.get("OPENAI_API_KEY"):
            config.setdefault("openai", {})["apiKey"] = os.environ["OPENAI_API_KEY"]
        return config

    def save_config(self, config: Dict[str, Any]) -> None:
        os.makedirs(self.data_dir, exist_ok=True)
        _atomic_write_json(self.config_path, config)

    def server_port(self) -> int:
        if not self.is_configured():
            return DEFAULT_PORT
        port = self.load_config().get("server", {}).get("port")
        if isinstance(port, int) and not isinstance(port, bool) and 0 < port < 65536:
            return port
        return DEFAULT_PORT

    def load_mcp_servers(self) -> Dict[str, McpServerConfig]:
        """Return the tool-server registry. Missing file means no servers."""
        if not os.path.exists(self.mcp_config_path):
            return {}
        try:
            with open(self.mcp_config_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Cannot read %s: %s — treating as empty", self.mcp_config_path, e)
            return {}
        servers = raw.get("mcpServers") if isinstance(raw, dict) else None
        if not isinstance(servers, dict):
            return {}

        result: Dict[str, McpServerConfig] = {}
        for name, entry in servers.items():
            try:
                result[name] = McpServerConfig.from_dict(entry)
            except ValueError as e:
                logger.error("Invalid MCP server entry %r: %s — skipping", name, e)
        return result

    def get_mcp_server(self, name: str) -> Optional[McpServerConfig]:
        return self.load_mcp_servers().get(name)

    def save_mcp_servers(self, servers: Dict[str, Any]) -> None:
        """Persist the registry. Values may be McpServerConfig or raw dicts."""
        serialized = {}
        for name, server in servers.items():
            if not isinstance(server, McpServerConfig):
                server = McpServerConfig.from_dict(server)
            serialized[name] = server.to_dict()
        os.makedirs(self.data_dir, exist_ok=True)
        _atomic_write_json(self.mcp_config_path, {"mcpServers": serialized})

    @staticmethod
    def masked_config(config: Dict[str, Any]) -> Dict[str, Any]:
        masked = dict(config)
        for provider in ("claude", "openai"):
            section = config.get(provider)
            if isinstance(section, dict) and isinstance(section.get("apiKey"), str):
                masked[provider] = {**section, "apiKey": mask_api_key(section["apiKey"])}
        return masked

    @staticmethod
    def masked_mcp_servers(servers: Dict[str, McpServerConfig]) -> Dict[str, Dict[str, Any]]:
        masked = {}
        for name, server in servers.items():
            entry = server.to_dict()
            entry["env"] = {
                k: mask_api_key(v) if ("key" in k.lower() or "secret" in k.lower()) else v
                for k, v in server.env.items()
            }
            masked[name] = entry
        return masked

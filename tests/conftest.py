import os
import sys

import pytest

from models.models import McpServerConfig

FAKE_MCP_CRON = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_mcp_cron.py")


def fake_cron_entry(**env) -> dict:
    """mcp.json entry that launches the fake mcp-cron server."""
    return {
        "command": sys.executable,
        "args": ["-u", FAKE_MCP_CRON],
        "env": {key: str(value) for key, value in env.items()},
    }


@pytest.fixture
def fake_cron_config():
    """Factory: fake_cron_config(FAKE_TASKS='[...]') -> McpServerConfig."""
    def make(**env) -> McpServerConfig:
        return McpServerConfig.from_dict(fake_cron_entry(**env))
    return make


@pytest.fixture
def fake_cron_entry_factory():
    return fake_cron_entry

"""goto-assistant — Cron Bridge

Scheduled tasks are provided by an external MCP server (mcp-cron) registered
under the "cron" key of the tool-server registry. This module is the only
interface the rest of the assistant uses to reach it:

- start/stop the server, never auto-starting on a tool call
- restart only when the registry entry actually changed (fingerprint match)
- unwrap MCP tool results into plain JSON values, falling back to raw text
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from core.config import CRON_SERVER_NAME, ConfigStore
from core.mcp_client import (
    DEFAULT_RESPONSE_TIMEOUT,
    POSIX_KILL_GRACE,
    McpError,
    McpStdioClient,
    NotRunningError,
)
from models.models import McpServerConfig

logger = logging.getLogger("assistant.cron")

CRON_DISPLAY_NAME = "mcp-cron"
# mcp-cron only begins firing schedules once a tool has been called
KICKSTART_TOOL = "list_tasks"


def _reject_constant(name: str) -> Any:
    # NaN and +/-Infinity are not JSON
    raise ValueError(f"invalid JSON constant {name}")


def unwrap_tool_result(result: Any) -> Any:
    """Extract the payload of an MCP tools/call result.

    Text blocks are joined (one block is used as-is) and parsed as JSON;
    text that is not JSON is returned verbatim. Results without text
    content are returned unchanged.
    """
    if not isinstance(result, dict):
        return result
    content = result.get("content")
    if not isinstance(content, list):
        return result

    texts = [
        block["text"] for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    ]
    text = "\n".join(texts)
    if not text:
        return result
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except ValueError:
        return text


class CronBridge:
    """Owns the mcp-cron supervisor. Construct once and share by reference."""

    def __init__(
        self,
        store: ConfigStore,
        server_key: str = CRON_SERVER_NAME,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        kill_grace: float = POSIX_KILL_GRACE,
        kickstart_tool: Optional[str] = KICKSTART_TOOL,
    ):
        self.store = store
        self.server_key = server_key
        self.kickstart_tool = kickstart_tool
        self._client = McpStdioClient(
            CRON_DISPLAY_NAME,
            response_timeout=response_timeout,
            kill_grace=kill_grace,
        )
        self._fingerprint: Optional[str] = None
        self._restart_lock = asyncio.Lock()

    @property
    def client(self) -> McpStdioClient:
        return self._client

    @property
    def fingerprint(self) -> Optional[str]:
        """Fingerprint of the config the running process was started with."""
        return self._fingerprint

    def is_running(self) -> bool:
        return self._client.is_running

    async def start(self) -> None:
        """Start mcp-cron if it is registered and not already running."""
        async with self._restart_lock:
            if self._client.is_running:
                return
            config = self.store.get_mcp_server(self.server_key)
            if config is None:
                logger.debug(
                    "No %r entry in MCP server registry — %s not started",
                    self.server_key, CRON_DISPLAY_NAME
                )
                return
            await self._start(config)

    async def stop(self) -> None:
        self._fingerprint = None
        await self._client.stop()

    async def restart(self) -> None:
        """Apply the current registry entry, restarting only if it changed."""
        async with self._restart_lock:
            config = self.store.get_mcp_server(self.server_key)
            if config is None:
                if self._client.is_running:
                    logger.info(
                        "%r entry removed from MCP server registry — stopping %s",
                        self.server_key, CRON_DISPLAY_NAME
                    )
                await self.stop()
                return

            fingerprint = config.fingerprint()
            if self._client.is_running and fingerprint == self._fingerprint:
                logger.debug("%s config unchanged — skipping restart", CRON_DISPLAY_NAME)
                return

            await self.stop()
            await self._start(config)

    async def call_tool(self, name: str, arguments: Optional[dict] = None) -> Any:
        """Call an mcp-cron tool and return its unwrapped result.

        Raises NotRunningError without spawning anything when stopped; callers
        are expected to restart() on config changes instead.
        """
        if not self._client.is_running:
            raise NotRunningError(f"{CRON_DISPLAY_NAME} is not running")
        result = await self._client.call(name, arguments or {})
        return unwrap_tool_result(result)

    async def _start(self, config: McpServerConfig) -> None:
        await self._client.start(config)
        if self.kickstart_tool:
            try:
                await self._client.call(self.kickstart_tool, {})
            except McpError:
                await self._client.stop()
                raise
        self._fingerprint = config.fingerprint()
        logger.info("%s started in background", CRON_DISPLAY_NAME)

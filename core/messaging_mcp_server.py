"""goto-assistant — Messaging MCP Server

MCP stdio server that lets agents send messages through the assistant's
connected channels. Tool calls are proxied to the assistant's HTTP API:

- list_channels -> GET  /api/messaging/channels
- send_message  -> POST /api/messaging/send

Tool failures are reported as text content (MCP convention), never as
JSON-RPC errors; those are reserved for protocol-level problems.

Run as: python -m core.messaging_mcp_server
"""

from __future__ import annotations
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import httpx

from core.jsonrpc import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    ErrorResponse,
    Message,
    SuccessResponse,
    encode_message,
)

logger = logging.getLogger("assistant.messaging_mcp")

DEFAULT_BASE_URL = "http://localhost:3000"
HTTP_TIMEOUT = 30.0
MAX_REQUEST_LINE_BYTES = 10 * 1024 * 1024  # 10 MB max per JSON-RPC line

TOOLS: List[Dict[str, Any]] = [
    {
        "name": "send_message",
        "description": (
            "Send a message via a connected messaging channel (e.g. WhatsApp). "
            "Use list_channels to see available channels."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "channel": {"type": "string", "description": 'Messaging channel (e.g. "whatsapp")'},
                "message": {"type": "string", "description": "Text message to send"},
                "to": {
                    "type": "string",
                    "description": 'Recipient — phone number (e.g. "+60123456789") or "self" (default: self)',
                },
            },
            "required": ["channel", "message"],
        },
    },
    {
        "name": "list_channels",
        "description": "List available messaging channels.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


def _text_result(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


class MessagingMCPServer:
    def __init__(
        self,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        server_name: str = "goto-assistant-messaging",
        server_version: str = "1.0.0",
    ):
        self.base_url = (
            base_url or os.environ.get("GOTO_ASSISTANT_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT)
        self.server_name = server_name
        self.server_version = server_version
        self._shutting_down = False

    async def aclose(self) -> None:
        await self._client.aclose()

    def handle_initialize(self, params: dict) -> dict:
        client_info = params.get("clientInfo") or {}
        name = client_info.get("name", "unknown") if isinstance(client_info, dict) else "invalid"
        logger.info("MCP initialize: client=%r", str(name)[:100])
        return {
            "protocolVersion": "2024-11-05",
            "capabilities": {"tools": {}},
            "serverInfo": {"name": self.server_name, "version": self.server_version},
        }

    async def handle_call_tool(self, name: str, arguments: dict) -> dict:
        if name == "list_channels":
            return await self._list_channels()
        if name == "send_message":
            return await self._send_message(arguments)
        raise LookupError(name)

    async def _list_channels(self) -> dict:
        try:
            resp = await self._client.get(f"{self.base_url}/api/messaging/channels")
        except httpx.HTTPError as e:
            return _text_result(f"Error connecting to server: {e}")
        if not resp.is_success:
            return _text_result(f"Error: HTTP {resp.status_code} from server")
        return _text_result(json.dumps(resp.json()))

    async def _send_message(self, arguments: dict) -> dict:
        channel = arguments.get("channel")
        message = arguments.get("message")
        to = arguments.get("to")
        if not channel or not message:
            return _text_result("Error: channel and message are required")
        try:
            resp = await self._client.post(
                f"{self.base_url}/api/messaging/send",
                json={"channel": channel, "message": message, "to": to},
            )
        except httpx.HTTPError as e:
            return _text_result(f"Error connecting to server: {e}")
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not resp.is_success:
            error = data.get("error") if isinstance(data, dict) else None
            return _text_result(f"Error: {error or f'HTTP {resp.status_code}'}")
        return _text_result(json.dumps(data))

    async def handle_line(self, line: str) -> Optional[Message]:
        """Process one JSON-RPC line. Returns the response, or None when silent."""
        try:
            request = json.loads(line)
        except (json.JSONDecodeError, RecursionError):
            logger.debug("Ignoring non-JSON input line")
            return None
        if not isinstance(request, dict):
            return None

        req_id = request.get("id")
        has_id = "id" in request and req_id is not None
        method = request.get("method")
        params = request.get("params")
        if not isinstance(params, dict):
            params = {}

        if not isinstance(method, str):
            if has_id:
                return ErrorResponse(req_id, INVALID_REQUEST, "Invalid request: missing method")
            return None

        if method == "initialize":
            return SuccessResponse(req_id, self.handle_initialize(params)) if has_id else None

        if method == "notifications/initialized":
            return None

        if method == "ping":
            return SuccessResponse(req_id, {}) if has_id else None

        if method == "tools/list":
            return SuccessResponse(req_id, {"tools": TOOLS}) if has_id else None

        if method == "tools/call":
            if not has_id:
                return None
            tool_name = params.get("name")
            if not tool_name or not isinstance(tool_name, str):
                return ErrorResponse(req_id, INVALID_PARAMS, "Invalid params: missing tool name")
            arguments = params.get("arguments")
            if not isinstance(arguments, dict):
                arguments = {}
            try:
                result = await self.handle_call_tool(tool_name, arguments)
            except LookupError:
                return ErrorResponse(req_id, METHOD_NOT_FOUND, f"Unknown tool: {tool_name}")
            except Exception as e:
                logger.error("Tool %r failed: %s", tool_name, e, exc_info=True)
                result = _text_result(f"Internal error: {e}")
            return SuccessResponse(req_id, result)

        if has_id:
            return ErrorResponse(req_id, METHOD_NOT_FOUND, f"Method not found: {method}")
        return None

    async def run_stdio(self) -> None:
        """Main stdio transport loop."""
        loop = asyncio.get_running_loop()
        logger.info("%s v%s starting stdio transport", self.server_name, self.server_version)

        def _readline_limited():
            return sys.stdin.buffer.readline(MAX_REQUEST_LINE_BYTES + 1)

        while not self._shutting_down:
            try:
                line_bytes = await loop.run_in_executor(None, _readline_limited)
            except (EOFError, KeyboardInterrupt):
                break
            if not line_bytes:
                break
            if len(line_bytes) > MAX_REQUEST_LINE_BYTES:
                logger.warning("Request too large: %d bytes — ignored", len(line_bytes))
                continue

            response = await self.handle_line(line_bytes.decode("utf-8", errors="replace"))
            if response is not None:
                self._write_response(response)

        logger.info("Messaging MCP stdio loop ended")

    def _write_response(self, response: Message) -> None:
        try:
            sys.stdout.buffer.write(encode_message(response))
            sys.stdout.flush()
        except (BrokenPipeError, OSError) as e:
            logger.error("Failed to write response: %s", e)
            self._shutting_down = True


async def _amain() -> None:
    server = MessagingMCPServer()
    try:
        await server.run_stdio()
    finally:
        await server.aclose()


def main() -> None:
    # stdout is reserved for JSON-RPC
    logging.basicConfig(
        level=os.environ.get("GOTO_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    asyncio.run(_amain())


if __name__ == "__main__":
    main()

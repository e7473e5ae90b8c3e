"""goto-assistant — HTTP / WebSocket API

Thin starlette boundary over the config store, the cron bridge and the
messaging registry. Every McpError from the bridge is translated here:
list reads while mcp-cron is stopped return [], anything else is a 500.
"""

from __future__ import annotations
import contextlib
import json
import logging
import uuid
from typing import Any, AsyncIterator, Callable, Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from core.config import ConfigStore
from core.cron_bridge import CronBridge
from core.mcp_client import McpError, NotRunningError
from core.messaging import ChannelRegistry, UnknownChannelError

logger = logging.getLogger("assistant.http")

# responder(text, conversation_id) -> async iterator of reply text chunks
Responder = Callable[[str, str], AsyncIterator[str]]

NOT_CONFIGURED_TEXT = "Not configured. Visit /setup.html"


def _safe_exc(e: BaseException) -> str:
    return str(e).replace("\r", " ").replace("\n", " ")[:500]


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def create_app(
    store: ConfigStore,
    bridge: CronBridge,
    channels: ChannelRegistry,
    responder: Optional[Responder] = None,
) -> Starlette:
    """Build the assistant's ASGI application."""

    async def call_cron(tool: str, arguments: dict, empty_when_stopped: bool = False):
        try:
            return JSONResponse(await bridge.call_tool(tool, arguments))
        except NotRunningError as e:
            if empty_when_stopped:
                return JSONResponse([])
            return _error(str(e), 500)
        except McpError as e:
            logger.warning("Cron tool %s failed: %s", tool, _safe_exc(e))
            return _error(str(e), 500)

    # --- Health & config ---

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "configured": store.is_configured()})

    async def get_config(request: Request) -> JSONResponse:
        if not store.is_configured():
            return JSONResponse({"configured": False})
        return JSONResponse(store.masked_config(store.load_config()))

    async def setup(request: Request) -> JSONResponse:
        body = await _json_body(request)
        if not isinstance(body, dict) or not body.get("provider"):
            return _error("provider is required", 400)
        server = body.get("server")
        if not isinstance(server, dict) or not server.get("port"):
            return _error("server.port is required", 400)
        store.save_config(body)
        logger.info("Configuration saved (provider=%s)", body["provider"])
        return JSONResponse({"ok": True})

    async def get_mcp_servers(request: Request) -> JSONResponse:
        return JSONResponse(store.masked_mcp_servers(store.load_mcp_servers()))

    async def put_mcp_servers(request: Request) -> JSONResponse:
        body = await _json_body(request)
        if not isinstance(body, dict):
            return _error("Expected an object of MCP servers", 400)
        servers = body.get("mcpServers", body)
        if not isinstance(servers, dict):
            return _error("Expected an object of MCP servers", 400)
        try:
            store.save_mcp_servers(servers)
        except ValueError as e:
            return _error(str(e), 400)
        try:
            await bridge.restart()
        except McpError as e:
            logger.error("mcp-cron restart failed: %s", _safe_exc(e))
            return _error(f"Saved, but mcp-cron restart failed: {e}", 500)
        return JSONResponse({"ok": True})

    # --- Tasks ---

    async def list_tasks(request: Request) -> JSONResponse:
        return await call_cron("list_tasks", {}, empty_when_stopped=True)

    async def get_task(request: Request) -> JSONResponse:
        return await call_cron("get_task", {"id": request.path_params["id"]})

    async def add_task(request: Request) -> JSONResponse:
        body = await _json_body(request)
        if not isinstance(body, dict):
            return _error("Expected a JSON object", 400)
        return await call_cron("add_task", body)

    async def add_ai_task(request: Request) -> JSONResponse:
        body = await _json_body(request)
        if not isinstance(body, dict):
            return _error("Expected a JSON object", 400)
        return await call_cron("add_ai_task", body)

    async def update_task(request: Request) -> JSONResponse:
        body = await _json_body(request)
        if not isinstance(body, dict):
            return _error("Expected a JSON object", 400)
        return await call_cron("update_task", {**body, "id": request.path_params["id"]})

    async def remove_task(request: Request) -> JSONResponse:
        return await call_cron("remove_task", {"id": request.path_params["id"]})

    async def run_task(request: Request) -> JSONResponse:
        return await call_cron("run_task", {"id": request.path_params["id"]})

    async def enable_task(request: Request) -> JSONResponse:
        return await call_cron("enable_task", {"id": request.path_params["id"]})

    async def disable_task(request: Request) -> JSONResponse:
        return await call_cron("disable_task", {"id": request.path_params["id"]})

    async def task_results(request: Request) -> JSONResponse:
        arguments: dict = {"id": request.path_params["id"]}
        limit = request.query_params.get("limit")
        if limit is not None:
            try:
                arguments["limit"] = int(limit)
            except ValueError:
                return _error("limit must be an integer", 400)
        return await call_cron("get_task_result", arguments, empty_when_stopped=True)

    # --- Messaging ---

    async def list_channels(request: Request) -> JSONResponse:
        return JSONResponse({"channels": channels.list()})

    async def send_message(request: Request) -> JSONResponse:
        body = await _json_body(request)
        if not isinstance(body, dict) or not body.get("channel") or not body.get("message"):
            return _error("channel and message are required", 400)
        try:
            message_id = await channels.send(body["channel"], body["message"], body.get("to"))
        except UnknownChannelError as e:
            return _error(e.args[0], 400)
        except Exception as e:
            logger.error("Send via %s failed: %s", body["channel"], _safe_exc(e))
            return _error(str(e), 500)
        return JSONResponse({"ok": True, "messageId": message_id})

    # --- Chat ---

    async def chat_ws(websocket: WebSocket) -> None:
        await websocket.accept()
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    msg = json.loads(raw)
                except ValueError:
                    await websocket.send_json({"type": "error", "text": "Invalid JSON"})
                    continue
                if (
                    not isinstance(msg, dict)
                    or msg.get("type") != "message"
                    or not isinstance(msg.get("text"), str)
                ):
                    await websocket.send_json({"type": "error", "text": "Invalid message format"})
                    continue
                if responder is None or not store.is_configured():
                    await websocket.send_json({"type": "error", "text": NOT_CONFIGURED_TEXT})
                    continue

                conversation_id = msg.get("conversationId") or str(uuid.uuid4())
                try:
                    async for chunk in responder(msg["text"], conversation_id):
                        await websocket.send_json({"type": "chunk", "text": chunk})
                except WebSocketDisconnect:
                    raise
                except Exception as e:
                    logger.error("Responder failed: %s", _safe_exc(e), exc_info=True)
                    await websocket.send_json({"type": "error", "text": str(e)})
                    continue
                await websocket.send_json({"type": "done", "conversationId": conversation_id})
        except WebSocketDisconnect:
            logger.debug("WebSocket client disconnected")

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        if store.is_configured():
            try:
                await bridge.restart()
            except (McpError, OSError, ValueError) as e:
                logger.error("mcp-cron failed to start: %s", _safe_exc(e))
        try:
            yield
        finally:
            await bridge.stop()

    routes = [
        Route("/health", health),
        Route("/api/config", get_config, methods=["GET"]),
        Route("/api/setup", setup, methods=["POST"]),
        Route("/api/mcp-servers", get_mcp_servers, methods=["GET"]),
        Route("/api/mcp-servers", put_mcp_servers, methods=["PUT"]),
        Route("/api/tasks", list_tasks, methods=["GET"]),
        Route("/api/tasks", add_task, methods=["POST"]),
        Route("/api/tasks/ai", add_ai_task, methods=["POST"]),
        Route("/api/tasks/{id}", get_task, methods=["GET"]),
        Route("/api/tasks/{id}", update_task, methods=["PUT"]),
        Route("/api/tasks/{id}", remove_task, methods=["DELETE"]),
        Route("/api/tasks/{id}/run", run_task, methods=["POST"]),
        Route("/api/tasks/{id}/enable", enable_task, methods=["POST"]),
        Route("/api/tasks/{id}/disable", disable_task, methods=["POST"]),
        Route("/api/tasks/{id}/results", task_results, methods=["GET"]),
        Route("/api/messaging/channels", list_channels, methods=["GET"]),
        Route("/api/messaging/send", send_message, methods=["POST"]),
        WebSocketRoute("/ws", chat_ws),
    ]
    return Starlette(routes=routes, lifespan=lifespan)

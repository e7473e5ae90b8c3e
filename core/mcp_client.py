"""goto-assistant — MCP stdio client (subprocess supervisor)

Owns exactly one MCP tool-server child process. The assistant talks to it
with newline-delimited JSON-RPC over stdin/stdout.

Lifecycle:  stopped -> starting -> running -> stopping -> stopped
            starting -> stopped   (spawn failure, handshake timeout, crash)
            running  -> stopped   (unexpected exit; no auto-restart)

- A single reader task demultiplexes stdout to pending futures by request id,
  so concurrent calls may complete out of order.
- Each request has its own deadline; a timeout only fails that request.
- When the process stops or dies, every pending request is rejected at once.
- Request ids restart at 1 for each spawned process.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import sys
from collections import deque
from typing import Any, Dict, Optional

from core.jsonrpc import (
    METHOD_NOT_FOUND,
    ErrorResponse,
    JsonRpcFramer,
    Message,
    Notification,
    Request,
    SuccessResponse,
    encode_message,
)
from models.models import McpServerConfig, ProcessState

logger = logging.getLogger("assistant.mcp_client")

# --- Constants ---
DEFAULT_RESPONSE_TIMEOUT = 10.0         # Seconds per request, initialize included
MCP_PROTOCOL_VERSION = "2024-11-05"     # Centralized MCP protocol version
CLIENT_NAME = "goto-assistant"
CLIENT_VERSION = "1.0.0"
READ_CHUNK_BYTES = 64 * 1024            # stdout read size
DRAIN_TIMEOUT = 10.0                    # Seconds to wait for stdin.drain()
POSIX_KILL_GRACE = 3.0                  # Seconds between SIGTERM and SIGKILL
GRACEFUL_STOP_TIMEOUT = 5.0             # Seconds to wait for exit after SIGKILL
STDERR_BUFFER_LINES = 50


def _safe_exc(e: BaseException, max_len: int = 200) -> str:
    """Sanitize exception for logging: strip CR/LF, truncate."""
    return str(e)[:max_len].replace('\r', ' ').replace('\n', ' ')


class McpError(Exception):
    """Base class for failures talking to an MCP tool server."""


class NotRunningError(McpError):
    """Raised when a call is attempted while the server is not running."""


class SpawnError(McpError):
    """Raised when the child process could not be launched."""


class ResponseTimeoutError(McpError):
    """Raised when no matching response arrived before the deadline."""


class HandshakeTimeoutError(ResponseTimeoutError):
    """Raised when the server did not answer initialize in time."""


class CallTimeoutError(ResponseTimeoutError):
    """Raised when a tools/call request did not get a response in time."""


class RpcError(McpError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class ProcessExitError(McpError):
    """Raised for requests outstanding when the child process exits."""


class ServerStoppedError(ProcessExitError):
    """Raised for requests outstanding when stop() is called."""


class McpStdioClient:
    """Supervises one MCP server subprocess and correlates its JSON-RPC traffic."""

    def __init__(
        self,
        name: str,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        kill_grace: float = POSIX_KILL_GRACE,
    ):
        self.name = name
        self.response_timeout = response_timeout
        self.kill_grace = kill_grace
        self.server_info: Optional[dict] = None
        self._state = ProcessState.STOPPED
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stdout_reader: Optional[asyncio.Task] = None
        self._stderr_reader: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._next_id: int = 1
        self._stderr_buffer: deque = deque(maxlen=STDERR_BUFFER_LINES)
        self._reapers: set = set()
        self._lock = asyncio.Lock()

    # --- Public API ---

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ProcessState.RUNNING and self._process is not None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    async def start(self, config: McpServerConfig) -> None:
        """Spawn the server and complete the MCP handshake.

        No-op if already running. On any failure the child is killed, the
        state returns to stopped, and the error propagates.
        """
        async with self._lock:
            if self._state is ProcessState.RUNNING:
                return

            self._state = ProcessState.STARTING
            self._next_id = 1
            self.server_info = None
            self._stderr_buffer.clear()

            try:
                proc = await self._spawn_process(config)
            except SpawnError:
                self._state = ProcessState.STOPPED
                raise

            self._process = proc
            self._stdout_reader = asyncio.create_task(
                self._stdout_reader_loop(proc),
                name=f"mcp-{self.name}-stdout"
            )
            self._stderr_reader = asyncio.create_task(
                self._stderr_reader_loop(proc),
                name=f"mcp-{self.name}-stderr"
            )

            try:
                await self._mcp_handshake()
            except BaseException as e:
                logger.error(
                    "MCP server %r failed to start: %s",
                    self.name, _safe_exc(e) or type(e).__name__
                )
                await self._teardown(
                    proc, ProcessExitError(f"{self.name} failed to start")
                )
                raise

            self._state = ProcessState.RUNNING
            logger.info("MCP server %r started (PID %d)", self.name, proc.pid)

    async def stop(self) -> None:
        """Reject outstanding requests and terminate the child. Idempotent."""
        async with self._lock:
            proc = self._process
            if proc is None:
                self._state = ProcessState.STOPPED
                return
            self._state = ProcessState.STOPPING
            logger.info("Stopping MCP server %r (PID %d)...", self.name, proc.pid)
            await self._teardown(proc, ServerStoppedError(f"{self.name} stopped"))
            logger.info("MCP server %r stopped", self.name)

    async def call(self, tool_name: str, arguments: Optional[dict] = None) -> Any:
        """Invoke tools/call and return the raw MCP result object."""
        if not self.is_running:
            raise NotRunningError(f"{self.name} is not running")
        return await self._request(
            "tools/call",
            {"name": tool_name, "arguments": arguments or {}},
        )

    # --- Subprocess Lifecycle ---

    async def _spawn_process(self, config: McpServerConfig) -> asyncio.subprocess.Process:
        env = dict(os.environ)
        env.update(config.env)

        kwargs: Dict[str, Any] = {
            'stdin': asyncio.subprocess.PIPE,
            'stdout': asyncio.subprocess.PIPE,
            'stderr': asyncio.subprocess.PIPE,
            'env': env,
        }
        if sys.platform == 'win32':
            kwargs['creationflags'] = 0x00000200  # CREATE_NEW_PROCESS_GROUP
        else:
            # New session: launchers like npx fork children that must die with us
            kwargs['start_new_session'] = True

        try:
            proc = await asyncio.create_subprocess_exec(
                config.command, *config.args, **kwargs
            )
        except (OSError, ValueError) as e:
            logger.error(
                "MCP server %r spawn failed: %s", self.name, _safe_exc(e)
            )
            raise SpawnError(f"Failed to spawn {self.name}: {e}") from e

        logger.debug("MCP server %r spawned (PID %d)", self.name, proc.pid)
        return proc

    async def _teardown(self, proc: asyncio.subprocess.Process, error: McpError) -> None:
        """Reject pending requests, kill the child, cancel readers, mark stopped."""
        if self._process is proc:
            self._process = None
        self._reject_all_pending(error)
        await self._kill_process_tree(proc)
        await self._cancel_readers()
        self._state = ProcessState.STOPPED

    async def _kill_process_tree(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, escalate to SIGKILL after a grace period."""
        if proc.stdin is not None and not proc.stdin.is_closing():
            try:
                proc.stdin.close()
            except OSError:
                pass

        if proc.returncode is not None:
            return

        self._signal_tree(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
            return
        except asyncio.TimeoutError:
            pass

        logger.warning(
            "MCP server %r ignored SIGTERM for %.1fs, killing",
            self.name, self.kill_grace
        )
        self._signal_tree(proc, getattr(signal, 'SIGKILL', signal.SIGTERM))
        # Reaping happens in the background; callers only wait out the grace period
        reaper = asyncio.create_task(
            self._reap_killed(proc), name=f"mcp-{self.name}-reaper"
        )
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    async def _reap_killed(self, proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=GRACEFUL_STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(
                "MCP server %r: process didn't exit after kill", self.name
            )

    def _signal_tree(self, proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if sys.platform == 'win32':
                if sig == signal.SIGTERM:
                    proc.terminate()
                else:
                    proc.kill()
            else:
                # start_new_session made the child its own group leader
                os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass  # Already exited
        except PermissionError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def _cancel_readers(self) -> None:
        for task in (self._stdout_reader, self._stderr_reader):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._stdout_reader = None
        self._stderr_reader = None

    async def _handle_process_exit(self, proc: asyncio.subprocess.Process) -> None:
        """stdout hit EOF while we still own the process: the child died."""
        if self._process is not proc:
            return  # stop() or a failed start already took ownership

        self._process = None
        self._state = ProcessState.STOPPED
        self._reject_all_pending(ProcessExitError(f"{self.name} exited"))
        logger.warning(
            "MCP server %r exited unexpectedly (PID %d), last stderr: %s",
            self.name, proc.pid, self._get_stderr_context()
        )

        # stdout may close before the process is gone; make sure it is
        await self._kill_process_tree(proc)
        logger.info("MCP server %r exit code %s", self.name, proc.returncode)

    def _reject_all_pending(self, error: McpError) -> None:
        """Fail every outstanding request in one pass."""
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    def _get_stderr_context(self) -> str:
        lines = list(self._stderr_buffer)
        if not lines:
            return "(no stderr captured)"
        return " | ".join(lines[-3:])[:500]

    # --- MCP Protocol ---

    async def _mcp_handshake(self) -> None:
        """initialize -> notifications/initialized."""
        result = await self._request(
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
            },
            timeout_error=HandshakeTimeoutError,
        )
        if isinstance(result, dict) and isinstance(result.get("serverInfo"), dict):
            self.server_info = result["serverInfo"]

        await self._send(Notification(method="notifications/initialized"))
        logger.debug("MCP server %r: handshake complete", self.name)

    async def _send(self, message: Message) -> None:
        proc = self._process
        if proc is None or proc.stdin is None:
            raise NotRunningError(f"{self.name} is not running")
        try:
            proc.stdin.write(encode_message(message))
            await asyncio.wait_for(proc.stdin.drain(), timeout=DRAIN_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise ProcessExitError(
                f"{self.name} stdin drain timed out (server not reading stdin)"
            ) from e
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            raise ProcessExitError(f"{self.name} pipe broken: {e}") from e

    async def _request(
        self,
        method: str,
        params: dict,
        timeout: Optional[float] = None,
        timeout_error: type = CallTimeoutError,
    ) -> Any:
        """Send a JSON-RPC request and wait for the response with the same id."""
        if self._process is None:
            raise NotRunningError(f"{self.name} is not running")

        request_id = self._next_id
        self._next_id += 1
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[request_id] = future

        if timeout is None:
            timeout = self.response_timeout
        try:
            await self._send(Request(id=request_id, method=method, params=params))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "MCP server %r: %s timed out after %ss (id=%d)",
                self.name, method, timeout, request_id
            )
            raise timeout_error(f"MCP response timeout (id={request_id})") from None
        finally:
            self._pending.pop(request_id, None)
            if not future.done():
                future.cancel()
            elif not future.cancelled():
                future.exception()  # mark retrieved

    # --- Reader Loops ---

    async def _stdout_reader_loop(self, proc: asyncio.subprocess.Process) -> None:
        """Background task: frame stdout and route each message."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        framer = JsonRpcFramer()
        try:
            while True:
                chunk = await proc.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break  # EOF
                for message in framer.feed(decoder.decode(chunk)):
                    await self._route_message(message)
        except asyncio.CancelledError:
            return
        except (ConnectionResetError, BrokenPipeError):
            pass
        except Exception as e:
            logger.error(
                "MCP server %r: stdout reader error: %s", self.name, _safe_exc(e)
            )
        await self._handle_process_exit(proc)

    async def _stderr_reader_loop(self, proc: asyncio.subprocess.Process) -> None:
        """Captures stderr for diagnostics."""
        try:
            while True:
                try:
                    line_bytes = await proc.stderr.readline()
                except ValueError:
                    continue  # Line over the stream limit; remainder was discarded
                if not line_bytes:
                    break
                line = line_bytes.decode('utf-8', errors='replace').rstrip()
                if not line:
                    continue
                safe_line = line.replace('\r', ' ').replace('\n', ' ')[:1000]
                self._stderr_buffer.append(safe_line)
                logger.debug("MCP server %r stderr: %s", self.name, safe_line[:200])
        except asyncio.CancelledError:
            return
        except (ConnectionResetError, BrokenPipeError):
            pass

    async def _route_message(self, message: Message) -> None:
        if isinstance(message, (SuccessResponse, ErrorResponse)):
            req_id = message.id
            # Some servers echo ids back as strings
            if isinstance(req_id, str):
                try:
                    req_id = int(req_id)
                except ValueError:
                    return
            future = self._pending.pop(req_id, None)
            if future is None:
                logger.debug(
                    "MCP server %r: response for unknown id %s", self.name, req_id
                )
                return
            if future.done():
                return
            if isinstance(message, ErrorResponse):
                future.set_exception(RpcError(message.code, message.message, message.data))
            else:
                future.set_result(message.result)

        elif isinstance(message, Request):
            await self._handle_server_request(message)

        else:
            logger.debug(
                "MCP server %r: notification: %s",
                self.name, message.method[:200].replace('\r', ' ').replace('\n', ' ')
            )

    async def _handle_server_request(self, request: Request) -> None:
        """Answer server-initiated requests (ping; everything else is unsupported)."""
        if request.method == 'ping':
            response: Message = SuccessResponse(id=request.id, result={})
        else:
            safe_method = request.method[:200].replace('\r', ' ').replace('\n', ' ')
            response = ErrorResponse(
                id=request.id,
                code=METHOD_NOT_FOUND,
                message=f"Method not found: {safe_method}",
            )
        try:
            await self._send(response)
        except McpError:
            pass  # Process is dying, nothing to answer

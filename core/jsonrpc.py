"""goto-assistant — JSON-RPC 2.0 framing over newline-delimited text streams.

MCP stdio transports carry one JSON object per line. The framer accumulates
text chunks as they arrive from a pipe, splits complete lines, and yields
validated messages. Anything that is not a well-formed JSON-RPC object is
dropped: tool servers are known to print stray banners and debug output on
stdout.
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union

logger = logging.getLogger("assistant.jsonrpc")

JSONRPC_VERSION = "2.0"
MAX_LINE_LENGTH = 2 * 1024 * 1024  # chars per JSON-RPC line

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


@dataclass(frozen=True)
class Request:
    id: Union[int, str]
    method: str
    params: Optional[dict] = None


@dataclass(frozen=True)
class Notification:
    method: str
    params: Optional[dict] = None


@dataclass(frozen=True)
class SuccessResponse:
    id: Union[int, str, None]
    result: Any = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorResponse:
    id: Union[int, str, None]
    code: int
    message: str
    data: Any = None


Message = Union[Request, Notification, SuccessResponse, ErrorResponse]


def _valid_id(value: Any) -> bool:
    # bool is an int subclass; reject it explicitly
    return value is None or (isinstance(value, (int, str)) and not isinstance(value, bool))


def parse_message(obj: Any) -> Optional[Message]:
    """Classify a decoded JSON value. Returns None for anything malformed."""
    if not isinstance(obj, dict):
        return None
    if obj.get("jsonrpc") != JSONRPC_VERSION:
        return None

    params = obj.get("params")
    if params is not None and not isinstance(params, dict):
        return None

    if "method" in obj:
        method = obj["method"]
        if not isinstance(method, str) or not method:
            return None
        if "id" not in obj:
            return Notification(method=method, params=params)
        if obj["id"] is None or not _valid_id(obj["id"]):
            return None
        return Request(id=obj["id"], method=method, params=params)

    if "id" not in obj or not _valid_id(obj["id"]):
        return None

    if "error" in obj:
        error = obj["error"]
        if not isinstance(error, dict):
            return None
        code = error.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            return None
        message = error.get("message", "")
        return ErrorResponse(
            id=obj["id"],
            code=code,
            message=str(message),
            data=error.get("data"),
        )

    if "result" in obj:
        return SuccessResponse(id=obj["id"], result=obj["result"])

    return None


def encode_message(message: Message) -> bytes:
    """Serialize a message as a single UTF-8 line terminated by a newline."""
    payload: dict = {"jsonrpc": JSONRPC_VERSION}
    if isinstance(message, Request):
        payload["id"] = message.id
        payload["method"] = message.method
        if message.params is not None:
            payload["params"] = message.params
    elif isinstance(message, Notification):
        payload["method"] = message.method
        if message.params is not None:
            payload["params"] = message.params
    elif isinstance(message, SuccessResponse):
        payload["id"] = message.id
        payload["result"] = message.result
    elif isinstance(message, ErrorResponse):
        payload["id"] = message.id
        error = {"code": message.code, "message": message.message}
        if message.data is not None:
            error["data"] = message.data
        payload["error"] = error
    else:
        raise TypeError(f"not a JSON-RPC message: {type(message).__name__}")
    # json.dumps escapes raw newlines inside strings, so the line stays whole
    return (json.dumps(payload) + "\n").encode("utf-8")


class JsonRpcFramer:
    """Turns an unbounded sequence of text chunks into JSON-RPC messages.

    The trailing segment after the last newline is kept until the next
    chunk completes it. There is no rewind: build a new framer per stream.
    """

    def __init__(self, max_line_length: int = MAX_LINE_LENGTH) -> None:
        self.max_line_length = max_line_length
        self._buffer = ""

    @property
    def pending_text(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> Iterator[Message]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        if len(self._buffer) > self.max_line_length:
            logger.warning(
                "Discarding oversized partial line (%d chars, max %d)",
                len(self._buffer), self.max_line_length,
            )
            self._buffer = ""
        # The buffer is already updated before the first yield, so an
        # abandoned iterator never causes lines to be re-emitted.
        return self._parse_lines(lines)

    def _parse_lines(self, lines: list) -> Iterator[Message]:
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except (json.JSONDecodeError, RecursionError) as e:
                logger.debug(
                    "Dropping non-JSON line: %s",
                    str(e)[:100].replace('\r', ' ').replace('\n', ' '),
                )
                continue
            message = parse_message(obj)
            if message is None:
                logger.debug("Dropping malformed JSON-RPC message")
                continue
            yield message

"""goto-assistant — Data Models

- McpServerConfig: one named entry of the tool-server registry (mcp.json)
- ProcessState: lifecycle of a supervised MCP child process
- Fingerprinting of server configs for the restart policy
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List
import hashlib
import json
import re


class ProcessState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class McpServerConfig:
    """Launch parameters for an MCP tool server speaking JSON-RPC over stdio."""
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.command, str):
            raise ValueError("command must be a string")
        # Null bytes truncate argv on POSIX
        self.command = re.sub(r'[\x00]', '', self.command)
        if not self.command.strip():
            raise ValueError("command cannot be empty")

        if not isinstance(self.args, list):
            raise ValueError("args must be a list")
        for i, arg in enumerate(self.args):
            if not isinstance(arg, str):
                raise ValueError(
                    f"args[{i}] must be a string, got {type(arg).__name__}"
                )
        self.args = [arg.replace('\x00', '') for arg in self.args]

        if self.env is None:
            self.env = {}
        if not isinstance(self.env, dict):
            raise ValueError("env must be an object")
        for key, value in self.env.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ValueError(f"env entry {key!r} must map a string to a string")

    @classmethod
    def from_dict(cls, data: Any) -> McpServerConfig:
        """Build from a raw mcp.json entry: {command, args, env?}."""
        if not isinstance(data, dict):
            raise ValueError(
                f"server entry must be an object, got {type(data).__name__}"
            )
        return cls(
            command=data.get("command", ""),
            args=data.get("args") or [],
            env=data.get("env") or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"command": self.command, "args": list(self.args), "env": dict(self.env)}

    def fingerprint(self) -> str:
        """Digest of the canonical serialization of command, args and env.

        Key order in env does not matter; argument order does.
        """
        canonical = json.dumps(
            self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=True
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

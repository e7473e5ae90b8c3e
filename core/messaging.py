"""goto-assistant — Messaging channel registry.

Transports (e.g. WhatsApp) register a send function under a channel name;
the HTTP API and the messaging MCP server route outgoing messages here.
"""

from __future__ import annotations
import logging
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger("assistant.messaging")

# send(message, to, media) -> number of messages delivered
SendFn = Callable[[str, Optional[str], Optional[str]], Awaitable[int]]


class UnknownChannelError(LookupError):
    pass


class ChannelRegistry:
    def __init__(self) -> None:
        self._channels: Dict[str, SendFn] = {}

    def register(self, name: str, send: SendFn) -> None:
        self._channels[name] = send
        logger.info("Messaging channel %r registered", name)

    def unregister(self, name: str) -> None:
        if self._channels.pop(name, None) is not None:
            logger.info("Messaging channel %r unregistered", name)

    def get(self, name: str) -> Optional[SendFn]:
        return self._channels.get(name)

    def list(self) -> List[str]:
        return list(self._channels)

    async def send(
        self,
        channel: str,
        message: str,
        to: Optional[str] = None,
        media: Optional[str] = None,
    ) -> int:
        send = self.get(channel)
        if send is None:
            available = ", ".join(self.list()) or "none"
            raise UnknownChannelError(
                f'Unknown channel: "{channel}". Available channels: {available}'
            )
        return await send(message, to, media)

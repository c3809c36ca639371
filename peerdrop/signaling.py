"""
Peer-side connection to the rendezvous relay.

The relay speaks JSON text frames over one persistent WebSocket per peer.
``RelayClient`` sends typed client messages and yields typed server
messages; anything it cannot parse is logged and skipped.
"""

import logging
from collections.abc import AsyncIterator
from typing import Protocol

from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from .exceptions import ChannelError
from .models import ClientMessage, ServerMessage, parse_server_message

logger = logging.getLogger(__name__)


class RelayConnection(Protocol):
    """What a SessionNegotiator needs from its relay link."""

    async def send(self, message: ClientMessage) -> None: ...

    def __aiter__(self) -> AsyncIterator[ServerMessage]: ...


class RelayClient:
    def __init__(self, url: str) -> None:
        self.url = url
        self._ws: ClientConnection | None = None

    async def connect(self) -> "RelayClient":
        try:
            self._ws = await connect(self.url)
        except OSError as e:
            raise ChannelError(f"Could not reach relay at {self.url}: {e}")
        logger.info(f"Connected to relay {self.url}")
        return self

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def __aenter__(self) -> "RelayClient":
        return await self.connect()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def send(self, message: ClientMessage) -> None:
        if self._ws is None:
            raise ChannelError("Relay connection is not open")
        try:
            await self._ws.send(message.model_dump_json())
        except ConnectionClosed as e:
            raise ChannelError(f"Relay connection closed: {e}")
        logger.debug(f"Sent {message.type} to relay")

    async def __aiter__(self) -> AsyncIterator[ServerMessage]:
        if self._ws is None:
            raise ChannelError("Relay connection is not open")
        try:
            async for raw in self._ws:
                try:
                    message = parse_server_message(raw)
                except ValidationError as e:
                    logger.warning(f"Ignoring malformed relay frame: {e.error_count()} error(s)")
                    continue
                yield message
        except ConnectionClosed:
            logger.info("Relay connection closed")

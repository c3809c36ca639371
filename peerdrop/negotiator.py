"""
Per-peer session negotiation: room creation/joining through the relay and
the offer/answer/ICE exchange that produces a usable direct channel.

States::

    IDLE -> CREATING_ROOM -> AWAITING_PEER -> NEGOTIATING -> CONNECTED
    IDLE -> JOINING_ROOM  -> NEGOTIATING   -> CONNECTED
    any  -> DISCONNECTED  -> IDLE            (teardown)

Relay messages are consumed one at a time by a single reader task, so a
peer's negotiation state is only ever mutated from that task or from the
public coroutines awaited by the caller on the same event loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Coroutine
from enum import Enum
from typing import Any

from .config import Settings
from .events import ConnectionState, Event, EventEmitter
from .exceptions import ChannelError, NegotiationError, RoomFull, RoomNotFound
from .models import (
    Answer,
    CreateRoom,
    IceCandidate,
    JoinedRoom,
    JoinError,
    JoinRoom,
    Offer,
    PeerDisconnected,
    PeerJoined,
    RelayError,
    RoomCreated,
    ReceivedArtifact,
    ServerMessage,
)
from .rtc import DATA_CHANNEL_LABEL, DataChannel, Endpoint, RTCEndpoint
from .signaling import RelayConnection
from .transfer import OutgoingFile, TransferEngine

logger = logging.getLogger(__name__)

EndpointFactory = Callable[[list[str]], Endpoint]


class NegotiationState(str, Enum):
    IDLE = "idle"
    CREATING_ROOM = "creating_room"
    AWAITING_PEER = "awaiting_peer"
    JOINING_ROOM = "joining_room"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class SessionNegotiator:
    def __init__(
        self,
        relay: RelayConnection,
        settings: Settings | None = None,
        endpoint_factory: EndpointFactory = RTCEndpoint,
        events: EventEmitter | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.relay = relay
        self.events = events if events is not None else EventEmitter()
        self.engine = TransferEngine(
            self.events,
            chunk_size=self.settings.chunk_size,
            high_water_mark=self.settings.high_water_mark,
            drain_poll_interval=self.settings.drain_poll_interval,
        )
        self._endpoint_factory = endpoint_factory

        self.state = NegotiationState.IDLE
        self.connection_state = ConnectionState.DISCONNECTED
        self.disconnected = asyncio.Event()
        self.disconnected.set()

        self._is_creator = False
        self._room_id: str | None = None
        self._endpoint: Endpoint | None = None
        self._channel: DataChannel | None = None
        # Resolved by the reader task when the relay answers initiate/join
        self._room_reply: asyncio.Future[str] | None = None

        self._reader: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SessionNegotiator:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def start(self) -> None:
        """Begin consuming relay messages."""
        if self._reader is None:
            self._reader = asyncio.ensure_future(self._read_relay())

    async def close(self) -> None:
        self._teardown("closing")
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def channel(self) -> DataChannel | None:
        return self._channel

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def initiate(self, as_creator: bool) -> str | None:
        """Reset and open a fresh endpoint.

        As creator: ask the relay for a room, create the outgoing data channel
        and return the room id once the relay confirms it.  Otherwise: arm the
        endpoint to accept the channel the creator will offer.
        """
        self._teardown("re-initiating")
        self.disconnected.clear()
        self._is_creator = as_creator
        endpoint = self._endpoint_factory(self.settings.ice_servers)
        self._endpoint = endpoint
        endpoint.on_ice_candidate(lambda candidate: self._on_local_candidate(endpoint, candidate))
        endpoint.on_connection_state(lambda state: self._on_endpoint_state(endpoint, state))

        if not as_creator:
            endpoint.on_data_channel(lambda channel: self._on_data_channel(endpoint, channel))
            return None

        self._room_id = None
        self._set_state(NegotiationState.CREATING_ROOM)
        self._setup_data_channel(endpoint.create_data_channel(DATA_CHANNEL_LABEL))
        reply = self._expect_room_reply()
        await self.relay.send(CreateRoom())
        return await reply

    async def join(self, room_id: str) -> None:
        """Join *room_id*; raises RoomNotFound or RoomFull if the relay refuses."""
        await self.initiate(as_creator=False)
        self._set_state(NegotiationState.JOINING_ROOM)
        self._set_connection_state(ConnectionState.CONNECTING)
        reply = self._expect_room_reply()
        await self.relay.send(JoinRoom(room_id=room_id))
        await reply

    async def send(self, file: OutgoingFile | str | os.PathLike) -> None:
        await self.engine.send(file)

    def retrieve(self, consume: bool = False) -> ReceivedArtifact:
        return self.engine.retrieve(consume=consume)

    def clear_received(self) -> None:
        self.engine.clear_received()

    # ------------------------------------------------------------------
    # Relay messages
    # ------------------------------------------------------------------

    async def _read_relay(self) -> None:
        try:
            async for message in self.relay:
                try:
                    await self.handle_relay_message(message)
                except NegotiationError as e:
                    # Left as-is, no retry
                    logger.error(f"Negotiation failed in state {self.state.value}: {e}")
        except ChannelError as e:
            logger.error(f"Relay connection failed: {e}")
        finally:
            self._fail_room_reply(ChannelError("Relay connection closed"))
            # Without the relay an unfinished negotiation can never complete
            if self.state is not NegotiationState.CONNECTED:
                self._teardown("relay connection lost")
            logger.info("Stopped reading from relay")

    async def handle_relay_message(self, message: ServerMessage) -> None:
        match message:
            case RoomCreated(room_id=room_id):
                self._room_id = room_id
                self._set_state(NegotiationState.AWAITING_PEER)
                self._set_connection_state(ConnectionState.CONNECTING)
                logger.info(f"Room created: {room_id}")
                self.events.emit(Event.ROOM_CREATED, room_id)
                self._resolve_room_reply(room_id)
            case JoinedRoom(room_id=room_id):
                self._room_id = room_id
                self._set_state(NegotiationState.NEGOTIATING)
                logger.info(f"Joined room: {room_id}")
                self._resolve_room_reply(room_id)
            case JoinError(code=code, reason=reason):
                logger.error(f"Join error: {reason}")
                self._room_id = None
                self._teardown("join refused")
                self._set_connection_state(ConnectionState.DISCONNECTED)
                self.events.emit(Event.JOIN_ERROR, reason)
                error = RoomFull(reason) if code == "room-full" else RoomNotFound(reason)
                self._fail_room_reply(error)
            case PeerJoined(peer_id=peer_id):
                await self._on_peer_joined(peer_id)
            case PeerDisconnected():
                logger.info("Peer disconnected")
                self._teardown("peer disconnected")
                self._room_id = None
            case Offer(payload=payload):
                await self._on_offer(payload)
            case Answer(payload=payload):
                await self._on_answer(payload)
            case IceCandidate(payload=payload):
                await self._on_remote_candidate(payload)
            case RelayError(message=text):
                logger.error(f"Relay rejected a message: {text}")

    async def _on_peer_joined(self, peer_id: str) -> None:
        endpoint = self._endpoint
        if not self._is_creator or endpoint is None or self._room_id is None:
            logger.warning(f"Ignoring peer-joined from {peer_id}: not hosting a room")
            return
        logger.info(f"Peer {peer_id} joined, creating offer")
        self._set_state(NegotiationState.NEGOTIATING)
        try:
            offer = await endpoint.create_offer()
            local = await endpoint.set_local_description(offer)
        except Exception as e:
            raise NegotiationError(f"Error creating offer: {e}") from e
        await self.relay.send(Offer(payload=local))

    async def _on_offer(self, payload: dict[str, Any]) -> None:
        endpoint = self._endpoint
        if self._is_creator or endpoint is None:
            logger.warning("Ignoring offer: not waiting for one")
            return
        try:
            await endpoint.set_remote_description(payload)
            answer = await endpoint.create_answer()
            local = await endpoint.set_local_description(answer)
        except Exception as e:
            raise NegotiationError(f"Error handling offer: {e}") from e
        await self.relay.send(Answer(payload=local))

    async def _on_answer(self, payload: dict[str, Any]) -> None:
        endpoint = self._endpoint
        if endpoint is None or endpoint.signaling_state != "have-local-offer":
            state = endpoint.signaling_state if endpoint is not None else "no endpoint"
            logger.warning(f"Ignoring answer with no pending offer ({state})")
            return
        try:
            await endpoint.set_remote_description(payload)
        except Exception as e:
            raise NegotiationError(f"Error applying answer: {e}") from e

    async def _on_remote_candidate(self, payload: dict[str, Any] | None) -> None:
        endpoint = self._endpoint
        if endpoint is None or not endpoint.has_remote_description:
            # Not buffered for later: an early candidate is lost
            logger.warning("Dropping ICE candidate received before the remote description")
            return
        if payload is None:
            return
        try:
            await endpoint.add_ice_candidate(payload)
        except Exception as e:
            raise NegotiationError(f"Error adding ICE candidate: {e}") from e

    # ------------------------------------------------------------------
    # Endpoint and channel callbacks
    # ------------------------------------------------------------------

    def _on_local_candidate(self, endpoint: Endpoint, candidate: dict[str, Any]) -> None:
        if endpoint is not self._endpoint:
            return
        self._spawn(self.relay.send(IceCandidate(payload=candidate)))

    def _on_endpoint_state(self, endpoint: Endpoint, state: str) -> None:
        if endpoint is not self._endpoint:
            return
        if state in ("failed", "closed"):
            logger.error(f"Peer connection {state}")
            self._teardown(f"peer connection {state}")

    def _on_data_channel(self, endpoint: Endpoint, channel: DataChannel) -> None:
        if endpoint is not self._endpoint:
            channel.close()
            return
        logger.info(f"Inbound data channel {channel.label!r}")
        self._setup_data_channel(channel)

    def _setup_data_channel(self, channel: DataChannel) -> None:
        self._channel = channel
        self.engine.attach(channel)

        def on_open() -> None:
            if channel is not self._channel:
                return
            logger.info("DataChannel is open")
            self._set_state(NegotiationState.CONNECTED)
            self._set_connection_state(ConnectionState.CONNECTED)
            self.engine.channel_opened()

        def on_message(data: str | bytes) -> None:
            if channel is self._channel:
                self.engine.handle_message(data)

        def on_close() -> None:
            if channel is self._channel:
                logger.info("DataChannel is closed")
                self._teardown("data channel closed")

        def on_error(error: Any) -> None:
            if channel is self._channel:
                logger.error(f"DataChannel error: {error}")
                self._teardown("data channel error")

        channel.on("open", on_open)
        channel.on("message", on_message)
        channel.on("close", on_close)
        channel.on("error", on_error)
        if channel.readyState == "open":
            on_open()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _teardown(self, reason: str) -> None:
        """Close the channel and endpoint and reset transfer state; idempotent."""
        endpoint, channel = self._endpoint, self._channel
        self._endpoint = None
        self._channel = None
        if endpoint is None and channel is None and self.state is NegotiationState.IDLE:
            return

        logger.info(f"Tearing down connection: {reason}")
        self._set_state(NegotiationState.DISCONNECTED)
        if channel is not None:
            channel.close()
        self.engine.reset()
        if endpoint is not None:
            self._spawn(endpoint.close())
        self._set_connection_state(ConnectionState.DISCONNECTED)
        self._set_state(NegotiationState.IDLE)
        self.disconnected.set()

    def _set_state(self, state: NegotiationState) -> None:
        if state is not self.state:
            logger.debug(f"Negotiation state {self.state.value} -> {state.value}")
            self.state = state

    def _set_connection_state(self, state: ConnectionState) -> None:
        if state is self.connection_state:
            return
        self.connection_state = state
        self.events.emit(Event.CONNECTION_STATE, state)

    def _expect_room_reply(self) -> asyncio.Future[str]:
        self._fail_room_reply(ChannelError("Superseded by a newer request"))
        self._room_reply = asyncio.get_running_loop().create_future()
        return self._room_reply

    def _resolve_room_reply(self, room_id: str) -> None:
        reply, self._room_reply = self._room_reply, None
        if reply is not None and not reply.done():
            reply.set_result(room_id)

    def _fail_room_reply(self, error: Exception) -> None:
        reply, self._room_reply = self._room_reply, None
        if reply is not None and not reply.done():
            reply.set_exception(error)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._finish_background)

    def _finish_background(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()}")

"""
In-memory stand-ins for the relay link and the direct channel.

- MemoryRelayConnection talks to a real RendezvousServer through JSON text
  frames, exactly as a WebSocket would, without any sockets.
- LoopbackEndpoint / FakeChannel emulate the aiortc surface the negotiator
  and the transfer engine use.  Delivery is synchronous, ordered and
  reliable; FakeChannel can also pretend its send buffer drains slowly.
"""

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from functools import partial

import anyio

from peerdrop.events import Event
from peerdrop.models import parse_client_message, parse_server_message
from peerdrop.negotiator import SessionNegotiator


# ---------------------------------------------------------------------------
# Relay link
# ---------------------------------------------------------------------------


class MemorySocket:
    """Server-side socket that hands text frames to a client-side queue."""

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.accepted = False
        self.broken = False

    async def accept(self):
        self.accepted = True

    async def send_text(self, data: str):
        if self.broken:
            raise ConnectionResetError("socket is gone")
        self.inbox.put_nowait(data)


class MemoryRelayConnection:
    def __init__(self, server):
        self.server = server
        self.session_id = str(uuid.uuid4())
        self.socket = MemorySocket()
        self.sent = []
        self.closed = False

    async def open(self):
        await self.server.connect(self.socket, self.session_id)
        return self

    async def __aenter__(self):
        return await self.open()

    async def __aexit__(self, *exc_info):
        await self.close()

    async def send(self, message):
        self.sent.append(message)
        await self.server.handle_message(
            self.session_id, parse_client_message(message.model_dump_json())
        )

    async def __aiter__(self):
        while True:
            raw = await self.socket.inbox.get()
            if raw is None:
                return
            yield parse_server_message(raw)

    def pending(self):
        """Parse and remove every frame delivered so far."""
        messages = []
        while not self.socket.inbox.empty():
            raw = self.socket.inbox.get_nowait()
            if raw is not None:
                messages.append(parse_server_message(raw))
        return messages

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self.server.disconnect(self.session_id)
        self.socket.inbox.put_nowait(None)


# ---------------------------------------------------------------------------
# Direct channel
# ---------------------------------------------------------------------------


class FakeChannel:
    def __init__(self, label="fileTransfer", accumulate=False):
        self.label = label
        self.readyState = "connecting"
        self.bufferedAmount = 0
        self.peer = None
        self.sent = []
        # bufferedAmount observed at the moment of each send
        self.buffered_at_send = []
        self.accumulate = accumulate
        self._handlers = defaultdict(list)

    def on(self, event, handler):
        self._handlers[event].append(handler)
        return handler

    def emit(self, event, *args):
        for handler in list(self._handlers[event]):
            handler(*args)

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def send(self, data):
        if self.readyState != "open":
            raise RuntimeError(f"channel is {self.readyState}")
        self.buffered_at_send.append(self.bufferedAmount)
        self.sent.append(data)
        if self.accumulate:
            self.bufferedAmount += len(data)
        if self.peer is not None:
            self.peer.emit("message", data)

    def drain(self, amount):
        self.bufferedAmount = max(0, self.bufferedAmount - amount)

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.peer is not None:
            self.peer.close()

    @property
    def binary_frames(self):
        return [frame for frame in self.sent if isinstance(frame, bytes)]

    @property
    def text_frames(self):
        return [frame for frame in self.sent if isinstance(frame, str)]


def link(a, b):
    a.peer = b
    b.peer = a


class Switchboard:
    """Lets loopback endpoints find each other through their 'SDP'."""

    def __init__(self):
        self.endpoints = {}

    def factory(self, ice_servers):
        return LoopbackEndpoint(self, ice_servers)


class LoopbackEndpoint:
    def __init__(self, board, ice_servers):
        self.board = board
        self.ice_servers = ice_servers
        self.id = f"endpoint-{len(board.endpoints)}"
        board.endpoints[self.id] = self
        self.signaling_state = "stable"
        self.local = None
        self.remote = None
        self.channel = None
        self.candidates = []
        self.closed = False
        self.fail_on = set()
        self._on_data_channel = None
        self._on_ice_candidate = None
        self._on_connection_state = None

    @property
    def has_remote_description(self):
        return self.remote is not None

    def create_data_channel(self, label):
        self.channel = FakeChannel(label)
        return self.channel

    def on_data_channel(self, handler):
        self._on_data_channel = handler

    def on_ice_candidate(self, handler):
        self._on_ice_candidate = handler

    def on_connection_state(self, handler):
        self._on_connection_state = handler

    async def create_offer(self):
        if "offer" in self.fail_on:
            raise RuntimeError("offer generation failed")
        return {"type": "offer", "sdp": self.id}

    async def create_answer(self):
        if self.remote is None or self.remote["type"] != "offer":
            raise RuntimeError("no remote offer")
        return {"type": "answer", "sdp": self.id}

    async def set_local_description(self, description):
        self.local = description
        self.signaling_state = "have-local-offer" if description["type"] == "offer" else "stable"
        if self._on_ice_candidate is not None:
            self._on_ice_candidate(
                {"candidate": f"candidate:{self.id}", "sdpMid": "0", "sdpMLineIndex": 0}
            )
        return description

    async def set_remote_description(self, description):
        peer = self.board.endpoints[description["sdp"]]
        self.remote = description
        if description["type"] == "offer":
            self.signaling_state = "have-remote-offer"
        else:
            self.signaling_state = "stable"
            self._connect(peer)

    async def add_ice_candidate(self, candidate):
        self.candidates.append(candidate)

    def report_state(self, state):
        if self._on_connection_state is not None:
            self._on_connection_state(state)

    def _connect(self, answerer):
        local = self.channel
        remote = FakeChannel(local.label)
        link(local, remote)
        answerer.channel = remote
        if answerer._on_data_channel is not None:
            answerer._on_data_channel(remote)
        remote.open()
        local.open()

    async def close(self):
        self.closed = True
        if self.channel is not None:
            self.channel.close()
        self.report_state("closed")


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------


class Recorder:
    """Collects every event a peer emits, in order."""

    def __init__(self, events):
        self.calls = defaultdict(list)
        self.order = []
        for event in Event:
            events.on(event, partial(self._record, event))

    def _record(self, event, *args):
        value = args[0] if len(args) == 1 else args
        self.calls[event].append(value)
        self.order.append((event, value))

    def __getitem__(self, event):
        return self.calls[event]


async def wait_until(predicate, timeout=5.0):
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.005)


@asynccontextmanager
async def open_peer(server, board, settings, endpoint_factory=None):
    relay = await MemoryRelayConnection(server).open()
    factory = endpoint_factory if endpoint_factory is not None else board.factory
    peer = SessionNegotiator(relay, settings, endpoint_factory=factory)
    try:
        async with peer:
            yield peer
    finally:
        await relay.close()

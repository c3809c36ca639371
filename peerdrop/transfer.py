"""
Chunked file transfer over an established direct channel.

Wire protocol on the channel (ordered and reliable, nothing else assumed):

    text frame    {"name", "type", "size", "chunks"}   starts a transfer
    binary frame  <= chunk_size opaque bytes            appended in arrival order

There are no sequence numbers and no checksums: the receiver trusts the
channel's ordering and counts bytes until the declared size is reached.
Any text frame starts over, discarding whatever a previous transfer left
behind.

Sender flow control: before each chunk the sender waits, polling at
``drain_poll_interval``, while the channel's ``bufferedAmount`` is above
``high_water_mark``.
"""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
import os
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO

from pydantic import ValidationError

from .config import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_DRAIN_POLL_INTERVAL,
    DEFAULT_HIGH_WATER_MARK,
)
from .events import Event, EventEmitter
from .exceptions import (
    AlreadyPending,
    ChannelError,
    NoArtifact,
    ReadError,
    TransferBusy,
)
from .models import ReceivedArtifact, TransferMetadata
from .rtc import DataChannel

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


def percent(done: int, total: int) -> int:
    """Completion as an integer percentage, rounded half up and capped at 100."""
    if total <= 0:
        return 100
    return min(100, (done * 200 + total) // (total * 2))


def chunk_count(size: int, chunk_size: int) -> int:
    return (size + chunk_size - 1) // chunk_size


class Phase(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETE = "complete"


@dataclass
class TransferState:
    phase: Phase = Phase.IDLE
    bytes_processed: int = 0
    declared_total: int = 0


@dataclass(frozen=True)
class OutgoingFile:
    """A file to send: its advertised metadata plus a way to read it."""

    name: str
    size: int
    opener: Callable[[], BinaryIO]
    mime_type: str = DEFAULT_MIME_TYPE

    @classmethod
    def from_path(cls, path: str | os.PathLike, mime_type: str | None = None) -> OutgoingFile:
        path = os.fspath(path)
        try:
            size = os.path.getsize(path)
        except OSError as e:
            raise ReadError(f"Cannot read {path}: {e}")
        if mime_type is None:
            mime_type = mimetypes.guess_type(path)[0] or DEFAULT_MIME_TYPE
        return cls(
            name=os.path.basename(path),
            size=size,
            opener=lambda: open(path, "rb"),
            mime_type=mime_type,
        )

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> OutgoingFile:
        return cls(name=name, size=len(data), opener=lambda: io.BytesIO(data), mime_type=mime_type)


class TransferEngine:
    """Per-peer send/receive engine bound to at most one channel at a time.

    Events emitted on *events*: ``progress(percent)``, ``sent()`` and
    ``received(metadata)``.
    """

    def __init__(
        self,
        events: EventEmitter | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        drain_poll_interval: float = DEFAULT_DRAIN_POLL_INTERVAL,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.events = events if events is not None else EventEmitter()
        self.chunk_size = chunk_size
        self.high_water_mark = high_water_mark
        self.drain_poll_interval = drain_poll_interval

        self._channel: DataChannel | None = None
        # Bumped on every reset so an in-flight send notices the teardown
        self._generation = 0

        self.sender = TransferState()
        self._pending: tuple[OutgoingFile, asyncio.Future[None]] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

        self.receiver = TransferState()
        self._incoming: TransferMetadata | None = None
        self._chunks: list[bytes] = []
        self._artifact: ReceivedArtifact | None = None

    # ------------------------------------------------------------------
    # Channel binding
    # ------------------------------------------------------------------

    @property
    def channel(self) -> DataChannel | None:
        return self._channel

    @property
    def channel_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def attach(self, channel: DataChannel) -> None:
        self._channel = channel

    def channel_opened(self) -> None:
        """Start the queued send, if any, now that the channel is usable."""
        if self._pending is None or not self.channel_open:
            return
        file, future = self._pending
        self._pending = None
        logger.info(f"Channel open, starting queued send of {file.name}")
        self._begin_send(file)
        task = asyncio.ensure_future(self._run_pending(file, future))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def reset(self) -> None:
        """Drop the channel and every bit of per-transfer state.

        A completed artifact stays retrievable; a queued send fails.
        """
        self._generation += 1
        self._channel = None
        self.sender = TransferState()
        self.receiver = TransferState()
        self._incoming = None
        self._chunks = []
        if self._pending is not None:
            _, future = self._pending
            self._pending = None
            if not future.done():
                future.set_exception(ChannelError("Connection closed before the send started"))
        self.events.emit(Event.PROGRESS, 0)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, file: OutgoingFile | str | os.PathLike) -> None:
        """Send *file*, waiting for the channel to open if necessary.

        Raises TransferBusy while another send runs and AlreadyPending when a
        send is already queued for a channel that is not open yet.
        """
        if not isinstance(file, OutgoingFile):
            file = OutgoingFile.from_path(file)
        if self.sender.phase is Phase.ACTIVE:
            raise TransferBusy("A send is already in progress")

        if not self.channel_open:
            if self._pending is not None:
                raise AlreadyPending("A send is already waiting for the channel")
            future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._pending = (file, future)
            logger.info(f"Channel not ready, queuing {file.name}")
            await future
            return

        self._begin_send(file)
        await self._transmit(file)

    def _begin_send(self, file: OutgoingFile) -> None:
        self.sender = TransferState(Phase.ACTIVE, 0, file.size)

    async def _run_pending(self, file: OutgoingFile, future: asyncio.Future[None]) -> None:
        try:
            await self._transmit(file)
        except Exception as e:
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(None)

    async def _transmit(self, file: OutgoingFile) -> None:
        channel = self._channel
        generation = self._generation
        metadata = TransferMetadata(
            name=file.name,
            mime_type=file.mime_type,
            total_size=file.size,
            chunk_count=chunk_count(file.size, self.chunk_size),
        )
        try:
            self._check_live(channel, generation)
            self.events.emit(Event.PROGRESS, 0)
            channel.send(metadata.to_frame())
            logger.info(
                f"Sending {file.name} ({file.size} bytes, {metadata.chunk_count} chunks)"
            )

            try:
                stream = file.opener()
            except OSError as e:
                raise ReadError(f"Cannot open {file.name}: {e}")
            with stream:
                sent = 0
                while sent < file.size:
                    await self._wait_for_drain(channel, generation)
                    chunk = await self._read_chunk(stream, min(self.chunk_size, file.size - sent))
                    if not chunk:
                        raise ReadError(f"{file.name} ended after {sent} of {file.size} bytes")
                    self._check_live(channel, generation)
                    channel.send(chunk)
                    sent += len(chunk)
                    self.sender.bytes_processed = sent
                    self.events.emit(Event.PROGRESS, percent(sent, file.size))

            if file.size == 0:
                self.events.emit(Event.PROGRESS, 100)
            self.sender.phase = Phase.COMPLETE
        except (ReadError, ChannelError) as e:
            logger.error(f"Send of {file.name} aborted: {e}")
            raise
        finally:
            if generation == self._generation and self.sender.phase is not Phase.COMPLETE:
                self.sender = TransferState()
                self.events.emit(Event.PROGRESS, 0)

        logger.info(f"Sent {file.name}")
        self.events.emit(Event.SENT)
        self.events.emit(Event.PROGRESS, 0)
        self.sender = TransferState()

    async def _read_chunk(self, stream: BinaryIO, size: int) -> bytes:
        try:
            return await asyncio.to_thread(stream.read, size)
        except OSError as e:
            raise ReadError(f"Read failed: {e}")

    async def _wait_for_drain(self, channel: DataChannel, generation: int) -> None:
        while True:
            self._check_live(channel, generation)
            if channel.bufferedAmount <= self.high_water_mark:
                return
            logger.debug(
                f"Channel buffer {channel.bufferedAmount} above {self.high_water_mark}, waiting"
            )
            await asyncio.sleep(self.drain_poll_interval)

    def _check_live(self, channel: DataChannel | None, generation: int) -> None:
        if generation != self._generation or channel is None:
            raise ChannelError("Connection torn down during send")
        if channel.readyState != "open":
            raise ChannelError(f"Channel is {channel.readyState}")

    async def flush(self) -> None:
        """Wait until the channel has handed every buffered byte to the transport."""
        channel = self._channel
        while channel is not None and channel.readyState == "open" and channel.bufferedAmount > 0:
            await asyncio.sleep(self.drain_poll_interval)

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def handle_message(self, data: str | bytes) -> None:
        """Feed one inbound channel frame."""
        if isinstance(data, str):
            self._start_incoming(data)
            return

        if self._incoming is None or self.receiver.phase is not Phase.ACTIVE:
            logger.debug(f"Dropping {len(data)} bytes received outside a transfer")
            return

        self._chunks.append(bytes(data))
        self.receiver.bytes_processed += len(data)
        total = self.receiver.declared_total
        self.events.emit(Event.PROGRESS, percent(self.receiver.bytes_processed, total))
        if self.receiver.bytes_processed >= total:
            self._complete_incoming()

    def _start_incoming(self, frame: str) -> None:
        # Whatever came before is abandoned, complete or not
        self._chunks = []
        self._incoming = None
        self._artifact = None
        self.receiver = TransferState()
        try:
            metadata = TransferMetadata.from_frame(frame)
        except ValidationError as e:
            logger.warning(f"Discarding malformed metadata frame: {e.error_count()} error(s)")
            self.events.emit(Event.PROGRESS, 0)
            return

        logger.info(f"Receiving {metadata.name} ({metadata.total_size} bytes)")
        self._incoming = metadata
        self.receiver = TransferState(Phase.ACTIVE, 0, metadata.total_size)
        self.events.emit(Event.PROGRESS, 0)
        if metadata.total_size == 0:
            self._complete_incoming()

    def _complete_incoming(self) -> None:
        metadata = self._incoming
        data = b"".join(self._chunks)
        if len(data) > metadata.total_size:
            logger.warning(
                f"{metadata.name}: received {len(data)} bytes, {metadata.total_size} declared"
            )
        self._artifact = ReceivedArtifact(data=data, mime_type=metadata.mime_type, name=metadata.name)
        self._chunks = []
        self.receiver.phase = Phase.COMPLETE
        logger.info(f"Received {metadata.name}")
        self.events.emit(Event.RECEIVED, metadata)
        self.events.emit(Event.PROGRESS, 0)

    def retrieve(self, consume: bool = False) -> ReceivedArtifact:
        """Return the last completed artifact; *consume* clears it afterwards."""
        if self._artifact is None:
            raise NoArtifact("Nothing has been received yet")
        artifact = self._artifact
        if consume:
            self._artifact = None
        return artifact

    def clear_received(self) -> None:
        self._artifact = None

"""
peerdrop - two-party rendezvous relay and direct-channel file transfer.

A small relay pairs two peers in a room and forwards their WebRTC
negotiation messages; the file itself then travels over the direct data
channel, chunked and flow controlled.
"""

__version__ = "1.0.0"

from .config import Settings
from .events import ConnectionState, Event, EventEmitter
from .exceptions import (
    AlreadyPending,
    ChannelError,
    NegotiationError,
    NoArtifact,
    PeerDropError,
    ReadError,
    RoomError,
    RoomFull,
    RoomNotFound,
    TransferBusy,
    TransferError,
)
from .models import ReceivedArtifact, Room, TransferMetadata
from .negotiator import NegotiationState, SessionNegotiator
from .rooms import RoomRegistry
from .signaling import RelayClient
from .transfer import OutgoingFile, TransferEngine
from .websocket_manager import RendezvousServer

__all__ = [
    "Settings",
    "ConnectionState",
    "Event",
    "EventEmitter",
    "PeerDropError",
    "RoomError",
    "RoomNotFound",
    "RoomFull",
    "NegotiationError",
    "ChannelError",
    "TransferError",
    "TransferBusy",
    "AlreadyPending",
    "ReadError",
    "NoArtifact",
    "Room",
    "TransferMetadata",
    "ReceivedArtifact",
    "RoomRegistry",
    "RendezvousServer",
    "RelayClient",
    "SessionNegotiator",
    "NegotiationState",
    "TransferEngine",
    "OutgoingFile",
]

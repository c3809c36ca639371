from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field
from typing import Annotated, Any, Dict, Literal, Optional, Union


class Room(BaseModel):
    creator_id: str
    joiner_id: Optional[str] = None

    @computed_field
    @property
    def id(self) -> str:
        # Rooms share the creator's session id space
        return self.creator_id

    @property
    def is_full(self) -> bool:
        return self.joiner_id is not None

    def has_member(self, session_id: str) -> bool:
        return session_id == self.creator_id or session_id == self.joiner_id

    def other_member(self, session_id: str) -> Optional[str]:
        if session_id == self.creator_id:
            return self.joiner_id
        if session_id == self.joiner_id:
            return self.creator_id
        return None


# ---------------------------------------------------------------------------
# Relay messages
# ---------------------------------------------------------------------------


class CreateRoom(BaseModel):
    type: Literal["create-room"] = "create-room"


class JoinRoom(BaseModel):
    type: Literal["join-room"] = "join-room"
    room_id: str


class RoomCreated(BaseModel):
    type: Literal["room-created"] = "room-created"
    room_id: str


class JoinedRoom(BaseModel):
    type: Literal["joined-room"] = "joined-room"
    room_id: str


class JoinError(BaseModel):
    type: Literal["join-error"] = "join-error"
    code: Literal["room-not-found", "room-full"]
    reason: str


class PeerJoined(BaseModel):
    type: Literal["peer-joined"] = "peer-joined"
    peer_id: str


class PeerDisconnected(BaseModel):
    type: Literal["peer-disconnected"] = "peer-disconnected"


class RelayError(BaseModel):
    type: Literal["error"] = "error"
    message: str


# Negotiation payloads are opaque to the relay and forwarded verbatim


class Offer(BaseModel):
    type: Literal["offer"] = "offer"
    payload: Dict[str, Any]


class Answer(BaseModel):
    type: Literal["answer"] = "answer"
    payload: Dict[str, Any]


class IceCandidate(BaseModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    payload: Optional[Dict[str, Any]] = None


SignalingMessage = Union[Offer, Answer, IceCandidate]

ClientMessage = Annotated[
    Union[CreateRoom, JoinRoom, Offer, Answer, IceCandidate],
    Field(discriminator="type"),
]

ServerMessage = Annotated[
    Union[
        RoomCreated,
        JoinedRoom,
        JoinError,
        PeerJoined,
        PeerDisconnected,
        RelayError,
        Offer,
        Answer,
        IceCandidate,
    ],
    Field(discriminator="type"),
]

_client_messages = TypeAdapter(ClientMessage)
_server_messages = TypeAdapter(ServerMessage)


def parse_client_message(raw: Union[str, bytes]) -> ClientMessage:
    """Parse a peer→relay frame; raises pydantic.ValidationError"""
    return _client_messages.validate_json(raw)


def parse_server_message(raw: Union[str, bytes]) -> ServerMessage:
    """Parse a relay→peer frame; raises pydantic.ValidationError"""
    return _server_messages.validate_json(raw)


# ---------------------------------------------------------------------------
# Direct channel frames
# ---------------------------------------------------------------------------


class TransferMetadata(BaseModel):
    """Control frame sent ahead of a file's binary chunks."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    mime_type: str = Field("application/octet-stream", alias="type")
    total_size: int = Field(alias="size", ge=0)
    # Advisory only; receivers count bytes, not chunks
    chunk_count: int = Field(0, alias="chunks", ge=0)

    def to_frame(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_frame(cls, raw: str) -> "TransferMetadata":
        return cls.model_validate_json(raw)


class ReceivedArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes
    mime_type: str
    name: str

    @property
    def size(self) -> int:
        return len(self.data)

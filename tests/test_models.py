"""
Tests for models.py: relay message parsing and channel metadata frames.
"""

import json

import pytest
from pydantic import ValidationError

from peerdrop.models import (
    CreateRoom,
    IceCandidate,
    JoinError,
    JoinRoom,
    Offer,
    PeerDisconnected,
    Room,
    RoomCreated,
    TransferMetadata,
    parse_client_message,
    parse_server_message,
)


class TestRoom:
    def test_members(self):
        room = Room(creator_id="alice")
        assert not room.is_full
        room.joiner_id = "bob"
        assert room.is_full
        assert room.has_member("bob")
        assert not room.has_member("carol")
        assert room.other_member("alice") == "bob"
        assert room.other_member("bob") == "alice"
        assert room.other_member("carol") is None

    def test_dump_includes_id(self):
        assert Room(creator_id="alice").model_dump() == {
            "creator_id": "alice",
            "joiner_id": None,
            "id": "alice",
        }


class TestRelayMessages:
    def test_client_messages(self):
        assert parse_client_message('{"type": "create-room"}') == CreateRoom()
        assert parse_client_message('{"type": "join-room", "room_id": "r1"}') == JoinRoom(
            room_id="r1"
        )
        offer = parse_client_message('{"type": "offer", "payload": {"type": "offer", "sdp": "v=0"}}')
        assert isinstance(offer, Offer)
        assert offer.payload["sdp"] == "v=0"

    def test_end_of_candidates(self):
        assert parse_client_message('{"type": "ice-candidate", "payload": null}') == IceCandidate()

    def test_server_messages(self):
        assert parse_server_message('{"type": "room-created", "room_id": "r1"}') == RoomCreated(
            room_id="r1"
        )
        assert parse_server_message('{"type": "peer-disconnected"}') == PeerDisconnected()
        error = parse_server_message(
            '{"type": "join-error", "code": "room-full", "reason": "Room is already full"}'
        )
        assert isinstance(error, JoinError)
        assert error.code == "room-full"

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            '{"type": "room-created", "room_id": "r1"}',  # server-only type
            '{"type": "join-room"}',
            '{"type": "teleport"}',
            '{"payload": {}}',
        ],
    )
    def test_rejected_client_frames(self, raw):
        with pytest.raises(ValidationError):
            parse_client_message(raw)

    def test_unknown_join_error_code(self):
        with pytest.raises(ValidationError):
            parse_server_message('{"type": "join-error", "code": "banned", "reason": "x"}')

    def test_wire_names(self):
        assert json.loads(JoinRoom(room_id="r1").model_dump_json()) == {
            "type": "join-room",
            "room_id": "r1",
        }


class TestTransferMetadata:
    def test_frame_uses_short_keys(self):
        metadata = TransferMetadata(
            name="a.txt", mime_type="text/plain", total_size=10, chunk_count=1
        )
        assert json.loads(metadata.to_frame()) == {
            "name": "a.txt",
            "type": "text/plain",
            "size": 10,
            "chunks": 1,
        }

    def test_from_frame(self):
        metadata = TransferMetadata.from_frame('{"name": "a", "type": "x/y", "size": 3}')
        assert metadata.mime_type == "x/y"
        assert metadata.total_size == 3
        assert metadata.chunk_count == 0

    def test_missing_type_defaults(self):
        metadata = TransferMetadata.from_frame('{"name": "a", "size": 3}')
        assert metadata.mime_type == "application/octet-stream"

    @pytest.mark.parametrize(
        "raw",
        ['{"name": "a", "size": -1}', '{"size": 1}', '{"name": "a"}', "[]"],
    )
    def test_invalid_frames(self, raw):
        with pytest.raises(ValidationError):
            TransferMetadata.from_frame(raw)

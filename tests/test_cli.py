"""
Tests for cli.py helpers and argument handling.
"""

import asyncio
import os
from functools import partial

import anyio
import pytest

from peerdrop import cli
from peerdrop.config import Settings
from peerdrop.events import ConnectionState
from peerdrop.exceptions import ChannelError, PeerDropError, RoomNotFound
from peerdrop.models import ReceivedArtifact
from peerdrop.negotiator import SessionNegotiator

from helpers import MemoryRelayConnection, open_peer, wait_until


# ---------------------------------------------------------------------------
# format_size
# ---------------------------------------------------------------------------


class TestFormatSize:
    def test_units(self):
        assert cli.format_size(0) == "0.0 B"
        assert cli.format_size(1536) == "1.5 KB"
        assert cli.format_size(1024 * 1024) == "1.0 MB"
        assert cli.format_size(3 * 1024**4) == "3.0 TB"


# ---------------------------------------------------------------------------
# safe_filename
# ---------------------------------------------------------------------------


class TestSafeFilename:
    def test_plain_name_untouched(self):
        assert cli.safe_filename("report.pdf") == "report.pdf"

    @pytest.mark.parametrize(
        "name", ["../../etc/passwd", "/etc/passwd", "..\\..\\windows\\passwd"]
    )
    def test_directories_stripped(self, name):
        assert cli.safe_filename(name) == "passwd"

    def test_null_bytes_removed(self):
        assert cli.safe_filename("a\x00b.txt") == "ab.txt"

    @pytest.mark.parametrize("name", ["", ".", "..", "dir/", "CON", "nul.txt", "LPT1"])
    def test_fallback(self, name):
        assert cli.safe_filename(name) == "download"


# ---------------------------------------------------------------------------
# save_artifact / check_size
# ---------------------------------------------------------------------------


class TestSaveArtifact:
    def test_never_overwrites(self, tmp_path):
        artifact = ReceivedArtifact(data=b"one", mime_type="text/plain", name="notes.txt")
        first = cli.save_artifact(artifact, str(tmp_path))
        second = cli.save_artifact(artifact, str(tmp_path))
        third = cli.save_artifact(artifact, str(tmp_path))
        assert os.path.basename(first) == "notes.txt"
        assert os.path.basename(second) == "notes (1).txt"
        assert os.path.basename(third) == "notes (2).txt"
        with open(second, "rb") as f:
            assert f.read() == b"one"

    def test_creates_directory_and_sanitizes(self, tmp_path):
        artifact = ReceivedArtifact(data=b"x", mime_type="text/plain", name="../evil.sh")
        dest = cli.save_artifact(artifact, str(tmp_path / "inbox"))
        assert dest == str(tmp_path / "inbox" / "evil.sh")


class TestCheckSize:
    def test_no_limits(self):
        cli.check_size(10**12, Settings())

    def test_limit(self):
        with pytest.raises(PeerDropError):
            cli.check_size(2000, Settings(max_file_size=1000))
        cli.check_size(1000, Settings(max_file_size=1000))

    def test_warning(self, capsys):
        cli.check_size(2000, Settings(warn_file_size=1000))
        assert "Large file" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


class TestMain:
    def test_requires_a_command(self):
        with pytest.raises(SystemExit):
            cli.main([])

    def test_missing_file_exits_with_error(self, tmp_path, capsys):
        code = cli.main(["send", str(tmp_path / "absent.bin")])
        assert code == 1
        assert "absent.bin" in capsys.readouterr().out

    def test_relay_uses_overrides(self, monkeypatch):
        seen = {}
        monkeypatch.setattr(cli, "run_relay", lambda settings: seen.update(settings=settings))
        assert cli.main(["relay", "--host", "127.0.0.1", "--port", "9100"]) == 0
        assert seen["settings"].host == "127.0.0.1"
        assert seen["settings"].port == 9100

    def test_receive_exit_status_when_peer_leaves(self, monkeypatch, capsys):
        async def peer_left(room_id, out_dir, settings):
            raise ChannelError("Peer left before the file arrived")

        monkeypatch.setattr(cli, "receive_file", peer_left)
        assert cli.main(["receive", "room-1"]) == 1
        assert "Peer left" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# send / receive commands
# ---------------------------------------------------------------------------


@pytest.fixture
def memory_relay(monkeypatch, server, board):
    """Point the commands at an in-process relay and loopback endpoints."""
    monkeypatch.setattr(cli, "RelayClient", lambda url: MemoryRelayConnection(server))
    monkeypatch.setattr(
        cli, "SessionNegotiator", partial(SessionNegotiator, endpoint_factory=board.factory)
    )


@pytest.mark.anyio
class TestCommands:
    async def test_send_then_receive(self, memory_relay, server, settings, tmp_path):
        source = tmp_path / "outbox" / "report.csv"
        source.parent.mkdir()
        data = os.urandom(150000)
        source.write_bytes(data)

        sending = asyncio.ensure_future(cli.send_file(str(source), settings))
        await wait_until(lambda: len(server.registry) == 1)
        room_id = next(iter(server.registry.rooms))

        with anyio.fail_after(10):
            dest = await cli.receive_file(room_id, str(tmp_path / "inbox"), settings)
            await sending

        assert dest == str(tmp_path / "inbox" / "report.csv")
        with open(dest, "rb") as f:
            assert f.read() == data

    async def test_receive_fails_when_sender_leaves(
        self, memory_relay, server, board, settings, tmp_path
    ):
        async with open_peer(server, board, settings) as alice:
            room_id = await alice.initiate(as_creator=True)
            receiving = asyncio.ensure_future(cli.receive_file(room_id, str(tmp_path), settings))
            await wait_until(lambda: alice.connection_state is ConnectionState.CONNECTED)

            await alice.close()
            with anyio.fail_after(5), pytest.raises(ChannelError, match="Peer left"):
                await receiving
        assert os.listdir(tmp_path) == []

    async def test_receive_unknown_room(self, memory_relay, settings, tmp_path):
        with pytest.raises(RoomNotFound):
            await cli.receive_file("no-such-room", str(tmp_path), settings)

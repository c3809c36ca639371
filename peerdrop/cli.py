"""
peerdrop command line.

Usage:
    peerdrop relay [--host 0.0.0.0] [--port 8000]
    peerdrop send FILE [--relay ws://host:8000/ws]
    peerdrop receive ROOM_ID [--relay ws://host:8000/ws] [--out DIR]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import re
import sys

from .config import Settings
from .events import ConnectionState, Event
from .exceptions import ChannelError, PeerDropError, RoomError
from .models import ReceivedArtifact
from .negotiator import SessionNegotiator
from .signaling import RelayClient
from .transfer import OutgoingFile

logger = logging.getLogger(__name__)

# Windows reserved device names that must never be used as filenames.
_WINDOWS_RESERVED = re.compile(
    r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE
)


def format_size(size_bytes: int | float) -> str:
    """Human-readable file size."""
    for unit in ("B", "KB", "MB", "GB"):
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def safe_filename(filename: str) -> str:
    """Sanitize a file name announced by the remote peer.

    Strips directory components and null bytes; empty, dot and reserved
    device names fall back to "download".
    """
    name = os.path.basename(filename.replace("\\", "/"))
    name = name.replace("\x00", "")
    if name in ("", ".", ".."):
        return "download"
    if _WINDOWS_RESERVED.match(name):
        return "download"
    return name


def save_artifact(artifact: ReceivedArtifact, directory: str) -> str:
    """Write *artifact* into *directory* without overwriting existing files."""
    os.makedirs(directory, exist_ok=True)
    name = safe_filename(artifact.name)
    stem, ext = os.path.splitext(name)
    dest = os.path.join(directory, name)
    counter = 1
    while os.path.exists(dest):
        dest = os.path.join(directory, f"{stem} ({counter}){ext}")
        counter += 1
    with open(dest, "wb") as f:
        f.write(artifact.data)
    return dest


def check_size(size: int, settings: Settings) -> None:
    """Apply the configured size limit and warning threshold."""
    if settings.max_file_size is not None and size > settings.max_file_size:
        raise PeerDropError(
            f"File is {format_size(size)}, the limit is {format_size(settings.max_file_size)}"
        )
    if settings.warn_file_size is not None and size > settings.warn_file_size:
        print(f"  [!] Large file ({format_size(size)}); the transfer may take a while")


def _print_progress(percent: int) -> None:
    if percent:
        print(f"\r  {percent:3d}%", end="", flush=True)


def _print_state(state: ConnectionState) -> None:
    print(f"\n  Connection: {state.value}")


async def _first_of(*events: asyncio.Event) -> None:
    """Wait until any of *events* is set."""
    waiters = [asyncio.ensure_future(event.wait()) for event in events]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()


# ======================================================================
# Commands
# ======================================================================


async def send_file(path: str, settings: Settings) -> None:
    source = OutgoingFile.from_path(path)
    check_size(source.size, settings)

    async with RelayClient(settings.relay_url) as relay, SessionNegotiator(relay, settings) as peer:
        peer.events.on(Event.PROGRESS, _print_progress)
        peer.events.on(Event.CONNECTION_STATE, _print_state)

        room_id = await peer.initiate(as_creator=True)
        print(f"  Room ID: {room_id}")
        print(f"  Waiting for a peer to join to send {source.name} ({format_size(source.size)})")

        await peer.send(source)
        print(f"\n  Sent {source.name}")
        await peer.engine.flush()
        # Leaving now could cut off data still in flight; the receiver hangs up first
        await peer.disconnected.wait()


async def receive_file(room_id: str, out_dir: str, settings: Settings) -> str:
    async with RelayClient(settings.relay_url) as relay, SessionNegotiator(relay, settings) as peer:
        done = asyncio.Event()
        peer.events.on(Event.PROGRESS, _print_progress)
        peer.events.on(Event.CONNECTION_STATE, _print_state)
        peer.events.on(Event.RECEIVED, lambda metadata: done.set())

        await peer.join(room_id)
        print(f"  Joined room {room_id}, waiting for a file")
        await _first_of(done, peer.disconnected)
        if not done.is_set():
            raise ChannelError("Peer left before the file arrived")

        artifact = peer.retrieve(consume=True)
        dest = save_artifact(artifact, out_dir)
        print(f"\n  Received {artifact.name} ({format_size(artifact.size)}) -> {dest}")
        return dest


def run_relay(settings: Settings) -> None:
    import uvicorn

    from .main import create_app

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


# ======================================================================
# Entry point
# ======================================================================


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="peerdrop", description="Peer-to-peer file drop")
    sub = parser.add_subparsers(dest="cmd", required=True)

    relay = sub.add_parser("relay", help="Run the rendezvous relay")
    relay.add_argument("--host", default=None)
    relay.add_argument("--port", type=int, default=None)

    send = sub.add_parser("send", help="Create a room and send a file")
    send.add_argument("file")
    send.add_argument("--relay", default=None, help="Relay WebSocket URL")

    receive = sub.add_parser("receive", help="Join a room and receive a file")
    receive.add_argument("room_id")
    receive.add_argument("--relay", default=None, help="Relay WebSocket URL")
    receive.add_argument("--out", default=".", help="Directory to save into")

    args = parser.parse_args(argv)

    settings = Settings.from_env()
    overrides = {}
    if getattr(args, "relay", None):
        overrides["relay_url"] = args.relay
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = args.port
    if overrides:
        settings = settings.model_copy(update=overrides)

    logging.basicConfig(level=settings.log_level)

    if args.cmd == "relay":
        run_relay(settings)
        return 0

    try:
        if args.cmd == "send":
            asyncio.run(send_file(args.file, settings))
        else:
            asyncio.run(receive_file(args.room_id, args.out, settings))
    except RoomError as e:
        print(f"  [!] {e}")
        return 1
    except PeerDropError as e:
        print(f"\n  [!] {e}")
        return 1
    except KeyboardInterrupt:
        print("\n  Interrupted.")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())

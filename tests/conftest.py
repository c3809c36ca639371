import pytest

from peerdrop.config import Settings
from peerdrop.websocket_manager import RendezvousServer

from helpers import Switchboard


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(chunk_size=65536, drain_poll_interval=0.001)


@pytest.fixture
def server():
    return RendezvousServer()


@pytest.fixture
def board():
    return Switchboard()

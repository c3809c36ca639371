"""
aiortc-backed endpoint for the direct peer-to-peer channel.

``RTCEndpoint`` wraps an ``RTCPeerConnection`` and exchanges session
descriptions and ICE candidates as plain dicts, the same shape browsers put
on the wire (``{"type", "sdp"}`` and ``{"candidate", "sdpMid",
"sdpMLineIndex"}``).  The negotiator only ever talks to this surface, so a
different implementation can be substituted in tests.
"""

import logging
from collections.abc import Callable
from typing import Any, Protocol

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "fileTransfer"


class DataChannel(Protocol):
    """The subset of ``RTCDataChannel`` the transfer engine relies on."""

    label: str
    readyState: str
    bufferedAmount: int

    def send(self, data: str | bytes) -> None: ...

    def close(self) -> None: ...

    def on(self, event: str, handler: Callable[..., Any]) -> Any: ...


class Endpoint(Protocol):
    @property
    def signaling_state(self) -> str: ...

    @property
    def has_remote_description(self) -> bool: ...

    def create_data_channel(self, label: str) -> DataChannel: ...

    def on_data_channel(self, handler: Callable[[DataChannel], None]) -> None: ...

    def on_ice_candidate(self, handler: Callable[[dict[str, Any]], None]) -> None: ...

    def on_connection_state(self, handler: Callable[[str], None]) -> None: ...

    async def create_offer(self) -> dict[str, Any]: ...

    async def create_answer(self) -> dict[str, Any]: ...

    async def set_local_description(self, description: dict[str, Any]) -> dict[str, Any]: ...

    async def set_remote_description(self, description: dict[str, Any]) -> None: ...

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


def description_to_dict(description: RTCSessionDescription) -> dict[str, Any]:
    return {"type": description.type, "sdp": description.sdp}


class RTCEndpoint:
    def __init__(self, ice_servers: list[str]) -> None:
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._pc = RTCPeerConnection(configuration=config)

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    def create_data_channel(self, label: str = DATA_CHANNEL_LABEL) -> RTCDataChannel:
        # Ordered and reliable: the transfer protocol carries no sequence numbers
        return self._pc.createDataChannel(label, ordered=True)

    def on_data_channel(self, handler: Callable[[RTCDataChannel], None]) -> None:
        self._pc.on("datachannel", handler)

    def on_ice_candidate(self, handler: Callable[[dict[str, Any]], None]) -> None:
        # aiortc gathers before setLocalDescription returns and puts every
        # candidate in the SDP, so this stays silent; kept for trickling peers.
        def forward(candidate: RTCIceCandidate | None) -> None:
            if candidate is None:
                return
            handler(
                {
                    "candidate": f"candidate:{candidate_to_sdp(candidate)}",
                    "sdpMid": candidate.sdpMid,
                    "sdpMLineIndex": candidate.sdpMLineIndex,
                }
            )

        self._pc.on("icecandidate", forward)

    def on_connection_state(self, handler: Callable[[str], None]) -> None:
        def forward() -> None:
            logger.debug(f"Peer connection state: {self._pc.connectionState}")
            handler(self._pc.connectionState)

        self._pc.on("connectionstatechange", forward)

    async def create_offer(self) -> dict[str, Any]:
        return description_to_dict(await self._pc.createOffer())

    async def create_answer(self) -> dict[str, Any]:
        return description_to_dict(await self._pc.createAnswer())

    async def set_local_description(self, description: dict[str, Any]) -> dict[str, Any]:
        """Apply a local description and return it with gathered candidates."""
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )
        return description_to_dict(self._pc.localDescription)

    async def set_remote_description(self, description: dict[str, Any]) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        candidate_sdp = candidate.get("candidate") or ""
        if not candidate_sdp:
            # End-of-candidates marker
            return
        if candidate_sdp.startswith("candidate:"):
            candidate_sdp = candidate_sdp[len("candidate:"):]
        ice_candidate = candidate_from_sdp(candidate_sdp)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        await self._pc.close()

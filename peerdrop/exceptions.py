"""
peerdrop exceptions
"""


class PeerDropError(Exception):
    """Base exception for all peerdrop errors."""

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.error_code = error_code


# Room-level exceptions (reported only to the requester)


class RoomError(PeerDropError):
    """Base exception for room creation/join failures."""

    pass


class RoomNotFound(RoomError):
    """No room exists under the requested id."""

    def __init__(self, message: str = "Room not found"):
        super().__init__(message, error_code="room-not-found")


class RoomFull(RoomError):
    """The requested room already has a joiner."""

    def __init__(self, message: str = "Room is already full"):
        super().__init__(message, error_code="room-full")


# Connection-level exceptions


class NegotiationError(PeerDropError):
    """An offer/answer/ICE step failed."""

    pass


class ChannelError(PeerDropError):
    """The direct channel or the relay connection failed or went away."""

    pass


# Transfer-level exceptions


class TransferError(PeerDropError):
    """Base exception for send/receive operations."""

    pass


class TransferBusy(TransferError):
    """A send is already in progress."""

    pass


class AlreadyPending(TransferError):
    """A send is already queued waiting for the channel to open."""

    pass


class ReadError(TransferError):
    """Reading the local file failed mid-send."""

    pass


class NoArtifact(TransferError):
    """Nothing has been received yet."""

    pass

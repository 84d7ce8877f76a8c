"""Domain-specific exceptions for signaling and call negotiation."""

from __future__ import annotations


class SignalingError(Exception):
    default_detail: str = "Signaling error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class AddressParseError(SignalingError, ValueError):
    default_detail = "Peer address must look like host:port."


class TransportConnectError(SignalingError):
    default_detail = "Could not connect to the peer nor accept a connection from it."


class ProtocolDecodeError(SignalingError):
    """A malformed signaling frame.

    Returned by ``signaling.protocol.decode`` rather than raised.
    """

    default_detail = "Malformed signaling frame."

    def __init__(self, field: str, detail: str | None = None) -> None:
        super().__init__(f"{field}: {detail or self.default_detail}")
        self.field = field


class NegotiationError(SignalingError):
    default_detail = "Media engine failed to produce or apply a session description."


class UnexpectedMessageError(SignalingError):
    default_detail = "Signaling message not valid in the current call state."


class PeerDisconnected(SignalingError):
    default_detail = "Peer closed the signaling connection."

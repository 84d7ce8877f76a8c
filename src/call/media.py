"""Contract between the call session and the media engine that does the real work.

The engine captures, encodes and renders media and implements SDP/ICE. The
session only hands it descriptions and candidates and listens to the events it
reports through the sink registered with ``bind``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union


class CallMode(str, Enum):
    AUDIO_ONLY = "audio_only"
    AUDIO_VIDEO = "audio_video"

    @property
    def has_video(self) -> bool:
        return self is CallMode.AUDIO_VIDEO


class ConnectivityState(str, Enum):
    NEW = "new"
    CHECKING = "checking"
    CONNECTED = "connected"
    COMPLETED = "completed"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class SessionDescription:
    type: str  # "offer" or "answer"
    sdp: str


@dataclass(frozen=True, slots=True)
class IceCandidate:
    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None


@dataclass(frozen=True, slots=True)
class StreamInfo:
    stream_id: str
    kinds: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class LocalCandidateProduced:
    candidate: IceCandidate


@dataclass(frozen=True, slots=True)
class RemoteStreamAdded:
    stream: StreamInfo


@dataclass(frozen=True, slots=True)
class ConnectivityStateChanged:
    state: ConnectivityState


MediaEvent = Union[LocalCandidateProduced, RemoteStreamAdded, ConnectivityStateChanged]
MediaEventSink = Callable[[MediaEvent], None]


class MediaEngine(ABC):
    """Abstract media engine. Failures are reported by raising."""

    @abstractmethod
    def bind(self, sink: MediaEventSink) -> None:
        """Register the single receiver of this engine's events."""

    @abstractmethod
    async def prepare_local_media(self, mode: CallMode) -> None:
        """Start local capture. Audio is always included; video only for AUDIO_VIDEO."""

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        ...

    @abstractmethod
    async def apply_local_description(self, description: SessionDescription) -> SessionDescription | None:
        """Set the local description.

        Engines that gather candidates before completing may return the final
        description, which is then sent instead of the one passed in.
        """

    @abstractmethod
    async def apply_remote_description(self, description: SessionDescription) -> None:
        ...

    @abstractmethod
    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        ...

    @abstractmethod
    async def mute(self) -> None:
        ...

    @abstractmethod
    async def unmute(self) -> None:
        ...

    @abstractmethod
    async def dispose(self) -> None:
        """Release capture devices and the peer connection. Must be idempotent."""

"""Media engine backed by aiortc.

aiortc gathers ICE candidates while the local description is being set and
does not trickle them, so ``apply_local_description`` returns the gathered
description and no ``LocalCandidateProduced`` events are emitted. Remote
candidates trickled by the peer are still applied.
"""

from __future__ import annotations

import logging

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.sdp import candidate_from_sdp

from call.media import (
    CallMode,
    ConnectivityState,
    ConnectivityStateChanged,
    IceCandidate,
    MediaEngine,
    MediaEventSink,
    RemoteStreamAdded,
    SessionDescription,
    StreamInfo,
)
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


class AiortcMediaEngine(MediaEngine):
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        ice_servers = [RTCIceServer(urls=url) for url in self._settings.stun_servers]
        self._pc = RTCPeerConnection(RTCConfiguration(iceServers=ice_servers))
        self._sink: MediaEventSink | None = None
        self._players: list[MediaPlayer] = []
        self._audio_sender: RTCRtpSender | None = None
        self._audio_track: MediaStreamTrack | None = None
        self._silence: MediaStreamTrack | None = None
        self._remote_tracks: list[MediaStreamTrack] = []
        self._disposed = False

        @self._pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            LOGGER.info("Remote %s track %s", track.kind, track.id)
            self._remote_tracks.append(track)
            self._emit(RemoteStreamAdded(StreamInfo(stream_id=track.id, kinds=(track.kind,))))

        @self._pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange() -> None:
            raw = self._pc.iceConnectionState
            try:
                state = ConnectivityState(raw)
            except ValueError:
                LOGGER.debug("Unmapped ICE state %s", raw)
                return
            self._emit(ConnectivityStateChanged(state))

    def bind(self, sink: MediaEventSink) -> None:
        self._sink = sink

    async def prepare_local_media(self, mode: CallMode) -> None:
        audio = self._open_player(self._settings.audio_source)
        self._audio_track = audio.audio if audio and audio.audio else AudioStreamTrack()
        self._audio_sender = self._pc.addTrack(self._audio_track)

        if mode.has_video:
            video = self._open_player(self._settings.video_source)
            self._pc.addTrack(video.video if video and video.video else VideoStreamTrack())
        LOGGER.info("Local media ready (%s)", mode.value)

    def _open_player(self, source: str | None) -> MediaPlayer | None:
        if not source:
            return None
        player = MediaPlayer(source, format=self._settings.media_format)
        self._players.append(player)
        return player

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def apply_local_description(self, description: SessionDescription) -> SessionDescription:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        local = self._pc.localDescription
        return SessionDescription(type=local.type, sdp=local.sdp)

    async def apply_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        text = candidate.candidate
        if text.startswith("candidate:"):
            text = text[len("candidate:"):]
        ice = candidate_from_sdp(text)
        ice.sdpMid = candidate.sdp_mid
        ice.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice)

    async def mute(self) -> None:
        if self._audio_sender is None:
            return
        if self._silence is None:
            self._silence = AudioStreamTrack()
        self._audio_sender.replaceTrack(self._silence)

    async def unmute(self) -> None:
        if self._audio_sender is None or self._audio_track is None:
            return
        self._audio_sender.replaceTrack(self._audio_track)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for track in self._remote_tracks:
            track.stop()
        for player in self._players:
            for track in (player.audio, player.video):
                if track is not None:
                    track.stop()
        await self._pc.close()
        LOGGER.info("Media engine disposed")

    def _emit(self, event) -> None:
        if self._sink is not None:
            self._sink(event)

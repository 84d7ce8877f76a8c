from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

from call.media import (
    CallMode,
    ConnectivityState,
    ConnectivityStateChanged,
    IceCandidate,
    LocalCandidateProduced,
    MediaEngine,
    MediaEvent,
    RemoteStreamAdded,
    SessionDescription,
    StreamInfo,
)
from config.settings import Settings, get_settings
from signaling.address import PeerAddress
from signaling.errors import (
    AddressParseError,
    NegotiationError,
    PeerDisconnected,
    SignalingError,
    TransportConnectError,
    UnexpectedMessageError,
)
from signaling.protocol import CommandKind, DecodeError, SignalingCommand, decode, encode
from signaling.transport import (
    ConnectionClosed,
    ConnectionErrorEvent,
    ConnectionEstablished,
    ListeningStarted,
    MessageReceived,
    SignalingTransport,
    TransportEvent,
)

LOGGER = logging.getLogger(__name__)


class CallState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ROLE_UNDETERMINED = "role_undetermined"
    OFFERING = "offering"
    ANSWERING = "answering"
    ESTABLISHED = "established"
    ENDED = "ended"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallState.ENDED, CallState.FAILED)

    @property
    def is_negotiating(self) -> bool:
        return self in (CallState.OFFERING, CallState.ANSWERING)


class ConnectionRole(str, Enum):
    INITIATOR = "initiator"
    ANSWERER = "answerer"


@dataclass(frozen=True, slots=True)
class StartRequested:
    address: PeerAddress
    mode: CallMode


@dataclass(frozen=True, slots=True)
class EndRequested:
    pass


@dataclass(frozen=True, slots=True)
class MuteRequested:
    muted: bool


SessionEvent = Union[TransportEvent, MediaEvent, StartRequested, EndRequested, MuteRequested]
MediaEngineFactory = Callable[[], MediaEngine]


class CallSession:
    """One call with one peer, from dialing to hang-up.

    Every input (transport events, media engine events, UI requests) is
    funneled through ``dispatch`` into a single queue drained by one task, so
    state and role are only ever written by that task.

    Role rule: the side whose outbound connection succeeded offers right away.
    The side that accepted the connection only ever answers. Every connection
    has exactly one outbound end, so exactly one offer is made; if the dialer
    fails before offering it drops the link and this side ends on
    ``ConnectionClosed``. The first SDP message observed fixes the role for
    good; later offers are rejected, not applied.

    The session owns the transport and the media engine. Both are released once
    the session reaches ENDED or FAILED, whatever the path.
    """

    def __init__(
        self,
        media_engine_factory: MediaEngineFactory,
        *,
        settings: Settings | None = None,
        transport: SignalingTransport | None = None,
        on_remote_stream_added: Callable[[StreamInfo], None] | None = None,
        on_call_ended: Callable[[], None] | None = None,
        on_connection_error: Callable[[str], None] | None = None,
        on_listening: Callable[[str], None] | None = None,
        on_state_changed: Callable[[CallState], None] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport or SignalingTransport.from_settings(self._settings)
        try:
            self._media = media_engine_factory()
        except Exception:
            self._transport.disconnect()
            raise

        self.on_remote_stream_added = on_remote_stream_added
        self.on_call_ended = on_call_ended
        self.on_connection_error = on_connection_error
        self.on_listening = on_listening
        self.on_state_changed = on_state_changed

        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._processor: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._finished = asyncio.Event()
        self._released = False

        self._state = CallState.IDLE
        self._role: ConnectionRole | None = None
        self._provisional_role: ConnectionRole | None = None
        self._mode: CallMode | None = None
        self._muted = False
        self._termination: SignalingError | None = None
        self._last_rejection: UnexpectedMessageError | None = None

        self._remote_description_applied = False
        self._pending_candidates: list[IceCandidate] = []

        self._transport.set_listener(self.dispatch)
        self._media.bind(self.dispatch)

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def role(self) -> ConnectionRole | None:
        """Final role, fixed by the first SDP message sent or received."""
        return self._role

    @property
    def provisional_role(self) -> ConnectionRole | None:
        return self._provisional_role

    @property
    def mode(self) -> CallMode | None:
        return self._mode

    @property
    def is_muted(self) -> bool:
        return self._muted

    @property
    def termination(self) -> SignalingError | None:
        return self._termination

    @property
    def last_rejection(self) -> UnexpectedMessageError | None:
        """Most recent signaling message refused in the current state."""
        return self._last_rejection

    @property
    def failure_reason(self) -> str | None:
        if self._state is CallState.FAILED and self._termination is not None:
            return self._termination.detail
        return None

    # UI-facing operations

    async def start(self, address: PeerAddress | str, mode: CallMode = CallMode.AUDIO_VIDEO) -> None:
        """Begin the call. Returns once the request is queued, not when connected.

        Raises:
            AddressParseError: for a malformed address; the session is then
                FAILED and its resources released.
        """

        if self._state is not CallState.IDLE:
            raise RuntimeError(f"Call already started (state={self._state.value})")

        try:
            peer = address if isinstance(address, PeerAddress) else PeerAddress.parse(address)
        except AddressParseError as exc:
            self._termination = exc
            self._set_state(CallState.FAILED)
            await self._release()
            self._finished.set()
            raise

        self._mode = mode
        self._set_state(CallState.CONNECTING)
        self._ensure_processor()
        self.dispatch(StartRequested(peer, mode))

    def end(self) -> None:
        """Hang up. Idempotent.

        Like ``mute`` and ``unmute`` this may be called from any thread once the
        call has started; off the session's loop the request is handed over with
        ``dispatch_threadsafe``.
        """

        if self._finished.is_set():
            return
        self._request(EndRequested())

    def mute(self) -> None:
        self._request(MuteRequested(True))

    def unmute(self) -> None:
        self._request(MuteRequested(False))

    async def aclose(self) -> None:
        self.end()
        await self.wait_finished()

    async def wait_finished(self) -> CallState:
        await self._finished.wait()
        if self._processor is not None and self._processor is not asyncio.current_task():
            await self._processor
        return self._state

    # Event intake

    def dispatch(self, event: SessionEvent) -> None:
        """Queue an event. Events are handled one at a time, in arrival order."""

        if self._finished.is_set() or self._state.is_terminal:
            LOGGER.debug("Call is over, ignoring %s", type(event).__name__)
            return
        self._events.put_nowait(event)

    def dispatch_threadsafe(self, event: SessionEvent) -> None:
        """Queue an event from a thread other than the session's event loop."""

        if self._loop is None:
            raise RuntimeError("Call has not been started")
        self._loop.call_soon_threadsafe(self.dispatch, event)

    def _request(self, event: SessionEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None or (self._loop is not None and loop is not self._loop):
            self.dispatch_threadsafe(event)
            return
        self._ensure_processor()
        self.dispatch(event)

    def _ensure_processor(self) -> None:
        if self._processor is None:
            self._loop = asyncio.get_running_loop()
            self._processor = self._loop.create_task(self._process_events(), name="call-session")

    async def _process_events(self) -> None:
        while not self._finished.is_set():
            event = await self._events.get()
            try:
                await self._handle(event)
            except Exception as exc:
                LOGGER.exception("Call session failed handling %s", type(event).__name__)
                await self._finish(CallState.FAILED, SignalingError(f"Internal error: {exc}"))

    async def _handle(self, event: SessionEvent) -> None:
        if self._state.is_terminal:
            return

        if isinstance(event, MessageReceived):
            await self._on_message(event.text)
        elif isinstance(event, LocalCandidateProduced):
            self._send_candidate(event.candidate)
        elif isinstance(event, StartRequested):
            await self._on_start(event)
        elif isinstance(event, ConnectionEstablished):
            await self._on_connection_established(event)
        elif isinstance(event, ListeningStarted):
            self._notify(self.on_listening, event.reachable_at)
        elif isinstance(event, RemoteStreamAdded):
            LOGGER.info("Remote stream added: %s %s", event.stream.stream_id, ",".join(event.stream.kinds))
            self._notify(self.on_remote_stream_added, event.stream)
        elif isinstance(event, ConnectivityStateChanged):
            await self._on_connectivity(event.state)
        elif isinstance(event, MuteRequested):
            await self._on_mute(event.muted)
        elif isinstance(event, EndRequested):
            await self._finish(CallState.ENDED, None)
        elif isinstance(event, ConnectionClosed):
            await self._finish(CallState.ENDED, PeerDisconnected())
        elif isinstance(event, ConnectionErrorEvent):
            if self._state is CallState.CONNECTING:
                reason: SignalingError = TransportConnectError(event.reason)
            else:
                reason = SignalingError(event.reason)
            await self._finish(CallState.FAILED, reason)
        else:
            LOGGER.warning("Ignoring unsupported session event %r", event)

    # Transitions

    async def _on_start(self, event: StartRequested) -> None:
        LOGGER.info("Starting %s call with %s", event.mode.value, event.address)
        try:
            await self._media.prepare_local_media(event.mode)
        except Exception as exc:
            await self._fail_negotiation("Preparing local media failed", exc)
            return
        self._transport.connect(event.address)

    async def _on_connection_established(self, event: ConnectionEstablished) -> None:
        if self._state is not CallState.CONNECTING:
            LOGGER.warning("Connection established in state %s, ignoring", self._state.value)
            return

        self._provisional_role = ConnectionRole.INITIATOR if event.outbound else ConnectionRole.ANSWERER
        self._set_state(CallState.ROLE_UNDETERMINED)

        if event.outbound:
            await self._send_offer()
        else:
            LOGGER.info("Accepted peer connection, waiting for its offer")

    async def _send_offer(self) -> None:
        try:
            offer = await self._media.create_offer()
            offer = await self._media.apply_local_description(offer) or offer
        except Exception as exc:
            await self._fail_negotiation("Creating the local offer failed", exc)
            return

        self._assign_role(ConnectionRole.INITIATOR)
        self._set_state(CallState.OFFERING)
        self._send(SignalingCommand.offer(offer.sdp))

    async def _on_message(self, text: str) -> None:
        command = decode(text)
        if isinstance(command, DecodeError):
            LOGGER.warning("Dropping malformed signaling frame (%s): %.200s", command.detail, text)
            return

        kind = command.kind
        if kind is CommandKind.OFFER:
            await self._on_remote_offer(command)
        elif kind is CommandKind.ANSWER:
            await self._on_remote_answer(command)
        elif kind is CommandKind.CANDIDATE:
            await self._on_remote_candidate(command)
        else:
            LOGGER.warning("Ignoring signaling command of unknown type %r", command.type)

    async def _on_remote_offer(self, command: SignalingCommand) -> None:
        if self._role is not None or self._state is not CallState.ROLE_UNDETERMINED:
            self._reject(command)
            return

        self._assign_role(ConnectionRole.ANSWERER)
        self._set_state(CallState.ANSWERING)

        try:
            await self._media.apply_remote_description(SessionDescription(type="offer", sdp=command.sdp))
        except Exception as exc:
            await self._fail_negotiation("Applying the remote offer failed", exc)
            return
        await self._replay_candidates()

        try:
            answer = await self._media.create_answer()
            answer = await self._media.apply_local_description(answer) or answer
        except Exception as exc:
            await self._fail_negotiation("Creating the local answer failed", exc)
            return

        self._send(SignalingCommand.answer(answer.sdp))
        self._set_state(CallState.ESTABLISHED)

    async def _on_remote_answer(self, command: SignalingCommand) -> None:
        if self._state is not CallState.OFFERING:
            self._reject(command)
            return

        try:
            await self._media.apply_remote_description(SessionDescription(type="answer", sdp=command.sdp))
        except Exception as exc:
            await self._fail_negotiation("Applying the remote answer failed", exc)
            return
        await self._replay_candidates()
        self._set_state(CallState.ESTABLISHED)

    async def _on_remote_candidate(self, command: SignalingCommand) -> None:
        candidate = IceCandidate(
            candidate=command.candidate_data,
            sdp_mid=command.candidate_mid,
            sdp_mline_index=command.candidate_mline_index,
        )
        if not self._remote_description_applied:
            self._pending_candidates.append(candidate)
            LOGGER.debug("Buffered remote candidate (%d pending)", len(self._pending_candidates))
            return
        await self._apply_candidate(candidate)

    async def _replay_candidates(self) -> None:
        self._remote_description_applied = True
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: IceCandidate) -> None:
        try:
            await self._media.add_remote_candidate(candidate)
        except Exception as exc:
            # One unusable path is not fatal; the remaining candidates may still connect.
            LOGGER.warning("Media engine rejected remote candidate %r: %s", candidate.candidate, exc)

    async def _on_connectivity(self, state: ConnectivityState) -> None:
        LOGGER.info("Media connectivity: %s", state.value)
        if state in (ConnectivityState.DISCONNECTED, ConnectivityState.CLOSED):
            await self._finish(CallState.ENDED, PeerDisconnected(f"Media connection {state.value}"))
        elif state is ConnectivityState.FAILED:
            await self._finish(CallState.FAILED, NegotiationError("Media connectivity checks failed"))

    async def _on_mute(self, muted: bool) -> None:
        if muted == self._muted:
            return
        try:
            if muted:
                await self._media.mute()
            else:
                await self._media.unmute()
        except Exception:
            LOGGER.exception("Media engine failed to %s", "mute" if muted else "unmute")
            return
        self._muted = muted
        LOGGER.info("Microphone %s", "muted" if muted else "unmuted")

    async def _fail_negotiation(self, what: str, exc: Exception) -> None:
        await self._finish(CallState.FAILED, NegotiationError(f"{what}: {exc}"))

    async def _finish(self, state: CallState, reason: SignalingError | None) -> None:
        if self._state.is_terminal:
            return

        self._termination = reason
        self._set_state(state)
        if state is CallState.FAILED:
            LOGGER.error("Call failed: %s", reason.detail if reason else "unknown reason")
        else:
            LOGGER.info("Call ended (%s)", reason.detail if reason else "local hang-up")

        await self._release()

        if state is CallState.FAILED and reason is not None:
            self._notify(self.on_connection_error, reason.detail)
        self._notify(self.on_call_ended)
        self._finished.set()

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True

        self._transport.disconnect()
        try:
            await self._media.dispose()
        except Exception:
            LOGGER.exception("Media engine dispose failed")
        await self._transport.wait_closed()

    # Helpers

    def _assign_role(self, role: ConnectionRole) -> None:
        if self._role is not None:
            raise RuntimeError(f"Call role already fixed as {self._role.value}")
        self._role = role
        LOGGER.info("Call role: %s", role.value)

    def _reject(self, command: SignalingCommand) -> None:
        self._last_rejection = UnexpectedMessageError(
            f"Rejected {command.type!r} in state {self._state.value}"
            + (f" (role {self._role.value})" if self._role else "")
        )
        LOGGER.warning("%s", self._last_rejection.detail)

    def _send_candidate(self, candidate: IceCandidate) -> None:
        self._send(
            SignalingCommand.candidate(
                candidate.candidate,
                mid=candidate.sdp_mid,
                mline_index=candidate.sdp_mline_index,
            )
        )

    def _send(self, command: SignalingCommand) -> None:
        self._transport.send(encode(command))

    def _set_state(self, state: CallState) -> None:
        if state is self._state:
            return
        LOGGER.debug("Call state %s -> %s", self._state.value, state.value)
        self._state = state
        self._notify(self.on_state_changed, state)

    def _notify(self, callback: Callable[..., None] | None, *args: object) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOGGER.exception("Call event callback failed")

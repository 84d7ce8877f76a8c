from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Union

from config.settings import Settings
from signaling.address import PeerAddress, local_ip_address
from signaling.errors import TransportConnectError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectionEstablished:
    outbound: bool


@dataclass(frozen=True, slots=True)
class MessageReceived:
    text: str


@dataclass(frozen=True, slots=True)
class ConnectionClosed:
    pass


@dataclass(frozen=True, slots=True)
class ConnectionErrorEvent:
    reason: str


@dataclass(frozen=True, slots=True)
class ListeningStarted:
    host: str
    port: int
    reachable_at: str


TransportEvent = Union[
    ConnectionEstablished,
    MessageReceived,
    ConnectionClosed,
    ConnectionErrorEvent,
    ListeningStarted,
]
TransportListener = Callable[[TransportEvent], None]


class SignalingTransport:
    """Newline-delimited text channel to a single peer over TCP.

    Neither side is configured as server or client. ``connect`` dials the peer
    first and, if nobody answers within ``connect_timeout``, listens on the
    peer's port and takes the first inbound connection instead.

    Three tasks can be live per instance: the connect/listen attempt, the
    outgoing drain loop and the incoming read loop. The outgoing queue is the
    only state shared between them and the callers of ``send``.
    """

    def __init__(
        self,
        *,
        connect_timeout: float = 3.0,
        accept_timeout: float | None = None,
        listen_host: str = "0.0.0.0",
        queue_maxsize: int = 0,
        max_frame_bytes: int = 1024 * 1024,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._accept_timeout = accept_timeout
        self._listen_host = listen_host
        self._max_frame_bytes = max_frame_bytes
        self._outgoing: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_maxsize)

        self._listener: TransportListener | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._server: asyncio.Server | None = None

        self._connect_task: asyncio.Task | None = None
        self._drain_task: asyncio.Task | None = None
        self._read_task: asyncio.Task | None = None

        self._connected = False
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> SignalingTransport:
        return cls(
            connect_timeout=settings.connect_timeout,
            accept_timeout=settings.accept_timeout,
            listen_host=settings.listen_host,
            queue_maxsize=settings.outgoing_queue_maxsize,
            max_frame_bytes=settings.max_frame_bytes,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_closed(self) -> bool:
        return self._closed

    def set_listener(self, listener: TransportListener) -> None:
        self._listener = listener

    def connect(self, address: PeerAddress | str) -> asyncio.Task:
        """Start establishing the connection in the background.

        Raises:
            AddressParseError: if ``address`` is a malformed string.
            RuntimeError: if called twice or after ``disconnect``.
        """

        if isinstance(address, str):
            address = PeerAddress.parse(address)
        if self._connect_task is not None or self._closed:
            raise RuntimeError("connect() may only be called once per transport")

        loop = asyncio.get_running_loop()
        self._connect_task = loop.create_task(self._run(address), name=f"signaling-connect-{address}")
        return self._connect_task

    def send(self, text: str) -> None:
        """Queue one frame for delivery. Never waits on the network."""

        if "\n" in text or "\r" in text:
            raise ValueError("Signaling frames must not contain line terminators")
        if self._closed:
            LOGGER.debug("Dropping outgoing frame, transport is closed")
            return

        try:
            self._outgoing.put_nowait(text)
        except asyncio.QueueFull:
            self._fault(f"Outgoing queue full ({self._outgoing.maxsize} frames pending)")

    def disconnect(self) -> None:
        """Tear everything down. Safe to call repeatedly and from any task."""

        if self._closed:
            return
        self._closed = True
        self._connected = False

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None

        for task in (self._connect_task, self._drain_task, self._read_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        if self._writer is not None:
            self._writer.close()
        if self._server is not None:
            self._server.close()

        LOGGER.info("Signaling transport closed")
        self._emit(ConnectionClosed())

    async def wait_closed(self) -> None:
        """Wait until every task has finished and the sockets are closed."""

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._connect_task, self._drain_task, self._read_task)
            if task is not None and task is not current
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._writer is not None:
            try:
                await self._writer.wait_closed()
            except OSError as exc:
                LOGGER.debug("Signaling socket closed with error: %s", exc)
        if self._server is not None:
            await self._server.wait_closed()

    async def _run(self, address: PeerAddress) -> None:
        try:
            outbound = await self._establish(address)
        except TransportConnectError as exc:
            self._fault(exc.detail)
            return

        if self._closed:
            return

        self._connected = True
        peer = self._writer.get_extra_info("peername") if self._writer else None
        LOGGER.info("Signaling connection established with %s (%s)", peer, "outbound" if outbound else "inbound")
        self._emit(ConnectionEstablished(outbound=outbound))
        if self._closed:
            return

        loop = asyncio.get_running_loop()
        self._drain_task = loop.create_task(self._drain_loop(), name="signaling-drain")
        self._read_task = loop.create_task(self._read_loop(), name="signaling-read")

    async def _establish(self, address: PeerAddress) -> bool:
        """Return True when the connection was opened outbound, False when accepted."""

        try:
            await self._open_outbound(address)
            return True
        except (OSError, asyncio.TimeoutError) as exc:
            LOGGER.info(
                "Outbound connection to %s failed (%s); listening on port %s instead",
                address,
                _describe(exc),
                address.port,
            )

        try:
            await self._accept_inbound(address.port)
            return False
        except (OSError, asyncio.TimeoutError) as exc:
            listen_error = _describe(exc)

        # The peer may have bound the port between our first attempt and our own bind.
        LOGGER.info("Listening on port %s failed (%s); trying %s once more", address.port, listen_error, address)
        try:
            await self._open_outbound(address)
            return True
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportConnectError(
                f"Could not reach {address} ({_describe(exc)}) "
                f"nor accept a peer on port {address.port} ({listen_error})"
            ) from exc

    async def _open_outbound(self, address: PeerAddress) -> None:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(address.host, address.port, limit=self._max_frame_bytes),
            timeout=self._connect_timeout,
        )
        self._reader, self._writer = reader, writer
        if self._closed:
            writer.close()

    async def _accept_inbound(self, port: int) -> None:
        loop = asyncio.get_running_loop()
        accepted: asyncio.Future[None] = loop.create_future()

        def on_client(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            if accepted.done() or self._closed:
                LOGGER.warning("Refusing inbound connection from %s", writer.get_extra_info("peername"))
                writer.close()
                return
            self._reader, self._writer = reader, writer
            accepted.set_result(None)

        self._server = await asyncio.start_server(
            on_client,
            host=self._listen_host,
            port=port,
            limit=self._max_frame_bytes,
        )
        reachable_at = f"{local_ip_address()}:{port}"
        LOGGER.info("Listening for peer on %s:%s (reachable at %s)", self._listen_host, port, reachable_at)
        self._emit(ListeningStarted(host=self._listen_host, port=port, reachable_at=reachable_at))

        try:
            await asyncio.wait_for(accepted, timeout=self._accept_timeout)
        finally:
            # Only one peer per transport; stop accepting as soon as we have it (or gave up).
            self._server.close()

    async def _drain_loop(self) -> None:
        writer = self._writer
        try:
            while True:
                text = await self._outgoing.get()
                writer.write(text.encode("utf-8") + b"\n")
                await writer.drain()
        except OSError as exc:
            self._fault(f"Write error: {exc}")

    async def _read_loop(self) -> None:
        reader = self._reader
        try:
            while True:
                line = await reader.readline()
                if not line:
                    LOGGER.info("Peer closed the signaling connection")
                    break
                self._emit(MessageReceived(line.decode("utf-8", errors="replace").rstrip("\r\n")))
        except ValueError:
            # StreamReader.readline reports an over-limit line as ValueError.
            self._fault(f"Incoming frame exceeds {self._max_frame_bytes} bytes")
            return
        except OSError as exc:
            self._fault(f"Read error: {exc}")
            return

        self.disconnect()

    def _fault(self, reason: str) -> None:
        if self._closed:
            return
        LOGGER.warning("Signaling transport fault: %s", reason)
        self._emit(ConnectionErrorEvent(reason))
        self.disconnect()

    def _emit(self, event: TransportEvent) -> None:
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception:
            LOGGER.exception("Signaling listener failed on %s", type(event).__name__)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__

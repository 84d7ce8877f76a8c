"""Command line entry point: place a peer-to-peer call to ``host:port``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from call.media import CallMode, StreamInfo
from call.session import CallSession, CallState
from config.settings import get_settings
from signaling.address import PeerAddress
from signaling.errors import AddressParseError

LOGGER = logging.getLogger(__name__)


def _peer_address(value: str) -> PeerAddress:
    try:
        return PeerAddress.parse(value)
    except AddressParseError as exc:
        raise argparse.ArgumentTypeError(exc.detail) from exc


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Peer-to-peer call over a self-negotiating TCP signaling link")
    parser.add_argument("--peer", required=True, type=_peer_address, help="Peer address, host:port")
    parser.add_argument("--audio-only", action="store_true", help="Do not send or request video")
    parser.add_argument("--connect-timeout", type=float, default=None, help="Seconds before falling back to listening")
    return parser.parse_args(argv)


async def _amain(args: argparse.Namespace) -> CallState:
    from media.aiortc_engine import AiortcMediaEngine

    settings = get_settings()
    if args.connect_timeout is not None:
        settings = settings.model_copy(update={"connect_timeout": args.connect_timeout})

    def on_listening(reachable_at: str) -> None:
        LOGGER.info("Waiting for the peer; ask them to call %s", reachable_at)

    def on_remote_stream(stream: StreamInfo) -> None:
        LOGGER.info("Receiving %s from peer", "/".join(stream.kinds) or "media")

    def on_error(reason: str) -> None:
        LOGGER.error("Call error: %s", reason)

    session = CallSession(
        lambda: AiortcMediaEngine(settings),
        settings=settings,
        on_listening=on_listening,
        on_remote_stream_added=on_remote_stream,
        on_connection_error=on_error,
        on_state_changed=lambda state: LOGGER.info("Call state: %s", state.value),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, session.end)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    mode = CallMode.AUDIO_ONLY if args.audio_only else CallMode.AUDIO_VIDEO
    await session.start(args.peer, mode)
    return await session.wait_finished()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    final_state = asyncio.run(_amain(args))
    return 0 if final_state is CallState.ENDED else 1


if __name__ == "__main__":
    raise SystemExit(main())

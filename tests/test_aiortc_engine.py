from __future__ import annotations

import asyncio

import pytest

pytest.importorskip("aiortc")

from call.media import CallMode, IceCandidate  # noqa: E402
from media.aiortc_engine import AiortcMediaEngine  # noqa: E402


def test_offer_answer_between_two_engines(settings) -> None:
    async def scenario():
        caller = AiortcMediaEngine(settings)
        callee = AiortcMediaEngine(settings)
        caller.bind(lambda event: None)
        callee.bind(lambda event: None)
        try:
            await caller.prepare_local_media(CallMode.AUDIO_ONLY)
            await callee.prepare_local_media(CallMode.AUDIO_ONLY)

            offer = await caller.apply_local_description(await caller.create_offer())
            await callee.apply_remote_description(offer)
            answer = await callee.apply_local_description(await callee.create_answer())
            await caller.apply_remote_description(answer)

            await caller.mute()
            await caller.unmute()
            return offer, answer
        finally:
            await caller.dispose()
            await callee.dispose()
            await caller.dispose()

    offer, answer = asyncio.run(scenario())
    assert offer.type == "offer"
    assert answer.type == "answer"
    assert "m=audio" in offer.sdp
    assert "m=video" not in offer.sdp


def test_video_call_offers_a_video_section(settings) -> None:
    async def scenario():
        engine = AiortcMediaEngine(settings)
        try:
            await engine.prepare_local_media(CallMode.AUDIO_VIDEO)
            return await engine.create_offer()
        finally:
            await engine.dispose()

    offer = asyncio.run(scenario())
    assert "m=audio" in offer.sdp
    assert "m=video" in offer.sdp


def test_remote_candidate_is_accepted_after_remote_description(settings) -> None:
    async def scenario():
        caller = AiortcMediaEngine(settings)
        callee = AiortcMediaEngine(settings)
        try:
            await caller.prepare_local_media(CallMode.AUDIO_ONLY)
            await callee.prepare_local_media(CallMode.AUDIO_ONLY)
            offer = await caller.apply_local_description(await caller.create_offer())
            await callee.apply_remote_description(offer)
            await callee.add_remote_candidate(
                IceCandidate("candidate:1 1 udp 2122260223 127.0.0.1 50000 typ host", "0", 0)
            )
        finally:
            await caller.dispose()
            await callee.dispose()

    asyncio.run(scenario())

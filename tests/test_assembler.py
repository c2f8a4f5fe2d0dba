"""Tests for the silence-debounced utterance assembler."""

from __future__ import annotations

import asyncio

import pytest
from knowhow.voice.assembler import UtteranceAssembler
from knowhow.voice.echo import EchoClassifier
from knowhow.voice.session import CommittedUtterance, PartialTranscript

pytestmark = pytest.mark.anyio


@pytest.fixture
def echo():
    return EchoClassifier()


@pytest.fixture
def committed():
    return []


@pytest.fixture
def assembler(echo, committed):
    return UtteranceAssembler(echo, on_commit=committed.append, silence_seconds=0.05)


class TestFeed:
    async def test_interim_replaced_final_appended(self, assembler):
        assembler.feed(PartialTranscript("足場"))
        assembler.feed(PartialTranscript("足場の点検", is_final=True))
        assembler.feed(PartialTranscript("は何時"))
        assembler.feed(PartialTranscript("は何時から"))

        assert assembler.pending_text == "足場の点検は何時から"
        assembler.reset()

    async def test_commit_after_silence(self, assembler, committed):
        assembler.feed(PartialTranscript("足場の点検は", is_final=True))
        assembler.feed(PartialTranscript("何時から"))

        await asyncio.sleep(0.1)

        assert committed == [CommittedUtterance(text="足場の点検は何時から")]
        assert assembler.pending_text == ""
        assert not assembler.timer_active

    async def test_each_event_restarts_timer(self, assembler, committed):
        assembler.feed(PartialTranscript("足場の"))
        await asyncio.sleep(0.03)
        assembler.feed(PartialTranscript("足場の点検"))
        await asyncio.sleep(0.03)

        assert committed == []
        await asyncio.sleep(0.05)
        assert committed == [CommittedUtterance(text="足場の点検")]

    async def test_blank_event_does_not_arm_timer(self, assembler):
        assembler.feed(PartialTranscript("   "))
        assert not assembler.timer_active

    async def test_speech_start_callback(self, echo, committed):
        heard: list[str] = []
        assembler = UtteranceAssembler(echo, on_commit=committed.append, on_speech_start=heard.append)

        assembler.feed(PartialTranscript("すみません"))

        assert heard == ["すみません"]
        assembler.reset()


class TestEchoRejection:
    async def test_echo_leaves_text_and_timer_untouched(self, assembler, echo, committed):
        echo.set_spoken("足場の点検は朝礼後に行ってください")

        accepted = assembler.feed(PartialTranscript("朝礼後に行って"))

        assert accepted is False
        assert assembler.pending_text == ""
        assert not assembler.timer_active
        await asyncio.sleep(0.08)
        assert committed == []

    async def test_echo_does_not_extend_running_timer(self, assembler, echo, committed):
        assembler.feed(PartialTranscript("ちょっと待って"))
        echo.set_spoken("足場の点検は朝礼後に行ってください")
        await asyncio.sleep(0.03)

        assembler.feed(PartialTranscript("ちょっと待って朝礼後に行ってください"))
        await asyncio.sleep(0.04)

        assert committed == [CommittedUtterance(text="ちょっと待って")]


class TestFlushAndReset:
    async def test_flush_forces_commit(self, assembler, committed):
        assembler.feed(PartialTranscript("今すぐ送って"))

        utterance = assembler.flush()

        assert utterance == CommittedUtterance(text="今すぐ送って", forced=True)
        assert not assembler.timer_active
        await asyncio.sleep(0.08)
        assert committed == []

    async def test_flush_empty(self, assembler):
        assert assembler.flush() is None

    async def test_reset_discards_pending(self, assembler, committed):
        assembler.feed(PartialTranscript("途中の発話"))

        assembler.reset()
        await asyncio.sleep(0.08)

        assert committed == []
        assert assembler.pending_text == ""

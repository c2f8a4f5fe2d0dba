#!/usr/bin/env python3
"""Knowhow hands-free voice conversation daemon."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal

from knowhow.voice.activity import ActivityMeter
from knowhow.voice.audio import EncodedPlayer, MicrophoneStream, PcmPlayer
from knowhow.voice.config import VoiceConfig
from knowhow.voice.mqtt import VoiceMqtt
from knowhow.voice.orchestrator import DialogueOrchestrator, DialogueState
from knowhow.voice.services import KnowhowClient
from knowhow.voice.session import Turn
from knowhow.voice.synthesis import FallbackSynthesizer, ServiceSynthesizer
from knowhow.voice.wyoming import WyomingSpeechCapture, WyomingSynthesizer

LOGGER = logging.getLogger("knowhow-voice")

COMMANDS = {"start", "stop", "send", "confirm", "draft", "dismiss", "new"}


class KnowhowVoice:
    def __init__(self, config: VoiceConfig) -> None:
        if config.stt_endpoint is None:
            raise ValueError("WYOMING_WHISPER_HOST/PORT must be configured for speech capture")
        self.config = config
        self.client = KnowhowClient(config.service)
        self.mqtt = VoiceMqtt(config.mqtt, logger=LOGGER)
        self.meter = ActivityMeter(sample_width=config.mic.width, window=config.vad.meter_window)
        self.mic = MicrophoneStream(config.mic.command, config.mic.bytes_per_chunk, LOGGER)
        capture = WyomingSpeechCapture(
            self.mic,
            mic_config=config.mic,
            phrase=config.phrase,
            endpoint=config.stt_endpoint,
            meter=self.meter,
            language=config.dialogue.language.split("-")[0],
            timeout=config.service.timeout,
            logger=LOGGER,
        )
        fallback = (
            WyomingSynthesizer(
                config.tts_endpoint,
                sink=PcmPlayer(logger=LOGGER),
                voice_name=config.tts_voice,
                timeout=config.service.timeout,
            )
            if config.tts_endpoint
            else None
        )
        synthesizer = FallbackSynthesizer(
            ServiceSynthesizer(
                self.client,
                player=EncodedPlayer(logger=LOGGER),
                voice=config.service.tts_voice,
            ),
            fallback,
        )
        self.orchestrator = DialogueOrchestrator.from_config(
            config,
            capture=capture,
            synthesizer=synthesizer,
            conversation=self.client,
            sessions=self.client,
            knowledge=self.client,
            meter=self.meter,
            on_state_changed=self._handle_state_changed,
            on_turn=self._handle_turn,
            on_error=self._handle_error,
            on_metrics=self.mqtt.publish_metrics,
        )
        self._loop: asyncio.AbstractEventLoop | None = None

    async def run(self, *, autostart: bool = False) -> None:
        self._loop = asyncio.get_running_loop()
        self.mqtt.subscribe(self.mqtt.command_topic, self._handle_command_message)
        self.mqtt.connect()
        self.mqtt.publish_state(DialogueState.IDLE.value)
        LOGGER.info("Knowhow voice ready (mode=%s, base_url=%s)", self.config.dialogue.mode, self.config.service.base_url)
        if autostart:
            await self.orchestrator.start()
        await asyncio.Event().wait()

    async def shutdown(self) -> None:
        await self.orchestrator.stop()
        await self.orchestrator.drain()
        await self.client.close()
        self.mqtt.publish_state("offline")
        self.mqtt.disconnect()

    async def handle_command(self, command: str) -> None:
        orchestrator = self.orchestrator
        if command == "start":
            await orchestrator.start()
        elif command == "stop":
            await orchestrator.stop()
        elif command == "send":
            await orchestrator.finalize_now()
        elif command == "confirm":
            await orchestrator.confirm_registration("published")
        elif command == "draft":
            await orchestrator.confirm_registration("draft")
        elif command == "dismiss":
            await orchestrator.dismiss_registration()
        elif command == "new":
            await orchestrator.new_conversation()

    def _handle_command_message(self, payload: str) -> None:
        command = payload.strip().lower()
        if command not in COMMANDS:
            LOGGER.warning("Ignoring unknown command: %s", payload)
            return
        if self._loop is None:
            return
        asyncio.run_coroutine_threadsafe(self.handle_command(command), self._loop)

    def _handle_state_changed(self, state: DialogueState) -> None:
        orchestrator = self.orchestrator
        self.mqtt.publish_state(
            state.value,
            registration=orchestrator.registration_phase.value,
            session_id=orchestrator.session.session_id,
        )

    def _handle_turn(self, turn: Turn) -> None:
        if self.config.log_transcripts:
            LOGGER.info("[%s] %s", turn.role.value, turn.content)
        self.mqtt.publish_turn(turn)

    def _handle_error(self, message: str) -> None:
        LOGGER.warning("Conversation error: %s", message)
        self.mqtt.publish_error(message)


async def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--autostart", action="store_true", help="Start a conversation immediately")
    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = VoiceConfig.from_env()
    daemon = KnowhowVoice(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_signal(signum: int) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    run_task = asyncio.create_task(daemon.run(autostart=args.autostart))
    await stop_event.wait()
    await daemon.shutdown()
    run_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await run_task


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass

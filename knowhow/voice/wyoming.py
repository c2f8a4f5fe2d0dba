"""Wyoming STT/TTS adapters for the voice engine's capture and synthesis contracts."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Iterator
from typing import Any

from wyoming.asr import Transcribe, Transcript
from wyoming.audio import AudioChunk, AudioStart, AudioStop
from wyoming.client import AsyncTcpClient
from wyoming.tts import Synthesize, SynthesizeVoice

from .activity import ActivityMeter, compute_rms
from .audio import MicrophoneStream, PcmPlayer
from .config import MicConfig, PhraseConfig, WyomingEndpoint
from .services import (
    CaptureEndCallback,
    CaptureError,
    CaptureErrorCallback,
    SpeechCapture,
    SpeechSynthesizer,
    TranscriptCallback,
)
from .session import PartialTranscript

LoggerLike = logging.Logger | None

LOGGER = logging.getLogger("knowhow-voice.wyoming")


async def _bounded(awaitable: Awaitable[Any], timeout: float | None) -> Any:
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout)


def pcm_frames(audio: bytes, frame_bytes: int) -> Iterator[bytes]:
    """Split captured PCM into the chunk size the microphone produced it in."""
    if frame_bytes <= 0:
        raise ValueError("Frame size must be positive")
    for offset in range(0, len(audio), frame_bytes):
        yield audio[offset : offset + frame_bytes]


async def transcribe_audio(
    audio_bytes: bytes,
    *,
    endpoint: WyomingEndpoint,
    mic: MicConfig,
    language: str | None = None,
    model: str | None = None,
    timeout: float | None = None,
    logger: LoggerLike = None,
) -> str | None:
    """Send PCM audio to a Wyoming STT endpoint and return the transcript text."""

    client = AsyncTcpClient(endpoint.host, endpoint.port)
    await _bounded(client.connect(), timeout)
    try:
        await _bounded(
            client.write_event(Transcribe(name=model or endpoint.model, language=language).event()),
            timeout,
        )
        await _bounded(
            client.write_event(AudioStart(rate=mic.rate, width=mic.width, channels=mic.channels).event()),
            timeout,
        )
        for chunk in pcm_frames(audio_bytes, mic.bytes_per_chunk):
            await _bounded(
                client.write_event(
                    AudioChunk(rate=mic.rate, width=mic.width, channels=mic.channels, audio=chunk).event()
                ),
                timeout,
            )
        await _bounded(client.write_event(AudioStop().event()), timeout)
        while True:
            event = await _bounded(client.read_event(), timeout)
            if event is None:
                if logger:
                    logger.debug("Wyoming STT connection closed before transcript returned")
                return None
            if Transcript.is_type(event.type):
                return Transcript.from_event(event).text
    finally:
        await client.disconnect()


async def play_tts_stream(
    text: str,
    *,
    endpoint: WyomingEndpoint,
    sink: PcmPlayer,
    voice_name: str | None = None,
    timeout: float | None = None,
) -> None:
    """Synthesize speech via Wyoming TTS and stream it directly to the provided sink."""

    started = False
    try:
        async for event in _tts_event_stream(text, endpoint=endpoint, voice_name=voice_name, timeout=timeout):
            if AudioStart.is_type(event.type):
                audio_start = AudioStart.from_event(event)
                await sink.start(audio_start.rate, audio_start.width, audio_start.channels)
                started = True
            elif AudioChunk.is_type(event.type):
                await sink.write(AudioChunk.from_event(event).audio)
            elif AudioStop.is_type(event.type):
                break
    except BaseException:
        if started:
            await sink.abort()
        raise
    if started:
        await sink.finish()


async def _tts_event_stream(
    text: str,
    *,
    endpoint: WyomingEndpoint,
    voice_name: str | None = None,
    timeout: float | None = None,
) -> AsyncIterator[object]:
    client = AsyncTcpClient(endpoint.host, endpoint.port)
    await _bounded(client.connect(), timeout)
    voice = SynthesizeVoice(name=voice_name) if voice_name else None
    try:
        await _bounded(client.write_event(Synthesize(text=text, voice=voice).event()), timeout)
        while True:
            event = await _bounded(client.read_event(), timeout)
            if event is None:
                break
            yield event
            if AudioStop.is_type(event.type):
                break
    finally:
        await client.disconnect()


class WyomingSpeechCapture(SpeechCapture):
    """Continuous recognition over a Wyoming STT server.

    ``open`` starts one microphone reader that runs until ``close``. Every
    chunk feeds the activity meter, so barge-in detection keeps working while
    recognition is paused. While recognition is on, chunks above the RMS floor
    open a phrase and a phrase closes after ``phrase.silence_ms`` of quiet.
    Closed phrases are transcribed in the background and reported as final
    transcripts.
    """

    def __init__(
        self,
        mic: MicrophoneStream,
        *,
        mic_config: MicConfig,
        phrase: PhraseConfig,
        endpoint: WyomingEndpoint,
        meter: ActivityMeter | None = None,
        language: str | None = None,
        timeout: float | None = 30.0,
        logger: LoggerLike = None,
    ) -> None:
        self.mic = mic
        self.mic_config = mic_config
        self.phrase = phrase
        self.endpoint = endpoint
        self.meter = meter
        self.language = language
        self.timeout = timeout
        self._logger = logger or LOGGER
        self._reader: asyncio.Task[None] | None = None
        self._listening = False
        self._pending: set[asyncio.Task[None]] = set()
        self._on_event: TranscriptCallback | None = None
        self._on_error: CaptureErrorCallback | None = None
        self._on_end: CaptureEndCallback | None = None

    @property
    def opened(self) -> bool:
        return self._reader is not None and not self._reader.done()

    @property
    def active(self) -> bool:
        return self._listening and self.opened

    async def open(self) -> None:
        if self.opened:
            return
        try:
            await self.mic.start()
        except OSError as exc:
            raise CaptureError("audio-capture", f"Microphone unavailable: {exc}") from exc
        self._reader = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        await self.stop()
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        await self.mic.stop()

    async def start(
        self,
        on_event: TranscriptCallback,
        on_error: CaptureErrorCallback,
        on_end: CaptureEndCallback | None = None,
    ) -> None:
        if self.active:
            return
        self._on_event = on_event
        self._on_error = on_error
        self._on_end = on_end
        await self.open()
        self._listening = True

    async def stop(self) -> None:
        self._listening = False
        for pending in list(self._pending):
            pending.cancel()
        self._pending.clear()

    async def _read_loop(self) -> None:
        chunk_ms = self.mic_config.chunk_ms
        min_chunks = int(max(1, (self.phrase.min_seconds * 1000) / chunk_ms))
        max_chunks = int(max(1, (self.phrase.max_seconds * 1000) / chunk_ms))
        silence_chunks = int(max(1, self.phrase.silence_ms / chunk_ms))
        buffer = bytearray()
        silence_run = 0
        chunks = 0
        try:
            while True:
                chunk = await self.mic.read_chunk()
                if self.meter is not None:
                    self.meter.observe(chunk)
                if not self._listening:
                    buffer.clear()
                    silence_run = chunks = 0
                    continue
                voiced = compute_rms(chunk, self.mic_config.width) >= self.phrase.rms_floor
                if not buffer and not voiced:
                    continue
                buffer.extend(chunk)
                chunks += 1
                silence_run = silence_run + 1 if not voiced and chunks >= min_chunks else 0
                if silence_run >= silence_chunks or chunks >= max_chunks:
                    self._submit(bytes(buffer))
                    buffer.clear()
                    silence_run = chunks = 0
        except RuntimeError as exc:
            self._logger.warning("[capture] Microphone failed: %s", exc)
            self._listening = False
            await self.mic.stop()
            if self._on_error:
                self._on_error(CaptureError("audio-capture", str(exc)))
            if self._on_end:
                self._on_end()

    def _submit(self, audio: bytes) -> None:
        task = asyncio.create_task(self._transcribe(audio))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _transcribe(self, audio: bytes) -> None:
        try:
            text = await transcribe_audio(
                audio,
                endpoint=self.endpoint,
                mic=self.mic_config,
                language=self.language,
                timeout=self.timeout,
                logger=self._logger,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            self._logger.warning("[capture] Transcription failed: %s", exc)
            if self._on_error and self._listening:
                self._on_error(CaptureError("network", str(exc)))
            return
        text = (text or "").strip()
        if not text:
            self._logger.debug("[capture] Empty transcript for %d bytes", len(audio))
            return
        if self._on_event and self.active:
            self._on_event(PartialTranscript(text=text, is_final=True))


class WyomingSynthesizer(SpeechSynthesizer):
    """Speak through a Wyoming TTS server into a local PCM player."""

    def __init__(
        self,
        endpoint: WyomingEndpoint,
        *,
        sink: PcmPlayer | None = None,
        voice_name: str | None = None,
        timeout: float | None = 30.0,
    ) -> None:
        self.endpoint = endpoint
        self.sink = sink or PcmPlayer()
        self.voice_name = voice_name
        self.timeout = timeout
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    async def speak(self, text: str) -> None:
        self._stopped = False
        self._task = asyncio.create_task(
            play_tts_stream(
                text,
                endpoint=self.endpoint,
                sink=self.sink,
                voice_name=self.voice_name,
                timeout=self.timeout,
            )
        )
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._stopped:
                raise
        except RuntimeError:
            if not self._stopped:
                raise
        finally:
            self._task = None

    async def stop(self) -> None:
        self._stopped = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
        await self.sink.abort()

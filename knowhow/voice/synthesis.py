"""Speech synthesis through the Knowhow service with local fallbacks."""

from __future__ import annotations

import logging

from .audio import EncodedPlayer
from .services import KnowhowClient, SpeechSynthesizer

LOGGER = logging.getLogger("knowhow-voice.synthesis")


class ServiceSynthesizer(SpeechSynthesizer):
    """Fetch mp3 audio from ``/api/speech/synthesize`` and play it locally."""

    def __init__(
        self,
        client: KnowhowClient,
        *,
        player: EncodedPlayer | None = None,
        voice: str | None = None,
    ) -> None:
        self.client = client
        self.player = player or EncodedPlayer()
        self.voice = voice
        self._stopped = False

    async def speak(self, text: str) -> None:
        self._stopped = False
        audio = await self.client.synthesize(text, self.voice)
        if self._stopped:
            LOGGER.debug("[tts] Stopped before playback started")
            return
        await self.player.play(audio)

    async def stop(self) -> None:
        self._stopped = True
        await self.player.abort()


class FallbackSynthesizer(SpeechSynthesizer):
    """Try each synthesizer in order; if all fail the utterance counts as spoken."""

    def __init__(self, *synthesizers: SpeechSynthesizer) -> None:
        self.synthesizers = [synth for synth in synthesizers if synth is not None]
        self._stopped = False

    async def speak(self, text: str) -> None:
        self._stopped = False
        for synth in self.synthesizers:
            if self._stopped:
                return
            try:
                await synth.speak(text)
                return
            except Exception as exc:
                LOGGER.warning("[tts] %s failed: %s", type(synth).__name__, exc)
        LOGGER.warning("[tts] No synthesizer could speak; continuing without audio")

    async def stop(self) -> None:
        self._stopped = True
        for synth in self.synthesizers:
            await synth.stop()

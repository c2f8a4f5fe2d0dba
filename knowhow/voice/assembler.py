"""Partial-transcript assembly and silence debounce for user turns."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .echo import EchoClassifier
from .session import CommittedUtterance, PartialTranscript

LOGGER = logging.getLogger("knowhow-voice.assembler")

DEFAULT_SILENCE_SECONDS = 2.5


class UtteranceAssembler:
    """Accumulate recognition results and commit them after a quiet period.

    Final results are appended to the utterance; interim results replace the
    trailing, still-changing segment. Every genuine event resets the debounce
    timer. Events the echo classifier attributes to the assistant's own voice
    are dropped without touching the text or the timer.
    """

    def __init__(
        self,
        echo: EchoClassifier,
        *,
        on_commit: Callable[[CommittedUtterance], None],
        on_speech_start: Callable[[str], None] | None = None,
        silence_seconds: float = DEFAULT_SILENCE_SECONDS,
    ) -> None:
        self.echo = echo
        self.silence_seconds = silence_seconds
        self._on_commit = on_commit
        self._on_speech_start = on_speech_start
        self._finalized = ""
        self._interim = ""
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending_text(self) -> str:
        return self._finalized + self._interim

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    def feed(self, event: PartialTranscript) -> bool:
        """Apply one recognition event. Returns False when it was rejected as echo."""
        if event.is_final:
            finalized, interim = self._finalized + event.text, ""
        else:
            finalized, interim = self._finalized, event.text
        candidate = finalized + interim
        if self.echo.is_echo(candidate):
            return False
        self._finalized, self._interim = finalized, interim
        if candidate.strip():
            if self._on_speech_start:
                self._on_speech_start(candidate)
            self._reset_timer()
        return True

    def flush(self) -> CommittedUtterance | None:
        """Finalize immediately without waiting for the silence window."""
        self._cancel_timer()
        text = self.pending_text.strip()
        self._finalized = ""
        self._interim = ""
        if not text:
            return None
        return CommittedUtterance(text=text, forced=True)

    def reset(self) -> None:
        self._cancel_timer()
        self._finalized = ""
        self._interim = ""

    def _reset_timer(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.silence_seconds, self._on_silence)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_silence(self) -> None:
        self._timer = None
        text = self.pending_text.strip()
        self._finalized = ""
        self._interim = ""
        if not text:
            return
        LOGGER.debug("Silence window elapsed; committing %d chars", len(text))
        self._on_commit(CommittedUtterance(text=text))

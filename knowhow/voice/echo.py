"""
Self-echo rejection for recognized speech

The microphone stays open while the assistant talks, so the recognizer
regularly transcribes the assistant's own synthesized voice. Those
transcripts are rarely exact, so the classifier combines a substring test
with character 3-gram overlap against the text currently being spoken.
"""

from __future__ import annotations

import asyncio
import logging
import re

LOGGER = logging.getLogger("knowhow-voice.echo")

DEFAULT_ECHO_THRESHOLD = 0.35

_ECHO_STRIP_RE = re.compile(r"[\s　、。,.!！?？・「」『』()\-—（）：:；;]")


def normalize_echo_text(text: str | None) -> str:
    """Lowercase and drop whitespace/punctuation so recognizer formatting does not matter."""
    if not text:
        return ""
    return _ECHO_STRIP_RE.sub("", text).lower()


def char_ngrams(text: str, n: int = 3) -> set[str]:
    if n <= 0:
        raise ValueError("n-gram size must be positive")
    return {text[i : i + n] for i in range(len(text) - n + 1)}


def is_echo(
    spoken_text: str | None,
    candidate: str | None,
    *,
    threshold: float = DEFAULT_ECHO_THRESHOLD,
    ngram_size: int = 3,
    min_chars: int = 2,
) -> bool:
    """Return True when ``candidate`` looks like a recognition of ``spoken_text``."""
    normalized_spoken = normalize_echo_text(spoken_text)
    if not normalized_spoken:
        return False
    normalized_candidate = normalize_echo_text(candidate)
    if len(normalized_candidate) < min_chars:
        return False
    if normalized_candidate in normalized_spoken:
        return True
    candidate_grams = char_ngrams(normalized_candidate, ngram_size)
    if not candidate_grams:
        return False
    spoken_grams = char_ngrams(normalized_spoken, ngram_size)
    overlap = len(candidate_grams & spoken_grams)
    return overlap / len(candidate_grams) >= threshold


class EchoClassifier:
    """Holds the text the assistant is speaking and classifies candidates against it."""

    def __init__(self, *, threshold: float = DEFAULT_ECHO_THRESHOLD, ngram_size: int = 3, min_chars: int = 2) -> None:
        self.threshold = threshold
        self.ngram_size = ngram_size
        self.min_chars = min_chars
        self._spoken_text = ""
        self._clear_handle: asyncio.TimerHandle | None = None

    @property
    def spoken_text(self) -> str:
        return self._spoken_text

    @property
    def active(self) -> bool:
        return bool(self._spoken_text)

    def set_spoken(self, text: str) -> None:
        self._cancel_pending_clear()
        self._spoken_text = text or ""

    def clear(self) -> None:
        self._cancel_pending_clear()
        self._spoken_text = ""

    def clear_after(self, delay: float) -> None:
        """Keep the buffer for ``delay`` seconds to absorb the acoustic tail, then clear it."""
        self._cancel_pending_clear()
        if delay <= 0:
            self._spoken_text = ""
            return
        loop = asyncio.get_running_loop()
        self._clear_handle = loop.call_later(delay, self._expire)

    def is_echo(self, candidate: str | None) -> bool:
        if not self._spoken_text:
            return False
        echo = is_echo(
            self._spoken_text,
            candidate,
            threshold=self.threshold,
            ngram_size=self.ngram_size,
            min_chars=self.min_chars,
        )
        if echo:
            LOGGER.debug("[echo] Filtered: %s", (candidate or "")[:30])
        return echo

    def _expire(self) -> None:
        self._clear_handle = None
        self._spoken_text = ""

    def _cancel_pending_clear(self) -> None:
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None

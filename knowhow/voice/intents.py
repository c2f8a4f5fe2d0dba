"""
Spoken command detection for committed utterances

Recognizes three phrase families in a committed user turn:
- Closing phrases: the user wants to wrap up the conversation. Strong phrases
  always count; soft phrases only count in short utterances so a long,
  substantive sentence that merely contains a polite word does not end the call.
- Registration triggers: "save/record/register this as knowledge" requests.
- Confirmation replies: draft / publish / dismiss answers, only consulted while
  a registration proposal is waiting for an answer.

Matching is substring-based on whitespace-stripped text; families are checked
in order and the first match wins.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from enum import Enum

SOFT_CLOSING_MAX_CHARS = 25

_WHITESPACE_RE = re.compile(r"[\s　]+")

STRONG_CLOSING_PATTERNS: tuple[str, ...] = (
    "もう大丈夫",
    "以上です",
    "それだけです",
    "終わりで",
    "もう結構",
    "お疲れ様",
    "おつかれさま",
    "ありがとうございました",
)

# A trailing "$" anchors the phrase to the end of the utterance.
SOFT_CLOSING_PATTERNS: tuple[str, ...] = (
    "大丈夫です",
    "ありがとうございます",
    "ありがとう$",
    "なさそうです",
    "ないです$",
    "いいです$",
)

REGISTRATION_TRIGGERS: tuple[str, ...] = (
    "記録して",
    "登録して",
    "保存して",
    "ナレッジに保存",
    "ナレッジ登録",
    "ナレッジを登録",
    "登録したい",
    "保存したい",
    "記録したい",
    "ナレッジとして登録",
    "ナレッジとして保存",
    "ナレッジとして記録",
    "ナレッジにして",
    "知見を登録",
    "知見を保存",
)

DRAFT_KEYWORDS: tuple[str, ...] = ("下書き", "下書きで", "下書き保存")
PUBLISH_KEYWORDS: tuple[str, ...] = ("はい", "登録", "お願い", "登録して", "オーケー", "OK", "公開")
DISMISS_KEYWORDS: tuple[str, ...] = ("いいえ", "やめる", "キャンセル", "いらない", "不要")


class Intent(str, Enum):
    CONFIRM_DRAFT = "confirm_draft"
    CONFIRM_PUBLISH = "confirm_publish"
    DISMISS = "dismiss"
    REGISTER = "register"
    CLOSING = "closing"
    CHAT = "chat"


def normalize_intent_text(text: str | None) -> str:
    """Remove ASCII and ideographic whitespace."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub("", text)


def _phrase_matches(normalized: str, pattern: str) -> bool:
    if pattern.endswith("$"):
        return normalized.endswith(pattern[:-1])
    return pattern in normalized


def contains_any(normalized: str, phrases: Sequence[str]) -> bool:
    return any(_phrase_matches(normalized, phrase) for phrase in phrases)


def is_closing_phrase(text: str | None, *, soft_max_chars: int = SOFT_CLOSING_MAX_CHARS) -> bool:
    normalized = normalize_intent_text(text)
    if not normalized:
        return False
    if contains_any(normalized, STRONG_CLOSING_PATTERNS):
        return True
    if len(normalized) < soft_max_chars:
        return contains_any(normalized, SOFT_CLOSING_PATTERNS)
    return False


def is_registration_trigger(text: str | None) -> bool:
    return contains_any(normalize_intent_text(text), REGISTRATION_TRIGGERS)


def match_confirmation(text: str | None) -> Intent | None:
    """Return the confirmation reply in ``text`` (draft beats publish beats dismiss)."""
    normalized = normalize_intent_text(text)
    if not normalized:
        return None
    if contains_any(normalized, DRAFT_KEYWORDS):
        return Intent.CONFIRM_DRAFT
    if contains_any(normalized, PUBLISH_KEYWORDS):
        return Intent.CONFIRM_PUBLISH
    if contains_any(normalized, DISMISS_KEYWORDS):
        return Intent.DISMISS
    return None


class IntentMatcher:
    """Ordered phrase-family matcher used by the dialogue orchestrator."""

    def __init__(self, *, soft_closing_max_chars: int = SOFT_CLOSING_MAX_CHARS) -> None:
        self.soft_closing_max_chars = soft_closing_max_chars

    def match(self, text: str | None, *, confirming: bool = False) -> Intent:
        if confirming:
            reply = match_confirmation(text)
            if reply is not None:
                return reply
        if is_registration_trigger(text):
            return Intent.REGISTER
        if self.is_closing(text):
            return Intent.CLOSING
        return Intent.CHAT

    def is_closing(self, text: str | None) -> bool:
        return is_closing_phrase(text, soft_max_chars=self.soft_closing_max_chars)

    def confirmation(self, text: str | None) -> Intent | None:
        return match_confirmation(text)

"""Collaborator contracts for the voice engine and the Knowhow REST client that implements them."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import ServiceConfig
from .session import (
    AnalysisResult,
    ChatReply,
    KnowledgeRef,
    PartialTranscript,
    RegistrationProposal,
    Turn,
)

LOGGER = logging.getLogger(__name__)

FATAL_CAPTURE_ERRORS = {"permission-denied", "not-allowed", "service-not-allowed"}


class CaptureError(RuntimeError):
    """Speech capture failure; ``fatal`` errors end the conversation."""

    def __init__(self, code: str, message: str | None = None, *, fatal: bool | None = None) -> None:
        super().__init__(message or code)
        self.code = code
        self.fatal = code in FATAL_CAPTURE_ERRORS if fatal is None else fatal


class KnowhowError(RuntimeError):
    """Generic Knowhow API failure."""


class KnowhowAuthError(KnowhowError):
    """Raised when the API returns 401/403."""


TranscriptCallback = Callable[[PartialTranscript], None]
CaptureErrorCallback = Callable[[CaptureError], None]
CaptureEndCallback = Callable[[], None]


class SpeechCapture:
    """Recognition over a shared microphone.

    ``open``/``close`` acquire and release the microphone once per conversation;
    ``start``/``stop`` only switch recognition on and off while it stays open.
    """

    @property
    def active(self) -> bool:
        raise NotImplementedError

    async def open(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def start(
        self,
        on_event: TranscriptCallback,
        on_error: CaptureErrorCallback,
        on_end: CaptureEndCallback | None = None,
    ) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError


class SpeechSynthesizer:
    """Speaks text; ``speak`` returns once playback finished or was stopped."""

    async def speak(self, text: str) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError


class ConversationService:
    async def chat(
        self,
        message: str,
        history: Sequence[dict[str, str]],
        *,
        session_id: str | None = None,
        hint: str | None = None,
    ) -> ChatReply:
        raise NotImplementedError

    async def analyze(self, turns: Sequence[dict[str, str]]) -> AnalysisResult:
        raise NotImplementedError

    async def correct(self, text: str) -> str:
        raise NotImplementedError


class SessionStore:
    async def create_session(self, mode: str) -> str:
        raise NotImplementedError

    async def append_messages(self, session_id: str, turns: Sequence[Turn]) -> None:
        raise NotImplementedError

    async def complete_session(self, session_id: str) -> None:
        raise NotImplementedError

    async def delete_session(self, session_id: str) -> None:
        raise NotImplementedError

    async def get_session(self, session_id: str) -> list[Turn]:
        raise NotImplementedError


class KnowledgeStore:
    async def create_knowledge(self, payload: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def invalidate_cache(self) -> None:
        raise NotImplementedError


def parse_chat_reply(payload: Any) -> ChatReply:
    if not isinstance(payload, dict):
        return ChatReply(text="")
    text = payload.get("response") or payload.get("message") or payload.get("content") or ""
    related: list[KnowledgeRef] = []
    for item in payload.get("related_knowledge") or []:
        if isinstance(item, dict) and item.get("id") is not None:
            try:
                related.append(KnowledgeRef(id=int(item["id"]), title=str(item.get("title") or "")))
            except (TypeError, ValueError):
                continue
    return ChatReply(text=str(text).strip(), related=tuple(related))


def parse_analysis_result(payload: Any) -> AnalysisResult:
    if not isinstance(payload, dict):
        return AnalysisResult(should_register=False)
    should_register = bool(payload.get("should_register") or payload.get("shouldRegister"))
    extracted = payload.get("extracted")
    proposal = RegistrationProposal.from_payload(extracted) if isinstance(extracted, dict) else None
    return AnalysisResult(should_register=should_register, proposal=proposal)


def _turn_from_payload(item: dict[str, Any]) -> Turn | None:
    role = item.get("role")
    content = item.get("content")
    if role not in ("user", "assistant") or not isinstance(content, str):
        return None
    if role == "user":
        return Turn.user(content)
    return Turn.assistant(content)


@dataclass(slots=True)
class KnowhowClient(ConversationService, SessionStore, KnowledgeStore):
    config: ServiceConfig
    timeout: float | None = None
    _client: httpx.AsyncClient = field(init=False, repr=False)
    _closed: bool = field(init=False, default=True, repr=False)
    _knowledge_cache: list[dict[str, Any]] | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.config.base_url:
            raise ValueError("Knowhow base URL is not configured")
        if not self.config.token:
            raise ValueError("Knowhow token is not configured")
        if self.timeout is None:
            self.timeout = self.config.timeout
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {self.config.token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            verify=self.config.verify_ssl,
        )
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()

    async def chat(
        self,
        message: str,
        history: Sequence[dict[str, str]],
        *,
        session_id: str | None = None,
        hint: str | None = None,
        mode: str = "field",
    ) -> ChatReply:
        body: dict[str, Any] = {
            "message": message,
            "mode": mode,
            "conversation_history": list(history),
        }
        if session_id:
            body["session_id"] = _session_id_value(session_id)
        if hint:
            body["system_hint"] = hint
        return parse_chat_reply(await self._request("POST", "/api/ai/chat", json=body))

    async def analyze(self, turns: Sequence[dict[str, str]]) -> AnalysisResult:
        payload = await self._request("POST", "/api/ai/analyze-conversation", json={"messages": list(turns)})
        return parse_analysis_result(payload)

    async def correct(self, text: str) -> str:
        payload = await self._request("POST", "/api/ai/correct-speech", json={"text": text})
        if isinstance(payload, dict) and isinstance(payload.get("corrected"), str):
            return payload["corrected"]
        return text

    async def create_session(self, mode: str) -> str:
        payload = await self._request("POST", "/api/ai/voice-session", json={"mode": mode})
        session = payload.get("session") if isinstance(payload, dict) else None
        if not isinstance(session, dict) or session.get("id") is None:
            raise KnowhowError("Voice session response missing id")
        return str(session["id"])

    async def append_messages(self, session_id: str, turns: Sequence[Turn]) -> None:
        messages = [turn.as_message() for turn in turns]
        await self._request("POST", f"/api/ai/voice-sessions/{session_id}/messages", json={"messages": messages})

    async def complete_session(self, session_id: str) -> None:
        await self._request("PUT", f"/api/ai/voice-sessions/{session_id}/complete")

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/api/ai/voice-sessions/{session_id}")

    async def get_session(self, session_id: str) -> list[Turn]:
        payload = await self._request("GET", f"/api/ai/voice-sessions/{session_id}")
        raw = payload.get("messages") if isinstance(payload, dict) else None
        turns: list[Turn] = []
        for item in raw or []:
            if isinstance(item, dict) and (turn := _turn_from_payload(item)):
                turns.append(turn)
        return turns

    async def create_knowledge(self, payload: dict[str, Any]) -> dict[str, Any]:
        created = await self._request("POST", "/api/knowledge", json=payload)
        if not isinstance(created, dict):
            return {}
        if created.get("id") is None and isinstance(created.get("item"), dict):
            return created["item"]
        return created

    async def list_knowledge(self) -> list[dict[str, Any]]:
        if self._knowledge_cache is not None:
            return self._knowledge_cache
        payload = await self._request("GET", "/api/knowledge")
        items = payload.get("items") if isinstance(payload, dict) else payload
        self._knowledge_cache = [item for item in items or [] if isinstance(item, dict)]
        return self._knowledge_cache

    def invalidate_cache(self) -> None:
        self._knowledge_cache = None

    async def synthesize(self, text: str, voice: str | None = None) -> bytes:
        """Return encoded (mp3) audio for ``text``."""
        body: dict[str, Any] = {"text": text}
        if voice or self.config.tts_voice:
            body["voice"] = voice or self.config.tts_voice
        try:
            response = await self._client.request("POST", "/api/speech/synthesize", json=body)
        except httpx.RequestError as exc:
            raise KnowhowError(f"Failed to contact Knowhow: {exc}") from exc
        _raise_for_status(response)
        if not response.content:
            raise KnowhowError("Speech synthesis returned no audio")
        return response.content

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:  # pragma: no cover - network errors
            raise KnowhowError(f"Failed to contact Knowhow: {exc}") from exc
        _raise_for_status(response)
        if response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return response.text


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code in (401, 403):
        raise KnowhowAuthError("Knowhow rejected the token")
    if response.status_code >= 400:
        raise KnowhowError(f"Knowhow error {response.status_code}: {response.text}")


def _session_id_value(session_id: str) -> int | str:
    return int(session_id) if session_id.isdigit() else session_id

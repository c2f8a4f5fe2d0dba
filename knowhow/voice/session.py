"""Conversation data model shared by the voice engine and its collaborators."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str
    raw_content: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def is_notice(self) -> bool:
        """Notices are shown and stored but never sent back to the chat service."""
        return bool(self.metadata and self.metadata.get("notice"))

    def as_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def user(cls, content: str, raw_content: str | None = None) -> Turn:
        return cls(Role.USER, content, raw_content=raw_content)

    @classmethod
    def assistant(cls, content: str, **metadata: Any) -> Turn:
        return cls(Role.ASSISTANT, content, metadata=metadata or None)


@dataclass
class ConversationSession:
    """Append-only record of one conversation, owned by the orchestrator while live."""

    mode: str
    session_id: str | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    _turns: list[Turn] = field(default_factory=list, repr=False)

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def append(self, turn: Turn) -> Turn:
        if self.status is SessionStatus.COMPLETED:
            raise RuntimeError("Cannot append to a completed session")
        self._turns.append(turn)
        return turn

    def extend(self, turns: Iterable[Turn]) -> None:
        for turn in turns:
            self.append(turn)

    def history(self) -> list[dict[str, str]]:
        """Chat history payload: every non-notice turn in order."""
        return [turn.as_message() for turn in self._turns if not turn.is_notice]

    def transcript(self) -> list[dict[str, str]]:
        """All turns, notices included, for conversation analysis."""
        return [turn.as_message() for turn in self._turns]

    def complete(self) -> None:
        self.status = SessionStatus.COMPLETED


@dataclass(frozen=True)
class PartialTranscript:
    text: str
    is_final: bool = False


@dataclass(frozen=True)
class CommittedUtterance:
    text: str
    forced: bool = False


@dataclass(frozen=True)
class KnowledgeRef:
    id: int
    title: str


@dataclass(frozen=True)
class ChatReply:
    text: str
    related: tuple[KnowledgeRef, ...] = ()


@dataclass(frozen=True)
class RegistrationProposal:
    title: str
    summary: str = ""
    content: str = ""
    category: str | None = None
    risk_level: str | None = None
    work_type: str | None = None
    tags: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RegistrationProposal | None:
        title = str(payload.get("title") or "").strip()
        if not title:
            return None
        raw_tags = payload.get("tags") or []
        tags = tuple(str(tag).strip() for tag in raw_tags if isinstance(tag, str) and tag.strip())
        return cls(
            title=title,
            summary=str(payload.get("summary") or "").strip(),
            content=str(payload.get("content") or "").strip(),
            category=payload.get("category") or None,
            risk_level=payload.get("risk_level") or payload.get("riskLevel") or None,
            work_type=payload.get("work_type") or payload.get("workType") or None,
            tags=tags,
        )


@dataclass(frozen=True)
class AnalysisResult:
    should_register: bool
    proposal: RegistrationProposal | None = None

    @property
    def save_worthy(self) -> bool:
        return self.should_register and self.proposal is not None

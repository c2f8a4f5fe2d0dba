"""Conversion between chat markup and text suitable for speech output."""

from __future__ import annotations

import re

from .session import KnowledgeRef

_KNOWLEDGE_RE = re.compile(r"\[\[knowledge:(\d+)\|([^\]]+)\]\]")
_CHECKLIST_RE = re.compile(r"\[\[checklist:\d+\|([^\]]+)\]\]")


def knowledge_link(knowledge_id: int | str | None, title: str) -> str:
    """Reference token the presentation layer renders as an article link."""
    if knowledge_id in (None, ""):
        return f"**{title}**"
    return f"[[knowledge:{knowledge_id}|{title}]]"


def extract_knowledge_refs(text: str) -> list[KnowledgeRef]:
    return [KnowledgeRef(id=int(match.group(1)), title=match.group(2)) for match in _KNOWLEDGE_RE.finditer(text or "")]


def to_speech_text(text: str) -> str:
    """Strip markdown and reference tokens so the reply reads as plain prose."""
    plain = _KNOWLEDGE_RE.sub(r"\2", text or "")
    plain = _CHECKLIST_RE.sub(r"\1", plain)
    plain = re.sub(r"#{1,6}\s*", "", plain)
    plain = re.sub(r"\*\*(.*?)\*\*", r"\1", plain)
    plain = re.sub(r"\*(.*?)\*", r"\1", plain)
    plain = re.sub(r"[-*]\s", "", plain)
    plain = re.sub(r"\n{2,}", "。", plain)
    plain = plain.replace("\n", "。")
    return plain.strip()

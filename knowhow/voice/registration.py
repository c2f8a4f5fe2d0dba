"""Knowledge registration vocabulary and the messages of the confirmation sub-dialogue."""

from __future__ import annotations

from typing import Any, Literal

from .markup import knowledge_link
from .session import RegistrationProposal

RegistrationStatus = Literal["published", "draft"]

DEFAULT_CATEGORY = "procedure"
DEFAULT_RISK = "low"

CATEGORY_MAP: dict[str, str] = {
    "procedure": "procedure",
    "safety": "safety",
    "quality": "quality",
    "cost": "cost",
    "equipment": "equipment",
    "material": "material",
    "手順": "procedure",
    "安全": "safety",
    "品質": "quality",
    "コスト": "cost",
    "機械": "equipment",
    "資材": "material",
    "安全管理": "safety",
    "品質管理": "quality",
    "コスト管理": "cost",
    "機械管理": "equipment",
    "資材管理": "material",
}

RISK_MAP: dict[str, str] = {
    "low": "low",
    "medium": "medium",
    "high": "high",
    "critical": "critical",
    "低": "low",
    "中": "medium",
    "高": "high",
    "重大": "critical",
}

GUIDANCE_MESSAGE = (
    "ナレッジ登録するには、もう少し会話を続けてから「記録して」「登録して」と言ってください。"
    "会話の内容を分析してナレッジとして保存できます。"
)
NO_RESULT_MESSAGE = (
    "会話を分析しましたが、登録すべきナレッジは見つかりませんでした。"
    "もう少し具体的な内容を話してから再度お試しください。"
)
DISMISS_MESSAGE = "わかりました、ナレッジ登録はスキップします。引き続き何かあればお声がけください。"
CHAT_FAILURE_MESSAGE = "エラーが発生しました。もう一度お試しください。"
EMPTY_REPLY_MESSAGE = "すみません、応答を生成できませんでした。"
CLOSING_HINT = "ユーザーは会話を終了したいようです。簡潔に挨拶して締めくくってください"


def _lookup(value: str | None, mapping: dict[str, str], default: str) -> str:
    stripped = (value or "").strip()
    return mapping.get(stripped.lower()) or mapping.get(stripped) or default


def normalize_category(value: str | None) -> str:
    return _lookup(value, CATEGORY_MAP, DEFAULT_CATEGORY)


def normalize_risk(value: str | None) -> str:
    return _lookup(value, RISK_MAP, DEFAULT_RISK)


def build_knowledge_payload(proposal: RegistrationProposal, status: RegistrationStatus) -> dict[str, Any]:
    return {
        "title": proposal.title,
        "category": normalize_category(proposal.category),
        "risk_level": normalize_risk(proposal.risk_level),
        "work_type": proposal.work_type or "",
        "content": proposal.content,
        "tags": list(proposal.tags),
        "summary": proposal.summary,
        "status": status,
    }


def proposal_message(proposal: RegistrationProposal) -> str:
    return f"この会話に有益な知見が含まれています。ナレッジとして登録しますか？\n\n**{proposal.title}**\n{proposal.summary}"


def spoken_proposal_message(proposal: RegistrationProposal) -> str:
    return (
        f"この会話に有益な知見が含まれています。{proposal.title}。"
        "ナレッジとして登録しますか？はい、下書き、キャンセルで応答できます。"
    )


def _result_body(status: RegistrationStatus) -> str:
    if status == "published":
        return "をナレッジとして登録しました。他の現場でも活用できる知見ですね。引き続き何かあればお声がけください。"
    return "を下書きとして保存しました。あとから編集・公開できます。引き続き何かあればお声がけください。"


def result_message(knowledge_id: int | str | None, title: str, status: RegistrationStatus) -> str:
    return f"{knowledge_link(knowledge_id, title)} {_result_body(status)}"


def spoken_result_message(title: str, status: RegistrationStatus) -> str:
    return f"{title}{_result_body(status)}"

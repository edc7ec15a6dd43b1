"""Export service: render an owned conversation as Markdown or JSON."""

import json
from typing import Literal
from pydantic import BaseModel, ConfigDict

from chatgate.features.conversations.service import get_conversation
from chatgate.models.conversation import Conversation

ExportFormat = Literal["markdown", "json"]

_ROLE_HEADINGS = {"user": "You", "assistant": "Assistant"}


class ExportResponse(BaseModel):
    """Export response model."""
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    format: str
    filename: str
    content_type: str
    content: str


def _markdown(conversation: Conversation) -> str:
    lines = [
        f"# {conversation.title}",
        "",
        f"_Created {conversation.created_at.isoformat()} · updated {conversation.updated_at.isoformat()}_",
        "",
    ]
    for turn in conversation.messages:
        lines.append(f"## {_ROLE_HEADINGS.get(turn.role, turn.role)}")
        lines.append("")
        lines.append(turn.content)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def _json(conversation: Conversation) -> str:
    return json.dumps(conversation.model_dump(mode="json"), indent=2, ensure_ascii=False)


def export_conversation(conversation_id: str, owner_id: str, export_format: ExportFormat = "markdown") -> ExportResponse:
    """
    Raises:
        NotFoundError: conversation missing or not owned
    """
    conversation = get_conversation(conversation_id, owner_id)
    if export_format == "markdown":
        return ExportResponse(
            conversation_id=conversation_id,
            format="markdown",
            filename=f"conversation_{conversation_id}.md",
            content_type="text/markdown",
            content=_markdown(conversation),
        )
    return ExportResponse(
        conversation_id=conversation_id,
        format="json",
        filename=f"conversation_{conversation_id}.json",
        content_type="application/json",
        content=_json(conversation),
    )

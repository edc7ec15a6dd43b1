"""Conversation management API (owner-scoped)."""

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from chatgate.core.auth import get_current_user_id
from chatgate.core.errors import NotFoundError
from chatgate.core.logging import get_request_id
from chatgate.features.conversations.export import export_conversation
from chatgate.features.conversations.service import (
    delete_conversation,
    get_conversation,
    list_conversations,
    rename_conversation,
)
from chatgate.features.plans.service import resolve_plan
from chatgate.features.quota.service import enforce_feature
from chatgate.features.users.service import get_user
from chatgate.models.conversation import Conversation, RenameRequest

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def _summary(conversation: Conversation) -> dict:
    return conversation.model_dump(mode="json", exclude={"messages"})


@router.get("")
def list_conversations_endpoint(user_id: str = Depends(get_current_user_id)):
    items = [_summary(c) for c in list_conversations(user_id)]
    return {"data": items, "request_id": get_request_id()}


@router.get("/{conversation_id}")
def get_conversation_endpoint(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    conversation = get_conversation(conversation_id, user_id)
    return {"data": conversation.model_dump(mode="json"), "request_id": get_request_id()}


@router.patch("/{conversation_id}")
def rename_conversation_endpoint(
    conversation_id: str,
    body: RenameRequest,
    user_id: str = Depends(get_current_user_id),
):
    conversation = rename_conversation(conversation_id, user_id, body.title)
    return {"data": _summary(conversation), "request_id": get_request_id()}


@router.delete("/{conversation_id}")
def delete_conversation_endpoint(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    delete_conversation(conversation_id, user_id)
    return {"data": {"deleted": True, "conversationId": conversation_id}, "request_id": get_request_id()}


@router.get("/{conversation_id}/export")
def export_conversation_endpoint(
    conversation_id: str,
    request: Request,
    format: Literal["markdown", "json"] = Query("markdown"),
    user_id: str = Depends(get_current_user_id),
):
    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    enforce_feature(resolve_plan(user, request.app.state.plan_table), "export")

    exported = export_conversation(conversation_id, user_id, format)
    return Response(
        content=exported.content,
        media_type=exported.content_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )

"""Chat API: one governed message exchange per request."""

from fastapi import APIRouter, Depends, Request, Response

from chatgate.core.auth import get_current_user_id
from chatgate.core.logging import bind_log_context
from chatgate.features.chat.service import handle_chat_message
from chatgate.models.conversation import ChatRequest, ChatResponse

router = APIRouter(prefix="/api", tags=["chat"])


def _header_value(remaining) -> str:
    return "unlimited" if remaining is None else str(remaining)


@router.post("/chat", response_model=ChatResponse)
async def chat_endpoint(
    body: ChatRequest,
    request: Request,
    response: Response,
    user_id: str = Depends(get_current_user_id),
):
    state = request.app.state
    with bind_log_context(user_id=user_id, conversation_id=body.conversationId):
        outcome = await handle_chat_message(
            user_id,
            body.message,
            dispatcher=state.dispatcher,
            conversation_id=body.conversationId,
            model_provider=body.modelProvider,
            plan_table=state.plan_table,
            policy=state.policy,
        )

    remaining = outcome.limits["remaining"]
    response.headers["X-Subscription-Tier"] = outcome.plan.tier
    response.headers["X-Daily-Messages-Remaining"] = _header_value(remaining["dailyMessages"])
    response.headers["X-Active-Conversations-Remaining"] = _header_value(remaining["activeConversations"])
    return outcome.as_payload()

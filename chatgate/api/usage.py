"""Usage API: current counters and plan limits for the caller."""

from fastapi import APIRouter, Depends, Request

from chatgate.core.auth import get_current_user_id
from chatgate.core.errors import NotFoundError
from chatgate.core.logging import get_request_id
from chatgate.features.plans.service import resolve_plan
from chatgate.features.quota.service import current_plan_limits, effective_daily_count
from chatgate.features.users.service import get_user

router = APIRouter(prefix="/api/user", tags=["usage"])


@router.get("/usage")
def usage_endpoint(request: Request, user_id: str = Depends(get_current_user_id)):
    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    plan = resolve_plan(user, request.app.state.plan_table)
    return {
        "tier": plan.tier,
        "usage": {
            "dailyMessageCount": effective_daily_count(user),
            "lastMessageDate": user.last_message_date.isoformat() if user.last_message_date else None,
            "activeConversations": user.active_conversations,
        },
        "limits": current_plan_limits(user, plan),
        "request_id": get_request_id(),
    }

"""
chatgate/features/quota/service.py

Quota guard: allow/deny decisions against a snapshot of user state.

Handles:
- Daily message cap (UTC calendar-day rollover)
- Active conversation cap (only when opening a new conversation)
- Backend and feature access from plan flags
- Limits snapshot for error payloads and the usage endpoint

Nothing here mutates state; the conversation store records usage.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import logging

from chatgate.core.errors import FeatureForbiddenError, QuotaExceededError
from chatgate.core.metrics import quota_denials_total
from chatgate.models.plan import Plan
from chatgate.models.user import User


logger = logging.getLogger(__name__)

HOSTED_BACKEND = "hosted"
SELF_HOSTED_BACKEND = "self-hosted"

# Backends that need a plan feature flag; anything not listed is open to all tiers
BACKEND_FEATURES = {
    SELF_HOSTED_BACKEND: "self_hosted_model",
}


class QuotaStatus(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class BackendStatus(str, Enum):
    ALLOW = "ALLOW"
    DOWNGRADE = "DOWNGRADE"
    DENY = "DENY"


@dataclass(frozen=True)
class QuotaDecision:
    status: QuotaStatus
    kind: Optional[str] = None
    limit: Optional[int] = None
    current_usage: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.status == QuotaStatus.ALLOW


@dataclass(frozen=True)
class BackendDecision:
    status: BackendStatus
    requested: str
    backend: str
    feature: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.status != BackendStatus.DENY


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def start_of_day(now: Optional[datetime] = None) -> datetime:
    """Midnight UTC of the day containing `now`."""
    now = _normalize_now(now).astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def is_same_day(moment: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when `moment` falls on the same UTC calendar day as `now`."""
    if moment is None:
        return False
    moment = _normalize_now(moment).astimezone(timezone.utc)
    return moment.date() == _normalize_now(now).astimezone(timezone.utc).date()


def effective_daily_count(user: User, now: Optional[datetime] = None) -> int:
    """Messages counted today; a stale `last_message_date` means zero."""
    if not is_same_day(user.last_message_date, now):
        return 0
    return max(0, user.daily_message_count or 0)


def check_daily_message_limit(user: User, plan: Plan, now: Optional[datetime] = None) -> QuotaDecision:
    used = effective_daily_count(user, now)
    if plan.unlimited_messages or used < plan.daily_message_limit:
        return QuotaDecision(QuotaStatus.ALLOW, limit=plan.daily_message_limit, current_usage=used)
    logger.warning(
        "[quota] daily message limit reached",
        extra={"user_id": user.user_id, "limit": plan.daily_message_limit, "current_usage": used},
    )
    return QuotaDecision(
        QuotaStatus.DENY,
        kind=QuotaExceededError.DAILY_MESSAGE_LIMIT,
        limit=plan.daily_message_limit,
        current_usage=used,
    )


def check_active_conversation_limit(user: User, plan: Plan) -> QuotaDecision:
    active = max(0, user.active_conversations or 0)
    if plan.unlimited_conversations or active < plan.max_active_conversations:
        return QuotaDecision(QuotaStatus.ALLOW, limit=plan.max_active_conversations, current_usage=active)
    logger.warning(
        "[quota] active conversation limit reached",
        extra={"user_id": user.user_id, "limit": plan.max_active_conversations, "current_usage": active},
    )
    return QuotaDecision(
        QuotaStatus.DENY,
        kind=QuotaExceededError.ACTIVE_CONVERSATION_LIMIT,
        limit=plan.max_active_conversations,
        current_usage=active,
    )


def check_feature_access(plan: Plan, feature: str) -> bool:
    return plan.features.allows(feature)


def check_backend_access(
    user: User,
    plan: Plan,
    requested_backend: Optional[str],
    *,
    policy: str = "reject",
) -> BackendDecision:
    """Clamp a requested backend to what the plan grants.

    With policy "downgrade" a forbidden premium backend falls back to the
    hosted one; with "reject" the decision is DENY. A forbidden backend is
    never selected either way.
    """
    requested = requested_backend or HOSTED_BACKEND
    feature = BACKEND_FEATURES.get(requested)
    if feature is None or check_feature_access(plan, feature):
        return BackendDecision(BackendStatus.ALLOW, requested=requested, backend=requested)

    if policy == "downgrade":
        logger.info(
            "[quota] backend downgraded",
            extra={"user_id": user.user_id, "requested": requested, "backend": HOSTED_BACKEND, "tier": plan.tier},
        )
        return BackendDecision(BackendStatus.DOWNGRADE, requested=requested, backend=HOSTED_BACKEND, feature=feature)

    logger.warning(
        "[quota] backend forbidden",
        extra={"user_id": user.user_id, "requested": requested, "tier": plan.tier},
    )
    return BackendDecision(BackendStatus.DENY, requested=requested, backend=requested, feature=feature)


def _remaining(limit: int, used: int) -> Optional[int]:
    if limit < 0:
        return None
    return max(0, limit - used)


def current_plan_limits(user: User, plan: Plan, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Snapshot of the caller's limits; `None` remaining means unlimited."""
    used_today = effective_daily_count(user, now)
    active = max(0, user.active_conversations or 0)
    return {
        "tier": plan.tier,
        "dailyMessageLimit": plan.daily_message_limit,
        "maxActiveConversations": plan.max_active_conversations,
        "maxResponseLength": plan.max_response_length,
        "features": plan.features.as_flags(),
        "remaining": {
            "dailyMessages": _remaining(plan.daily_message_limit, used_today),
            "activeConversations": _remaining(plan.max_active_conversations, active),
        },
    }


def enforce_message_quota(
    user: User,
    plan: Plan,
    *,
    new_conversation: bool,
    now: Optional[datetime] = None,
) -> None:
    """Raise QuotaExceededError if the message may not be sent.

    The active-conversation cap only applies when the request opens a
    new conversation.
    """
    decisions = [check_daily_message_limit(user, plan, now)]
    if new_conversation:
        decisions.append(check_active_conversation_limit(user, plan))

    for decision in decisions:
        if decision.allowed:
            continue
        quota_denials_total.inc(labels={"kind": decision.kind})
        if decision.kind == QuotaExceededError.DAILY_MESSAGE_LIMIT:
            message = f"Daily message limit reached ({decision.limit} messages per day on the {plan.tier} plan)"
        else:
            message = f"Active conversation limit reached ({decision.limit} on the {plan.tier} plan)"
        raise QuotaExceededError(message, kind=decision.kind, limits=current_plan_limits(user, plan, now))


def enforce_feature(plan: Plan, feature: str) -> None:
    if not check_feature_access(plan, feature):
        raise FeatureForbiddenError(
            f"Feature '{feature}' is not available on the {plan.tier} plan",
            feature=feature,
        )


def enforce_backend_access(user: User, plan: Plan, requested_backend: Optional[str], *, policy: str = "reject") -> str:
    """Return the backend to use, or raise FeatureForbiddenError."""
    decision = check_backend_access(user, plan, requested_backend, policy=policy)
    if not decision.allowed:
        raise FeatureForbiddenError(
            f"Model provider '{decision.requested}' is not available on the {plan.tier} plan",
            feature=decision.feature or decision.requested,
        )
    return decision.backend

"""
chatgate/features/chat/service.py

Governed chat turn: resolve plan, guard quotas, assemble history,
generate under the length contract, then persist turn + usage together.

Every check that can reject the request runs before the model is called,
so rejected requests leave no trace. Usage is written only after the
model produced output (compliant or fallback).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from chatgate.core.config import Settings, settings as default_settings
from chatgate.core.errors import AppError, NotFoundError, ValidationError
from chatgate.core.logging import log_event
from chatgate.core.metrics import chat_requests_total
from chatgate.core.database import as_utc, utcnow
from chatgate.features.ai.backends import ModelDispatcher
from chatgate.features.ai.compliance import ComplianceResult, run_length_compliance
from chatgate.features.conversations.history import assemble_prompt
from chatgate.features.conversations.service import persist_exchange
from chatgate.features.plans.service import resolve_plan
from chatgate.features.quota.service import (
    HOSTED_BACKEND,
    current_plan_limits,
    enforce_backend_access,
    enforce_message_quota,
)
from chatgate.features.users.service import get_user
from chatgate.models.conversation import Message
from chatgate.models.plan import Plan, PlanTable
from chatgate.models.user import User


@dataclass(frozen=True)
class GovernancePolicy:
    max_attempts: int = 3
    fallback_message: str = "Sorry, I couldn't produce a short enough answer."
    language: Optional[str] = None
    backend_policy: str = "reject"
    title_max_chars: int = 50

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "GovernancePolicy":
        cfg = cfg or default_settings
        return cls(
            max_attempts=cfg.LENGTH_MAX_ATTEMPTS,
            fallback_message=cfg.LENGTH_FALLBACK_MESSAGE,
            language=cfg.SYSTEM_PROMPT_LANGUAGE,
            backend_policy=cfg.FORBIDDEN_BACKEND_POLICY,
            title_max_chars=cfg.TITLE_MAX_CHARS,
        )


@dataclass(frozen=True)
class ChatOutcome:
    response: str
    conversation_id: str
    model_provider: str
    created_conversation: bool
    generation: ComplianceResult
    plan: Plan
    user: User
    limits: Dict[str, Any]

    def as_payload(self) -> Dict[str, str]:
        return {
            "response": self.response,
            "conversationId": self.conversation_id,
            "modelProvider": self.model_provider,
        }


async def handle_chat_message(
    user_id: str,
    message: str,
    *,
    dispatcher: ModelDispatcher,
    conversation_id: Optional[str] = None,
    model_provider: Optional[str] = None,
    plan_table: Optional[PlanTable] = None,
    policy: Optional[GovernancePolicy] = None,
    now: Optional[datetime] = None,
) -> ChatOutcome:
    """Run one governed chat turn for an authenticated user.

    Raises:
        ValidationError: empty message
        NotFoundError: unknown user, or conversation missing / not owned
        QuotaExceededError: daily or active-conversation cap reached
        FeatureForbiddenError: backend not granted by the plan (reject policy)
        GenerationError: backend failure (nothing is persisted)
    """
    policy = policy or GovernancePolicy.from_settings()
    text = (message or "").strip()
    if not text:
        raise ValidationError("message must not be empty")

    received_at = as_utc(now or utcnow())
    try:
        user = get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        plan = resolve_plan(user, plan_table, now=received_at)
        enforce_message_quota(user, plan, new_conversation=conversation_id is None, now=received_at)
        backend = enforce_backend_access(
            user, plan, model_provider or HOSTED_BACKEND, policy=policy.backend_policy
        )
        prompt = assemble_prompt(user_id, conversation_id, text, plan, language=policy.language)

        generation = await run_length_compliance(
            dispatcher,
            backend,
            prompt,
            plan.max_response_length,
            fallback_message=policy.fallback_message,
            max_attempts=policy.max_attempts,
            user_id=user_id,
        )

        persisted = persist_exchange(
            conversation_id,
            Message(role="user", content=text, created_at=received_at),
            Message(role="assistant", content=generation.content, created_at=utcnow()),
            user_id,
            now=received_at,
            title_max_chars=policy.title_max_chars,
        )
    except AppError as exc:
        chat_requests_total.inc(labels={"outcome": exc.code})
        raise

    refreshed = get_user(user_id) or user
    chat_requests_total.inc(labels={"outcome": "fallback" if generation.used_fallback else "ok"})
    log_event(
        "info",
        "chat.turn",
        user_id=user_id,
        conversation_id=persisted.conversation_id,
        event_type="chat_turn",
        extra={
            "backend": backend,
            "tier": plan.tier,
            "attempts": generation.attempts,
            "outcome": generation.outcome.value,
            "prior_turns": prompt.prior_turns,
            "new_conversation": persisted.created,
        },
    )
    return ChatOutcome(
        response=generation.content,
        conversation_id=persisted.conversation_id,
        model_provider=backend,
        created_conversation=persisted.created,
        generation=generation,
        plan=plan,
        user=refreshed,
        limits=current_plan_limits(refreshed, plan, received_at),
    )

"""
Length-compliance loop.

Calls the model until its reply fits the plan's character budget, adding
a corrective directive after each overflow. After `max_attempts` calls
without a compliant reply the canned fallback message is returned.
Backend failures are not retried here; they propagate as GenerationError.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from chatgate.core.logging import log_event
from chatgate.core.metrics import length_retries_total, length_fallbacks_total
from chatgate.features.ai.backends import ModelDispatcher
from chatgate.features.ai.prompts import corrective_directive
from chatgate.features.conversations.history import AssembledPrompt


DEFAULT_MAX_ATTEMPTS = 3


class LoopOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    FALLBACK_EXHAUSTED = "FALLBACK_EXHAUSTED"


@dataclass
class LoopState:
    attempt: int = 0
    last_measured_length: Optional[int] = None
    suffix: str = ""


@dataclass(frozen=True)
class ComplianceResult:
    content: str
    outcome: LoopOutcome
    attempts: int
    last_measured_length: Optional[int]

    @property
    def used_fallback(self) -> bool:
        return self.outcome == LoopOutcome.FALLBACK_EXHAUSTED


def _fit(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit]


async def run_length_compliance(
    dispatcher: ModelDispatcher,
    backend: str,
    prompt: AssembledPrompt,
    max_response_length: int,
    *,
    fallback_message: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    user_id: Optional[str] = None,
) -> ComplianceResult:
    """Drive the dispatcher until the reply fits `max_response_length`.

    `max_response_length <= 0` accepts the first reply as-is.
    """
    max_attempts = max(1, max_attempts)
    state = LoopState()

    while state.attempt < max_attempts:
        content = await dispatcher.dispatch(backend, prompt.segments(state.suffix))
        state.attempt += 1
        state.last_measured_length = len(content)

        if max_response_length <= 0 or state.last_measured_length <= max_response_length:
            return ComplianceResult(
                content=content,
                outcome=LoopOutcome.ACCEPTED,
                attempts=state.attempt,
                last_measured_length=state.last_measured_length,
            )

        log_event(
            "info",
            "length.overflow",
            user_id=user_id,
            event_type="length_compliance",
            extra={
                "attempt": state.attempt,
                "max_attempts": max_attempts,
                "measured": state.last_measured_length,
                "limit": max_response_length,
                "backend": backend,
            },
        )
        if state.attempt < max_attempts:
            length_retries_total.inc()
            state.suffix = corrective_directive(state.last_measured_length, max_response_length)

    length_fallbacks_total.inc()
    log_event(
        "warning",
        "length.fallback",
        user_id=user_id,
        event_type="length_compliance",
        extra={"attempts": state.attempt, "measured": state.last_measured_length, "limit": max_response_length},
    )
    return ComplianceResult(
        content=_fit(fallback_message, max_response_length),
        outcome=LoopOutcome.FALLBACK_EXHAUSTED,
        attempts=state.attempt,
        last_measured_length=state.last_measured_length,
    )

"""
History assembler.

Linearizes a conversation into role-tagged prompt segments:
system instruction, prior turns in stored order, then the new user
message carrying the terminal length directive.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from chatgate.core.errors import NotFoundError
from chatgate.features.ai.prompts import system_instruction, terminal_directive
from chatgate.features.conversations.service import find_conversation
from chatgate.models.conversation import PromptSegment, Role
from chatgate.models.plan import Plan


@dataclass(frozen=True)
class AssembledPrompt:
    history: Tuple[PromptSegment, ...]
    user_message: str
    directive: str = ""
    system: Optional[PromptSegment] = None
    prior_turns: int = field(default=0)

    def segments(self, suffix: str = "") -> List[PromptSegment]:
        """Full segment list; `suffix` is appended to the user segment."""
        content = self.user_message
        for extra in (self.directive, suffix):
            if extra:
                content = f"{content}\n\n{extra}"
        out: List[PromptSegment] = []
        if self.system is not None:
            out.append(self.system)
        out.extend(self.history)
        out.append(PromptSegment(role=Role.USER, content=content))
        return out


def assemble_prompt(
    owner_id: str,
    conversation_id: Optional[str],
    message: str,
    plan: Plan,
    *,
    language: Optional[str] = None,
) -> AssembledPrompt:
    """Build the prompt for a new message.

    Raises:
        NotFoundError: conversation_id given but missing or owned by someone else
    """
    history: Tuple[PromptSegment, ...] = ()
    if conversation_id is not None:
        conversation = find_conversation(conversation_id, owner_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        history = tuple(
            PromptSegment(role=Role(turn.role), content=turn.content) for turn in conversation.messages
        )

    instruction = system_instruction(plan.max_response_length, language)
    return AssembledPrompt(
        history=history,
        user_message=message,
        directive=terminal_directive(plan.max_response_length),
        system=PromptSegment(role=Role.SYSTEM, content=instruction) if instruction else None,
        prior_turns=len(history),
    )

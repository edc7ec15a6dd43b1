from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """One turn. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str
    created_at: datetime


class Conversation(BaseModel):
    """Ordered, append-only turn log owned by exactly one user."""
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: List[Message] = Field(default_factory=list)


class PromptSegment(BaseModel):
    """Backend-agnostic, role-tagged piece of an assembled prompt."""
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    def as_chat_message(self) -> dict:
        return {"role": self.role.value, "content": self.content}


class ChatRequest(BaseModel):
    message: str
    conversationId: Optional[str] = None
    modelProvider: Literal["hosted", "self-hosted"] = "hosted"

    @field_validator("message")
    @classmethod
    def message_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("message is required")
        return value

    @field_validator("conversationId")
    @classmethod
    def blank_conversation_is_new(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class ChatResponse(BaseModel):
    response: str
    conversationId: str
    modelProvider: str


class RenameRequest(BaseModel):
    title: str

    @field_validator("title")
    @classmethod
    def title_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("title is required")
        return value.strip()

"""
chatgate/features/conversations/service.py

Conversation store gateway.

Handles:
- Owner-scoped reads (get, list) that treat foreign ids as missing
- Appending a user/assistant turn pair, creating the conversation lazily
- Recording usage counters with a single conditional UPDATE
- persist_exchange(): both writes in one transaction
- Rename and delete (delete releases an active-conversation slot)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4
import logging

from sqlalchemy import and_, select, insert, update, delete, func, case

from chatgate.core.database import (
    get_db_session,
    conversations,
    conversation_messages,
    users,
    as_utc,
    utcnow,
)
from chatgate.core.errors import NotFoundError
from chatgate.features.quota.service import start_of_day
from chatgate.models.conversation import Conversation, Message


logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"
_TICK = timedelta(microseconds=1)


@dataclass(frozen=True)
class PersistResult:
    conversation_id: str
    created: bool


def derive_title(message: str, max_chars: int = 50) -> str:
    """Title from a prefix of the first user message, collapsed to one line."""
    text = " ".join((message or "").split())
    if not text:
        return DEFAULT_TITLE
    if len(text) <= max_chars:
        return text
    return text[: max(1, max_chars - 3)].rstrip() + "..."


def _row_to_conversation(row, messages: Optional[List[Message]] = None) -> Conversation:
    return Conversation(
        conversation_id=row.conversation_id,
        user_id=row.user_id,
        title=row.title,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        messages=messages or [],
    )


def _owned_row(session, conversation_id: str, owner_id: str):
    return session.execute(
        select(conversations)
        .where(conversations.c.conversation_id == conversation_id)
        .where(conversations.c.user_id == owner_id)
    ).first()


def _load_messages(session, conversation_id: str) -> List[Message]:
    rows = session.execute(
        select(conversation_messages)
        .where(conversation_messages.c.conversation_id == conversation_id)
        .order_by(conversation_messages.c.position)
    ).all()
    return [Message(role=row.role, content=row.content, created_at=as_utc(row.created_at)) for row in rows]


def _not_found(conversation_id: str) -> NotFoundError:
    return NotFoundError(f"Conversation {conversation_id} not found")


def find_conversation(conversation_id: str, owner_id: str, *, session=None) -> Optional[Conversation]:
    """Owned conversation with messages, or None (also for other owners' ids)."""
    if session is None:
        with get_db_session() as own_session:
            return find_conversation(conversation_id, owner_id, session=own_session)
    row = _owned_row(session, conversation_id, owner_id)
    if not row:
        return None
    return _row_to_conversation(row, _load_messages(session, conversation_id))


def get_conversation(conversation_id: str, owner_id: str) -> Conversation:
    conversation = find_conversation(conversation_id, owner_id)
    if conversation is None:
        raise _not_found(conversation_id)
    return conversation


def list_conversations(owner_id: str) -> List[Conversation]:
    """Caller's conversations, most recently updated first (messages omitted)."""
    with get_db_session() as session:
        rows = session.execute(
            select(conversations)
            .where(conversations.c.user_id == owner_id)
            .order_by(conversations.c.updated_at.desc())
        ).all()
        return [_row_to_conversation(row) for row in rows]


def rename_conversation(conversation_id: str, owner_id: str, title: str) -> Conversation:
    with get_db_session() as session:
        row = _owned_row(session, conversation_id, owner_id)
        if not row:
            raise _not_found(conversation_id)
        session.execute(
            update(conversations)
            .where(conversations.c.conversation_id == conversation_id)
            .values(title=title.strip())
        )
        return find_conversation(conversation_id, owner_id, session=session)


def delete_conversation(conversation_id: str, owner_id: str) -> None:
    """Delete an owned conversation and release one active-conversation slot."""
    with get_db_session() as session:
        row = _owned_row(session, conversation_id, owner_id)
        if not row:
            raise _not_found(conversation_id)
        session.execute(
            delete(conversation_messages).where(conversation_messages.c.conversation_id == conversation_id)
        )
        session.execute(delete(conversations).where(conversations.c.conversation_id == conversation_id))
        session.execute(
            update(users)
            .where(users.c.user_id == owner_id)
            .values(
                active_conversations=case(
                    (users.c.active_conversations > 0, users.c.active_conversations - 1),
                    else_=0,
                ),
                updated_at=utcnow(),
            )
        )
    logger.info("[conversations] deleted", extra={"user_id": owner_id, "conversation_id": conversation_id})


def append_turn(
    conversation_id: Optional[str],
    user_turn: Message,
    assistant_turn: Message,
    owner_id: str,
    *,
    session,
    now: Optional[datetime] = None,
    title_max_chars: int = 50,
) -> Tuple[str, bool]:
    """Append a user/assistant pair; returns (conversation_id, created).

    With no conversation_id a new conversation is created, titled from
    the user message. Otherwise the conversation must belong to owner_id.
    `updated_at` strictly increases on every append.
    """
    now = as_utc(now or utcnow())
    created = conversation_id is None

    if created:
        conversation_id = str(uuid4())
        session.execute(
            insert(conversations).values(
                conversation_id=conversation_id,
                user_id=owner_id,
                title=derive_title(user_turn.content, title_max_chars),
                created_at=now,
                updated_at=now,
            )
        )
        next_position = 0
    else:
        row = _owned_row(session, conversation_id, owner_id)
        if not row:
            raise _not_found(conversation_id)
        previous = as_utc(row.updated_at)
        bumped = now if previous is None or now > previous else previous + _TICK
        session.execute(
            update(conversations)
            .where(conversations.c.conversation_id == conversation_id)
            .values(updated_at=bumped)
        )
        last_position = session.execute(
            select(func.max(conversation_messages.c.position))
            .where(conversation_messages.c.conversation_id == conversation_id)
        ).scalar()
        next_position = 0 if last_position is None else last_position + 1

    session.execute(
        insert(conversation_messages),
        [
            {
                "conversation_id": conversation_id,
                "position": next_position + offset,
                "role": turn.role,
                "content": turn.content,
                "created_at": as_utc(turn.created_at),
            }
            for offset, turn in enumerate((user_turn, assistant_turn))
        ],
    )
    return conversation_id, created


def record_usage(
    user_id: str,
    *,
    created_conversation: bool,
    session,
    now: Optional[datetime] = None,
) -> None:
    """Count one message (and a new conversation if one was opened).

    Single conditional UPDATE: the counter increments when the last
    message falls on today's UTC date and resets to 1 otherwise
    (a future-dated last message included).
    """
    now = as_utc(now or utcnow())
    day_start = start_of_day(now)
    same_day = and_(
        users.c.last_message_date >= day_start,
        users.c.last_message_date < day_start + timedelta(days=1),
    )
    values = {
        "daily_message_count": case(
            (same_day, users.c.daily_message_count + 1),
            else_=1,
        ),
        "last_message_date": now,
        "updated_at": now,
    }
    if created_conversation:
        values["active_conversations"] = users.c.active_conversations + 1
    result = session.execute(update(users).where(users.c.user_id == user_id).values(**values))
    if result.rowcount == 0:
        raise NotFoundError(f"User {user_id} not found")


def persist_exchange(
    conversation_id: Optional[str],
    user_turn: Message,
    assistant_turn: Message,
    owner_id: str,
    *,
    now: Optional[datetime] = None,
    title_max_chars: int = 50,
) -> PersistResult:
    """Append the turn pair and record usage as one transaction."""
    now = as_utc(now or utcnow())
    with get_db_session() as session:
        cid, created = append_turn(
            conversation_id,
            user_turn,
            assistant_turn,
            owner_id,
            session=session,
            now=now,
            title_max_chars=title_max_chars,
        )
        record_usage(owner_id, created_conversation=created, session=session, now=now)

    logger.info(
        "[conversations] exchange persisted",
        extra={"user_id": owner_id, "conversation_id": cid, "new_conversation": created},
    )
    return PersistResult(conversation_id=cid, created=created)

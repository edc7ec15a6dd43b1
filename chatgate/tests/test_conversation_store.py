"""
Tests for the conversation store: append, ownership, usage counters, delete.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from chatgate.core.database import get_db_session, users
from chatgate.core.errors import NotFoundError
from chatgate.features.conversations.service import (
    append_turn,
    delete_conversation,
    derive_title,
    find_conversation,
    get_conversation,
    list_conversations,
    persist_exchange,
    record_usage,
    rename_conversation,
)
from chatgate.features.users.service import get_user
from chatgate.models.conversation import Message
from chatgate.tests.factories import create_user, row_counts


NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


def _pair(user_text: str, reply: str, at: datetime = NOW):
    return (
        Message(role="user", content=user_text, created_at=at),
        Message(role="assistant", content=reply, created_at=at),
    )


def test_new_exchange_creates_conversation_and_counts_usage():
    user = create_user("alice")
    result = persist_exchange(None, *_pair("Hello there", "Hi!"), user.user_id, now=NOW)

    assert result.created is True
    conversation = get_conversation(result.conversation_id, "alice")
    assert conversation.title == "Hello there"
    assert [(m.role, m.content) for m in conversation.messages] == [("user", "Hello there"), ("assistant", "Hi!")]

    refreshed = get_user("alice")
    assert refreshed.daily_message_count == 1
    assert refreshed.active_conversations == 1
    assert refreshed.last_message_date == NOW


def test_appending_keeps_order_and_does_not_open_a_slot():
    create_user("alice")
    first = persist_exchange(None, *_pair("one", "1"), "alice", now=NOW)
    persist_exchange(first.conversation_id, *_pair("two", "2"), "alice", now=NOW + timedelta(minutes=1))
    result = persist_exchange(first.conversation_id, *_pair("three", "3"), "alice", now=NOW + timedelta(minutes=2))

    assert result.created is False
    contents = [m.content for m in get_conversation(first.conversation_id, "alice").messages]
    assert contents == ["one", "1", "two", "2", "three", "3"]

    user = get_user("alice")
    assert user.daily_message_count == 3
    assert user.active_conversations == 1


def test_updated_at_strictly_increases_even_with_same_clock():
    create_user("alice")
    first = persist_exchange(None, *_pair("one", "1"), "alice", now=NOW)
    before = get_conversation(first.conversation_id, "alice").updated_at

    # Same timestamp, and a clock that went backwards
    persist_exchange(first.conversation_id, *_pair("two", "2"), "alice", now=NOW)
    middle = get_conversation(first.conversation_id, "alice").updated_at
    persist_exchange(first.conversation_id, *_pair("three", "3"), "alice", now=NOW - timedelta(seconds=5))
    after = get_conversation(first.conversation_id, "alice").updated_at

    assert before < middle < after


def test_foreign_conversation_is_not_found():
    create_user("alice")
    create_user("mallory")
    owned = persist_exchange(None, *_pair("secret", "ok"), "alice", now=NOW)

    assert find_conversation(owned.conversation_id, "mallory") is None
    with pytest.raises(NotFoundError):
        get_conversation(owned.conversation_id, "mallory")
    with pytest.raises(NotFoundError):
        persist_exchange(owned.conversation_id, *_pair("hijack", "no"), "mallory", now=NOW)

    # Nothing was written for the intruder
    assert row_counts()["messages"] == 2
    assert get_user("mallory").daily_message_count == 0


def test_missing_conversation_is_not_found():
    create_user("alice")
    with pytest.raises(NotFoundError):
        persist_exchange("does-not-exist", *_pair("hello", "hi"), "alice", now=NOW)
    assert row_counts() == {"conversations": 0, "messages": 0}


def test_usage_counter_resets_on_a_new_day():
    create_user("alice", daily_message_count=17, last_message_date=NOW - timedelta(days=1))
    with get_db_session() as session:
        record_usage("alice", created_conversation=False, session=session, now=NOW)

    user = get_user("alice")
    assert user.daily_message_count == 1
    assert user.last_message_date == NOW


def test_usage_counter_resets_when_last_message_is_future_dated():
    # A worker with a fast clock stamped tomorrow; today's guard saw a fresh day
    create_user("alice", daily_message_count=20, last_message_date=NOW + timedelta(days=1))
    with get_db_session() as session:
        record_usage("alice", created_conversation=False, session=session, now=NOW)

    assert get_user("alice").daily_message_count == 1


def test_exchange_with_offset_clock_is_counted_on_its_utc_day():
    # 01:00 at UTC+2 is 23:00 UTC on the previous day
    local = timezone(timedelta(hours=2))
    sent_at = datetime(2026, 10, 19, 1, 0, tzinfo=local)
    create_user("alice")
    user_turn, assistant_turn = _pair("Hello", "Hi", at=sent_at)

    persist_exchange(None, user_turn, assistant_turn, "alice", now=sent_at)

    user = get_user("alice")
    assert user.last_message_date == datetime(2026, 10, 18, 23, 0, tzinfo=timezone.utc)
    assert user.daily_message_count == 1


def test_usage_counter_increments_on_the_same_day():
    create_user("alice", daily_message_count=4, last_message_date=NOW - timedelta(hours=2))
    with get_db_session() as session:
        record_usage("alice", created_conversation=True, session=session, now=NOW)

    user = get_user("alice")
    assert user.daily_message_count == 5
    assert user.active_conversations == 1


def test_usage_counter_starts_at_one_for_first_message():
    create_user("alice")
    with get_db_session() as session:
        record_usage("alice", created_conversation=False, session=session, now=NOW)
    assert get_user("alice").daily_message_count == 1


def test_record_usage_for_unknown_user_raises():
    with pytest.raises(NotFoundError):
        with get_db_session() as session:
            record_usage("ghost", created_conversation=False, session=session, now=NOW)


def test_turn_and_usage_commit_together():
    create_user("alice")
    user_turn, reply = _pair("hello", "hi")

    with pytest.raises(NotFoundError):
        with get_db_session() as session:
            append_turn(None, user_turn, reply, "alice", session=session, now=NOW)
            # Usage write fails: the appended turn must roll back with it
            record_usage("ghost", created_conversation=True, session=session, now=NOW)

    assert row_counts() == {"conversations": 0, "messages": 0}
    assert get_user("alice").active_conversations == 0


def test_list_orders_by_most_recent_activity():
    create_user("alice", tier="business")
    older = persist_exchange(None, *_pair("older", "a"), "alice", now=NOW)
    newer = persist_exchange(None, *_pair("newer", "b"), "alice", now=NOW + timedelta(minutes=1))
    assert [c.conversation_id for c in list_conversations("alice")] == [newer.conversation_id, older.conversation_id]

    persist_exchange(older.conversation_id, *_pair("again", "c"), "alice", now=NOW + timedelta(minutes=2))
    assert [c.conversation_id for c in list_conversations("alice")] == [older.conversation_id, newer.conversation_id]
    assert list_conversations("someone-else") == []


def test_rename_conversation():
    create_user("alice")
    result = persist_exchange(None, *_pair("hello", "hi"), "alice", now=NOW)
    renamed = rename_conversation(result.conversation_id, "alice", "  Greetings  ")
    assert renamed.title == "Greetings"
    assert len(renamed.messages) == 2

    with pytest.raises(NotFoundError):
        rename_conversation(result.conversation_id, "bob", "Mine now")


def test_delete_releases_slot_and_never_goes_negative():
    create_user("alice")
    result = persist_exchange(None, *_pair("hello", "hi"), "alice", now=NOW)
    assert get_user("alice").active_conversations == 1

    delete_conversation(result.conversation_id, "alice")
    assert get_user("alice").active_conversations == 0
    assert row_counts() == {"conversations": 0, "messages": 0}

    with pytest.raises(NotFoundError):
        delete_conversation(result.conversation_id, "alice")


def test_delete_with_zero_counter_stays_at_zero():
    create_user("alice")
    result = persist_exchange(None, *_pair("hello", "hi"), "alice", now=NOW)
    with get_db_session() as session:
        session.execute(update(users).where(users.c.user_id == "alice").values(active_conversations=0))

    delete_conversation(result.conversation_id, "alice")
    assert get_user("alice").active_conversations == 0


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Short question", "Short question"),
        ("  spaced\n\nout   words ", "spaced out words"),
        ("", "New conversation"),
        ("x" * 60, "x" * 47 + "..."),
    ],
)
def test_derive_title(message, expected):
    assert derive_title(message, 50) == expected

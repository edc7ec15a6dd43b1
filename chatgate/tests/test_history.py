"""Tests for prompt assembly from stored history."""

from datetime import datetime, timezone

import pytest

from chatgate.core.config import Settings
from chatgate.core.errors import NotFoundError
from chatgate.features.conversations.history import assemble_prompt
from chatgate.features.conversations.service import persist_exchange
from chatgate.features.plans.service import build_plan_table
from chatgate.models.conversation import Message, Role
from chatgate.models.plan import Plan, PlanFeatures
from chatgate.tests.factories import create_user


NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
FREE = build_plan_table(Settings()).get("free")


def _exchange(cid, text, reply):
    return persist_exchange(
        cid,
        Message(role="user", content=text, created_at=NOW),
        Message(role="assistant", content=reply, created_at=NOW),
        "alice",
        now=NOW,
    )


def test_new_conversation_has_only_system_and_user_segments():
    prompt = assemble_prompt("alice", None, "What is 2+2?", FREE)
    segments = prompt.segments()

    assert [s.role for s in segments] == [Role.SYSTEM, Role.USER]
    assert "12000 characters" in segments[0].content
    assert segments[-1].content.startswith("What is 2+2?")
    assert "(Reply in at most 12000 characters.)" in segments[-1].content
    assert prompt.prior_turns == 0


def test_prior_turns_are_replayed_in_order():
    create_user("alice", tier="pro")
    first = _exchange(None, "Hello", "Hi!")
    _exchange(first.conversation_id, "How are you?", "Fine.")

    prompt = assemble_prompt("alice", first.conversation_id, "Great", FREE)
    segments = prompt.segments()

    assert prompt.prior_turns == 4
    assert [(s.role, s.content) for s in segments[1:5]] == [
        (Role.USER, "Hello"),
        (Role.ASSISTANT, "Hi!"),
        (Role.USER, "How are you?"),
        (Role.ASSISTANT, "Fine."),
    ]
    assert segments[-1].role == Role.USER
    assert segments[-1].content.startswith("Great")


def test_corrective_suffix_is_appended_to_user_segment():
    prompt = assemble_prompt("alice", None, "Explain", FREE)
    content = prompt.segments("(shorter please)")[-1].content
    assert content.endswith("\n\n(shorter please)")
    # The stored history is never altered by a suffix
    assert prompt.segments()[-1].content.endswith("characters.)")


def test_unbounded_plan_has_no_length_directive():
    plan = Plan(
        tier="custom",
        name="Custom",
        daily_message_limit=-1,
        max_active_conversations=-1,
        max_response_length=0,
        features=PlanFeatures(),
    )
    prompt = assemble_prompt("alice", None, "Tell me everything", plan)
    segments = prompt.segments()
    assert segments[-1].content == "Tell me everything"
    assert "characters" not in segments[0].content


def test_language_instruction_is_included():
    prompt = assemble_prompt("alice", None, "Bonjour", FREE, language="French")
    assert "Always reply in French." in prompt.segments()[0].content


def test_foreign_conversation_raises_not_found():
    create_user("alice")
    create_user("bob")
    owned = _exchange(None, "private", "ok")

    with pytest.raises(NotFoundError):
        assemble_prompt("bob", owned.conversation_id, "peek", FREE)
    with pytest.raises(NotFoundError):
        assemble_prompt("alice", "missing-id", "hello", FREE)

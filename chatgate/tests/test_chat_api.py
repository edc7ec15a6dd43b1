"""Tests for the chat, usage and conversation HTTP contracts."""

from datetime import datetime, timedelta, timezone

import jwt

from chatgate.core.errors import GenerationError
from chatgate.features.users.service import get_user
from chatgate.tests.factories import create_user, row_counts


def _headers(user_id: str) -> dict:
    return {"X-User-Id": user_id}


def _chat(client, user_id, message="Hello", **extra):
    return client.post("/api/chat", headers=_headers(user_id), json={"message": message, **extra})


def test_chat_success_returns_payload_and_usage_headers(app_client):
    client, backends = app_client

    resp = _chat(client, "api-user")

    assert resp.status_code == 200
    body = resp.json()
    assert body["response"] == "Hi! How can I help?"
    assert body["modelProvider"] == "hosted"
    assert body["conversationId"]
    assert resp.headers["X-Subscription-Tier"] == "free"
    assert resp.headers["X-Daily-Messages-Remaining"] == "19"
    assert resp.headers["X-Active-Conversations-Remaining"] == "0"
    assert resp.headers.get("x-request-id")
    assert len(backends["hosted"].calls) == 1


def test_unknown_caller_is_created_on_free_tier(app_client):
    client, _ = app_client
    assert get_user("newcomer") is None

    assert _chat(client, "newcomer").status_code == 200
    assert get_user("newcomer").subscription_tier == "free"


def test_business_headers_report_unlimited(app_client):
    client, _ = app_client
    create_user("boss", tier="business")

    resp = _chat(client, "boss")
    assert resp.headers["X-Subscription-Tier"] == "business"
    assert resp.headers["X-Daily-Messages-Remaining"] == "unlimited"
    assert resp.headers["X-Active-Conversations-Remaining"] == "unlimited"


def test_missing_identity_is_401(app_client):
    client, backends = app_client
    resp = client.post("/api/chat", json={"message": "Hello"})

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"
    assert backends["hosted"].calls == []


def test_bearer_token_identifies_caller(app_client):
    client, _ = app_client
    token = jwt.encode(
        {"sub": "jwt-user", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        "test-secret",
        algorithm="HS256",
    )

    resp = client.post("/api/chat", headers={"Authorization": f"Bearer {token}"}, json={"message": "Hi"})
    assert resp.status_code == 200
    assert get_user("jwt-user") is not None


def test_invalid_bearer_token_is_401(app_client):
    client, _ = app_client
    token = jwt.encode({"sub": "jwt-user"}, "some-other-secret", algorithm="HS256")

    resp = client.post("/api/chat", headers={"Authorization": f"Bearer {token}"}, json={"message": "Hi"})
    assert resp.status_code == 401
    assert get_user("jwt-user") is None


def test_blank_message_is_400(app_client):
    client, backends = app_client
    resp = _chat(client, "api-user", message="   ")

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["request_id"] == resp.headers["x-request-id"]
    assert backends["hosted"].calls == []


def test_unknown_model_provider_is_400(app_client):
    client, _ = app_client
    resp = _chat(client, "api-user", modelProvider="gpt-9")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_daily_quota_is_429_with_limits(app_client):
    client, backends = app_client
    create_user("capped", daily_message_count=20, last_message_date=datetime.now(timezone.utc))

    resp = _chat(client, "capped")

    assert resp.status_code == 429
    error = resp.json()["error"]
    assert error["code"] == "quota_exceeded"
    assert error["kind"] == "daily_message_limit"
    assert error["limits"]["dailyMessageLimit"] == 20
    assert error["limits"]["remaining"]["dailyMessages"] == 0
    assert error["limits"]["maxActiveConversations"] == 1
    assert backends["hosted"].calls == []
    assert row_counts() == {"conversations": 0, "messages": 0}


def test_active_conversation_quota_is_429(app_client):
    client, _ = app_client
    assert _chat(client, "busy").status_code == 200

    resp = _chat(client, "busy", message="A second thread")
    assert resp.status_code == 429
    assert resp.json()["error"]["kind"] == "active_conversation_limit"


def test_self_hosted_on_free_tier_is_403(app_client):
    client, backends = app_client
    resp = _chat(client, "api-user", modelProvider="self-hosted")

    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "feature_forbidden"
    assert error["feature"] == "self_hosted_model"
    assert backends["self-hosted"].calls == []


def test_self_hosted_on_pro_tier(app_client):
    client, backends = app_client
    create_user("pro-user", tier="pro")

    resp = _chat(client, "pro-user", modelProvider="self-hosted")
    assert resp.status_code == 200
    assert resp.json() == {
        "response": "Hello from the local model.",
        "conversationId": resp.json()["conversationId"],
        "modelProvider": "self-hosted",
    }


def test_foreign_conversation_is_404(app_client):
    client, _ = app_client
    owned = _chat(client, "owner").json()["conversationId"]

    resp = _chat(client, "intruder", conversationId=owned)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"
    assert get_user("intruder").daily_message_count == 0


def test_generation_failure_is_502_without_detail(app_client):
    client, backends = app_client
    backends["hosted"].replies = [GenerationError("upstream said: secret internal detail", backend="hosted")]

    resp = _chat(client, "api-user")

    assert resp.status_code == 502
    error = resp.json()["error"]
    assert error["code"] == "generation_failed"
    assert "secret" not in error["message"]
    assert get_user("api-user").daily_message_count == 0


def test_unexpected_failure_is_generic_500(app_client):
    client, backends = app_client
    backends["hosted"].replies = [RuntimeError("database password is hunter2")]

    resp = _chat(client, "api-user")

    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "internal_error"
    assert error["message"] == "Unexpected error"


def test_usage_endpoint_reports_counters_and_limits(app_client):
    client, _ = app_client
    _chat(client, "api-user")

    resp = client.get("/api/user/usage", headers=_headers("api-user"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["tier"] == "free"
    assert body["usage"]["dailyMessageCount"] == 1
    assert body["usage"]["activeConversations"] == 1
    assert body["usage"]["lastMessageDate"] is not None
    assert body["limits"]["remaining"] == {"dailyMessages": 19, "activeConversations": 0}
    assert body["limits"]["features"]["export"]["enabled"] is False


def test_usage_endpoint_treats_stale_day_as_zero(app_client):
    client, _ = app_client
    create_user("yesterday", daily_message_count=20, last_message_date=datetime.now(timezone.utc) - timedelta(days=1))

    body = client.get("/api/user/usage", headers=_headers("yesterday")).json()
    assert body["usage"]["dailyMessageCount"] == 0
    assert body["limits"]["remaining"]["dailyMessages"] == 20


def test_conversation_management_roundtrip(app_client):
    client, _ = app_client
    create_user("pro-user", tier="pro")
    headers = _headers("pro-user")

    first = _chat(client, "pro-user", message="First topic").json()["conversationId"]
    second = _chat(client, "pro-user", message="Second topic").json()["conversationId"]

    listing = client.get("/api/conversations", headers=headers).json()["data"]
    assert [c["conversation_id"] for c in listing] == [second, first]
    assert "messages" not in listing[0]

    detail = client.get(f"/api/conversations/{first}", headers=headers).json()["data"]
    assert [m["role"] for m in detail["messages"]] == ["user", "assistant"]
    assert detail["title"] == "First topic"

    renamed = client.patch(f"/api/conversations/{first}", headers=headers, json={"title": "Renamed"})
    assert renamed.status_code == 200
    assert renamed.json()["data"]["title"] == "Renamed"

    blank = client.patch(f"/api/conversations/{first}", headers=headers, json={"title": "  "})
    assert blank.status_code == 400

    deleted = client.delete(f"/api/conversations/{first}", headers=headers)
    assert deleted.status_code == 200
    assert get_user("pro-user").active_conversations == 1
    assert client.get(f"/api/conversations/{first}", headers=headers).status_code == 404


def test_conversations_are_owner_scoped(app_client):
    client, _ = app_client
    owned = _chat(client, "owner").json()["conversationId"]
    intruder = _headers("intruder")

    assert client.get(f"/api/conversations/{owned}", headers=intruder).status_code == 404
    assert client.patch(f"/api/conversations/{owned}", headers=intruder, json={"title": "x"}).status_code == 404
    assert client.delete(f"/api/conversations/{owned}", headers=intruder).status_code == 404
    assert client.get("/api/conversations", headers=intruder).json()["data"] == []


def test_export_requires_plan_feature(app_client):
    client, _ = app_client
    owned = _chat(client, "free-user").json()["conversationId"]

    resp = client.get(f"/api/conversations/{owned}/export", headers=_headers("free-user"))
    assert resp.status_code == 403
    assert resp.json()["error"]["feature"] == "export"


def test_export_markdown_and_json(app_client):
    client, _ = app_client
    create_user("pro-user", tier="pro")
    headers = _headers("pro-user")
    cid = _chat(client, "pro-user", message="Explain tides").json()["conversationId"]

    markdown = client.get(f"/api/conversations/{cid}/export", headers=headers)
    assert markdown.status_code == 200
    assert markdown.headers["content-type"].startswith("text/markdown")
    assert f'conversation_{cid}.md' in markdown.headers["content-disposition"]
    assert markdown.text.startswith("# Explain tides")
    assert "## You\n\nExplain tides" in markdown.text
    assert "## Assistant\n\nHi! How can I help?" in markdown.text

    as_json = client.get(f"/api/conversations/{cid}/export", headers=headers, params={"format": "json"})
    assert as_json.status_code == 200
    assert as_json.json()["messages"][1]["content"] == "Hi! How can I help?"

    bad = client.get(f"/api/conversations/{cid}/export", headers=headers, params={"format": "pdf"})
    assert bad.status_code == 400

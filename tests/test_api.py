"""
HTTP API tests through FastAPI's TestClient.
The app runs its real lifespan against a temp database; the provider is
replaced by conftest.FakeBackend.
"""

import json
import time

import pytest
from fastapi.testclient import TestClient

import chatdesk.config as cfg_mod
import chatdesk.main as main

from conftest import FakeBackend


@pytest.fixture
def start_client(cfg, monkeypatch):
    """Returns a factory; the app reads cfg when the client starts."""
    backend = FakeBackend()
    monkeypatch.setattr(cfg_mod, "_config", cfg)
    monkeypatch.setattr(main, "make_backend", lambda cfg=None: backend)

    def start() -> TestClient:
        c = TestClient(main.app)
        c.backend = backend
        return c
    return start


@pytest.fixture
def client(start_client):
    with start_client() as c:
        yield c


def login(client, email="ada@example.com", name="Ada") -> dict:
    resp = client.post("/api/auth/login", json={"email": email, "name": name})
    assert resp.status_code == 200
    return resp.json()


def sse_events(resp) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in resp.text.splitlines()
        if line.startswith("data: ")
    ]


def new_conversation(client, **fields) -> dict:
    resp = client.post("/api/conversations", json=fields)
    assert resp.status_code == 200
    return resp.json()


# ---------------------------------------------------------------------------
# Health / auth
# ---------------------------------------------------------------------------

def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "ready": True, "activeTurns": 0}


def test_requires_login(client):
    """Protected routes answer 401 before sign-in."""
    resp = client.get("/api/conversations")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Please sign in first."}


def test_login_me_logout(client):
    """Dev login normalizes the email, /me follows the session, logout ends it."""
    user = login(client, email="  Ada@Example.com ")
    assert user["email"] == "ada@example.com"
    assert user["isAdmin"] is False

    assert client.get("/api/auth/me").json()["id"] == user["id"]
    # Same email signs in to the same account
    assert login(client)["id"] == user["id"]

    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").status_code == 401


def test_dev_login_disabled(client, cfg):
    """Dev login is refused when turned off in config."""
    cfg["auth"]["dev_login"] = False
    resp = client.post("/api/auth/login", json={"email": "ada@example.com"})
    assert resp.status_code == 403


def test_invalid_body_is_400(client):
    """Malformed JSON bodies get the plain error shape."""
    resp = client.post("/api/auth/login", json={"email": 5})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request"
    assert resp.json()["details"]


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

def test_chat_streams_and_stores(client):
    """Chat streams fragments over SSE and stores both messages."""
    login(client)
    conv = new_conversation(client)

    resp = client.post("/api/chat", json={"message": "Weather in Paris?", "conversationId": conv["id"]})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.headers["x-turn-id"]

    events = sse_events(resp)
    assert [e["content"] for e in events[:-1]] == ["Hel", "lo", "!"]
    assert events[-1]["done"] is True

    detail = client.get(f"/api/conversations/{conv['id']}").json()
    assert [(m["role"], m["content"]) for m in detail["messages"]] == [
        ("user", "Weather in Paris?"),
        ("assistant", "Hello!"),
    ]
    assert events[-1]["messageId"] == detail["messages"][1]["id"]


def test_first_exchange_sets_title(client):
    """The first exchange titles the conversation in the background."""
    login(client)
    conv = new_conversation(client)
    client.post("/api/chat", json={"message": "Weather in Paris?", "conversationId": conv["id"]})

    deadline = time.monotonic() + 3
    title = None
    while time.monotonic() < deadline:
        title = client.get(f"/api/conversations/{conv['id']}").json()["title"]
        if title != "New chat":
            break
        time.sleep(0.02)
    assert title == "Weather in Paris"


def test_chat_validation_errors(client):
    """Empty message, unknown conversation and bad body types are rejected."""
    login(client)
    conv = new_conversation(client)

    empty = client.post("/api/chat", json={"message": "   ", "conversationId": conv["id"]})
    assert empty.status_code == 400

    missing = client.post("/api/chat", json={"message": "hi", "conversationId": "nope"})
    assert missing.status_code == 404

    malformed = client.post("/api/chat", json={"message": "hi", "conversationId": ["x"]})
    assert malformed.status_code == 400


def test_chat_on_foreign_conversation_forbidden(client):
    """Chatting on someone else's conversation is a 403."""
    login(client)
    conv = new_conversation(client)

    login(client, email="bob@example.com", name="Bob")
    resp = client.post("/api/chat", json={"message": "hi", "conversationId": conv["id"]})
    assert resp.status_code == 403
    assert client.get(f"/api/conversations/{conv['id']}").status_code == 403
    assert client.backend.stream_calls == []


def test_chat_without_credential(start_client, cfg):
    """No provider key means 503 before anything is stored."""
    cfg["provider"]["api_key"] = ""
    with start_client() as client:
        login(client)
        conv = new_conversation(client)

        resp = client.post("/api/chat", json={"message": "hi", "conversationId": conv["id"]})
        assert resp.status_code == 503
        assert "API key" in resp.json()["error"]


def test_chat_upstream_failure_is_error_event(client):
    """A provider failure arrives as a single SSE error event."""
    client.backend.handshake_status = 401
    login(client)
    conv = new_conversation(client)

    resp = client.post("/api/chat", json={"message": "hi", "conversationId": conv["id"]})

    assert resp.status_code == 200
    events = sse_events(resp)
    assert len(events) == 1
    assert events[0]["done"] is True
    assert "error" in events[0]


def test_cancel_unknown_turn(client):
    login(client)
    assert client.post("/api/chat/not-a-turn/cancel").status_code == 404


def test_demo_chat_needs_no_login(client):
    """Demo chat works signed out."""
    client.backend.title = "Hi there!"
    resp = client.post("/api/demo/chat", json={"message": "hello"})
    assert resp.status_code == 200
    assert sse_events(resp) == [
        {"content": "Hi there!", "done": False},
        {"content": "", "done": True},
    ]


def test_demo_chat_empty_message(client):
    """Demo chat rejects a blank message."""
    assert client.post("/api/demo/chat", json={"message": ""}).status_code == 400


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def test_conversation_crud(client):
    """Create, read, rename and delete a conversation."""
    login(client)
    conv = new_conversation(client, title="Trip", systemPrompt="Be brief.")
    assert conv["title"] == "Trip"
    assert conv["model"] == "test/model"
    assert conv["systemPrompt"] == "Be brief."

    renamed = client.patch(f"/api/conversations/{conv['id']}", json={"title": "Paris trip"}).json()
    assert renamed["title"] == "Paris trip"
    assert renamed["systemPrompt"] == "Be brief."

    cleared = client.patch(f"/api/conversations/{conv['id']}", json={"systemPrompt": None}).json()
    assert cleared["systemPrompt"] is None

    blank = client.patch(f"/api/conversations/{conv['id']}", json={"title": "  "}).json()
    assert blank["title"] == "New chat"

    assert client.delete(f"/api/conversations/{conv['id']}").json() == {"success": True}
    assert client.get(f"/api/conversations/{conv['id']}").status_code == 404


def test_create_with_client_id(client):
    """A client-chosen id is honoured once, then conflicts."""
    login(client)
    conv = new_conversation(client, id="client-chosen-id")
    assert conv["id"] == "client-chosen-id"

    dup = client.post("/api/conversations", json={"id": "client-chosen-id"})
    assert dup.status_code == 409


def test_pin_and_archive_toggle(client):
    """Pin and archive flip on each call."""
    login(client)
    a = new_conversation(client, title="a")
    b = new_conversation(client, title="b")

    pinned = client.patch(f"/api/conversations/{a['id']}/pin").json()
    assert pinned["isPinned"] is True
    assert [c["title"] for c in client.get("/api/conversations").json()] == ["a", "b"]

    assert client.patch(f"/api/conversations/{a['id']}/pin").json()["isPinned"] is False

    client.patch(f"/api/conversations/{b['id']}/archive")
    assert [c["title"] for c in client.get("/api/conversations").json()] == ["a"]
    assert len(client.get("/api/conversations", params={"archived": "true"}).json()) == 2


def test_conversation_search(client):
    login(client)
    conv = new_conversation(client, title="Misc")
    new_conversation(client, title="Other")
    client.post("/api/chat", json={"message": "Tell me about Paris", "conversationId": conv["id"]})

    found = client.get("/api/conversations", params={"q": "paris"}).json()
    assert [c["id"] for c in found] == [conv["id"]]


def test_list_is_scoped_to_user(client):
    """Users only see their own conversations."""
    login(client)
    new_conversation(client)
    login(client, email="bob@example.com", name="Bob")
    assert client.get("/api/conversations").json() == []


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------

def test_folders(client):
    login(client)
    folder = client.post("/api/folders", json={"name": "Work", "color": "#00f"}).json()
    filed = new_conversation(client, title="filed", folderId=folder["id"])
    new_conversation(client, title="loose")

    listed = client.get("/api/conversations", params={"folderId": folder["id"]}).json()
    assert [c["title"] for c in listed] == ["filed"]
    unfiled = client.get("/api/conversations", params={"folderId": "null"}).json()
    assert [c["title"] for c in unfiled] == ["loose"]

    renamed = client.patch(f"/api/folders/{folder['id']}", json={"name": "Office"}).json()
    assert renamed["name"] == "Office"
    assert [f["name"] for f in client.get("/api/folders").json()] == ["Office"]

    client.delete(f"/api/folders/{folder['id']}")
    assert client.get("/api/folders").json() == []
    assert client.get(f"/api/conversations/{filed['id']}").json()["folderId"] is None


def test_folder_of_other_user_rejected(client):
    """A conversation cannot be filed into another user's folder."""
    login(client)
    folder = client.post("/api/folders", json={"name": "Work"}).json()

    login(client, email="bob@example.com", name="Bob")
    assert client.patch(f"/api/folders/{folder['id']}", json={"name": "Mine"}).status_code == 403
    resp = client.post("/api/conversations", json={"folderId": folder["id"]})
    assert resp.status_code == 403


def test_blank_folder_name_rejected(client):
    """Folder names must not be blank."""
    login(client)
    assert client.post("/api/folders", json={"name": "   "}).status_code == 400


# ---------------------------------------------------------------------------
# Reactions
# ---------------------------------------------------------------------------

def test_reactions(client):
    login(client)
    conv = new_conversation(client)
    done = sse_events(
        client.post("/api/chat", json={"message": "hi", "conversationId": conv["id"]})
    )[-1]
    msg_id = done["messageId"]

    first = client.post(f"/api/messages/{msg_id}/reactions", json={"reaction": "👍"}).json()
    again = client.post(f"/api/messages/{msg_id}/reactions", json={"reaction": "👍"}).json()
    assert first["id"] == again["id"]
    assert len(client.get(f"/api/messages/{msg_id}/reactions").json()) == 1

    too_long = client.post(f"/api/messages/{msg_id}/reactions", json={"reaction": "x" * 11})
    assert too_long.status_code == 400

    client.delete(f"/api/messages/{msg_id}/reactions/👍")
    assert client.get(f"/api/messages/{msg_id}/reactions").json() == []

    login(client, email="bob@example.com", name="Bob")
    assert client.get(f"/api/messages/{msg_id}/reactions").status_code == 403


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

def test_admin_routes_require_admin(client):
    """Admin routes are closed to regular users."""
    login(client)
    assert client.get("/api/admin/stats").status_code == 403


def test_first_make_admin_then_locked(client):
    """Only the first user can promote themselves."""
    login(client)
    resp = client.post("/api/auth/make-admin").json()
    assert resp["user"]["isAdmin"] is True

    login(client, email="bob@example.com", name="Bob")
    assert client.post("/api/auth/make-admin").status_code == 403


def test_admin_stats_users_and_promotion(client):
    """Admins see stats and the user list, and can promote others."""
    login(client, email="bob@example.com", name="Bob")
    login(client)
    client.post("/api/auth/make-admin")

    stats = client.get("/api/admin/stats").json()
    assert stats["totalUsers"] == 2
    assert stats["adminUsers"] == 1
    assert stats["activeTurns"] == 0

    users = client.get("/api/admin/users").json()
    bob = next(u for u in users if u["email"] == "bob@example.com")
    promoted = client.patch(f"/api/admin/users/{bob['id']}/admin", json={"isAdmin": True}).json()
    assert promoted["isAdmin"] is True

    assert client.patch("/api/admin/users/missing/admin", json={"isAdmin": True}).status_code == 404


def test_admin_api_keys(client):
    """Saved keys are masked and switch the key source to admin."""
    login(client)
    client.post("/api/auth/make-admin")

    settings = client.get("/api/admin/settings").json()
    assert settings["providerApiKeySource"] == "config"
    assert settings["defaultModel"] == "test/model"

    saved = client.post(
        "/api/admin/api-keys",
        json={"provider": "openrouter", "apiKey": "sk-or-v1-0123456789abcdef"},
    ).json()
    assert saved["apiKey"] == "sk-or-v1...cdef"
    assert client.get("/api/admin/settings").json()["providerApiKeySource"] == "admin"

    listed = client.get("/api/admin/api-keys").json()
    assert len(listed) == 1
    assert "0123456789" not in json.dumps(listed)

    off = client.patch(f"/api/admin/api-keys/{saved['id']}", json={"isActive": False}).json()
    assert off["isActive"] is False
    assert client.get("/api/admin/settings").json()["providerApiKeySource"] == "config"

    client.delete(f"/api/admin/api-keys/{saved['id']}")
    assert client.get("/api/admin/api-keys").json() == []


def test_stored_key_used_for_chat(client):
    """Chat uses the admin-managed key over the config key."""
    login(client)
    client.post("/api/auth/make-admin")
    client.post("/api/admin/api-keys", json={"provider": "openrouter", "apiKey": "sk-or-stored-key-9999"})
    conv = new_conversation(client)

    client.post("/api/chat", json={"message": "hi", "conversationId": conv["id"]})
    assert client.backend.stream_calls[-1]["api_key"] == "sk-or-stored-key-9999"

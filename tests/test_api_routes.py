import pytest
from fastapi.testclient import TestClient

from chatsync.core.config import settings
from chatsync.core.errors import NetworkFailure
from chatsync.main import create_app
from chatsync.schemas.api import ConversationPage
from chatsync.services.sync_repository import SyncRepository
from conftest import build_message


@pytest.fixture
def client(api, connection, session_store, monkeypatch):
    monkeypatch.setattr(settings, "AUTO_RESTORE_SESSION", False)
    repository = SyncRepository(api, connection, session_store)
    with TestClient(create_app(repository=repository)) as test_client:
        yield test_client


@pytest.fixture
def authed(client):
    resp = client.post("/auth/session", json={"cookie": "connect.sid=abc"})
    assert resp.status_code == 200
    return client


def test_healthz_before_login(client):
    resp = client.get("/healthz")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "connection": "disconnected", "authenticated": False, "online_users": 0}


def test_me_requires_session(client):
    resp = client.get("/auth/me")

    assert resp.status_code == 401
    assert resp.json()["detail"] == "No autenticado"


def test_session_opens_socket(authed, session_store):
    me = authed.get("/auth/me")
    health = authed.get("/healthz").json()

    assert me.json()["id"] == "u1"
    assert session_store.get() == "connect.sid=abc"
    assert health["connection"] == "connected"
    assert health["authenticated"] is True


def test_rejected_session(client, api):
    api.auth = api.auth.model_copy(update={"is_authenticated": False, "user": None})

    resp = client.post("/auth/session", json={"cookie": "connect.sid=bad"})

    assert resp.status_code == 401


def test_network_failure_maps_to_503(authed, api):
    api.errors["list_users"] = NetworkFailure()

    resp = authed.get("/users", params={"refresh": True})

    assert resp.status_code == 503


def test_users_and_conversations(authed):
    users = authed.get("/users").json()
    conversations = authed.get("/messages/conversations").json()

    assert {u["id"] for u in users} == {"u1", "u2", "u3"}
    assert conversations[0]["conversation"]["id"] == "c1"
    assert conversations[0]["other_participant"]["handle"] == "grace"


def test_open_and_send(authed, api):
    api.pages["u2"] = ConversationPage(conversation_id="c1", messages=[build_message("m1")])

    opened = authed.post("/messages/dm/u2/open").json()
    sent = authed.post("/messages/dm/u2", json={"content": "hola"})
    thread = authed.get("/messages/threads/c1").json()

    assert opened["thread_id"] == "c1"
    assert opened["superseded"] is False
    assert [m["id"] for m in opened["messages"]] == ["m1"]
    assert sent.status_code == 200
    assert [m["id"] for m in thread["messages"]] == ["m1", sent.json()["id"]]


def test_blank_message_is_rejected(authed):
    resp = authed.post("/messages/dm/u2", json={"content": "  "})

    assert resp.status_code == 422
    assert resp.json()["detail"] == "Mensaje vacío"


def test_unknown_thread_is_404(authed):
    assert authed.get("/messages/threads/nope").status_code == 404


def test_typing_is_best_effort(authed):
    assert authed.post("/messages/typing", json={"is_typing": True, "recipient_id": "u2"}).json() == {"sent": True}


def test_logout(authed, session_store):
    resp = authed.post("/auth/logout")
    health = authed.get("/healthz").json()

    assert resp.status_code == 200
    assert health["connection"] == "disconnected"
    assert health["authenticated"] is False
    assert session_store.get() is None

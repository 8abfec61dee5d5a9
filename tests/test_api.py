import io
import time

import pytest
from bson import ObjectId
from starlette.websockets import WebSocketDisconnect

from tests.conftest import auth_header, token_for


def send(client, sender, receiver, content=None, files=None):
    data = {"receiver_id": receiver}
    if content is not None:
        data["content"] = content
    return client.post("/api/chats/send-message", data=data, files=files, headers=auth_header(sender))


def wait_until(check, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if check():
            return True
        time.sleep(0.02)
    return check()


def identify(ws, user_id):
    ws.send_json({"type": "identify", "data": {"user_id": user_id}})
    # Round-trip so the identify is known to be processed
    ws.send_json({"type": "query-status", "data": {"user_id": user_id}})
    while True:
        frame = ws.receive_json()
        if frame["type"] == "query-status":
            return frame["data"]


def test_requires_authentication(client):
    resp = client.get("/api/chats/conversations")
    assert resp.status_code == 401
    assert resp.json()["status"] == "error"

    resp = client.get("/api/chats/conversations", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401


def test_token_for_unknown_user_rejected(client):
    resp = client.get("/me", headers=auth_header(str(ObjectId())))
    assert resp.status_code == 401


def test_me(client, alice):
    body = client.get("/me", headers=auth_header(alice)).json()
    assert body["status"] == "success"
    assert body["data"]["name"] == "alice"


def test_send_text_to_offline_receiver(client, alice, bob):
    resp = send(client, alice, bob, content="hi")
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "success"
    assert body["message"] == "Message sent successfully"
    message = body["data"]
    assert message["content_type"] == "text"
    assert message["message_status"] == "sent"
    assert message["sender"]["name"] == "alice"


def test_send_requires_content_or_media(client, alice, bob):
    resp = send(client, alice, bob, content="   ")
    assert resp.status_code == 400
    assert resp.json() == {"status": "error", "message": "Message content is required", "data": None}


def test_send_to_self_or_unknown_receiver(client, alice):
    assert send(client, alice, alice, content="me").status_code == 400
    assert send(client, alice, str(ObjectId()), content="ghost").status_code == 404


def test_send_image(client, alice, bob, tmp_path):
    files = {"media": ("cat.png", io.BytesIO(b"\x89PNG fake"), "image/png")}
    resp = send(client, alice, bob, content="caption", files=files)
    assert resp.status_code == 201
    message = resp.json()["data"]
    assert message["content_type"] == "image"
    assert message["content"] == "caption"
    assert message["media_url"].startswith("/media/")
    stored = tmp_path / message["media_url"].rsplit("/", 1)[1]
    assert stored.read_bytes() == b"\x89PNG fake"


def test_send_rejects_other_file_types(client, alice, bob):
    files = {"media": ("notes.txt", io.BytesIO(b"text"), "text/plain")}
    resp = send(client, alice, bob, files=files)
    assert resp.status_code == 400


def test_conversation_listing(client, alice, bob, carol):
    send(client, alice, bob, content="to bob")
    send(client, carol, alice, content="to alice")

    body = client.get("/api/chats/conversations", headers=auth_header(alice)).json()
    conversations = body["data"]
    assert len(conversations) == 2
    for conv in conversations:
        assert conv["unread_count"] == 1
        assert conv["last_message"]["content"] in ("to bob", "to alice")
        assert alice in conv["participant_ids"]
        assert {"name", "online"} <= set(conv["participants"][0])

    assert len(client.get("/api/chats/conversations", headers=auth_header(bob)).json()["data"]) == 1


def test_history_marks_incoming_read(client, alice, bob):
    for text in ("one", "two", "three"):
        send(client, alice, bob, content=text)
    reply = send(client, bob, alice, content="reply").json()["data"]
    conversation_id = reply["conversation_id"]

    resp = client.get(f"/api/chats/conversations/{conversation_id}/messages", headers=auth_header(bob))
    assert resp.status_code == 200
    messages = resp.json()["data"]
    assert [m["content"] for m in messages] == ["one", "two", "three", "reply"]
    assert [m["message_status"] for m in messages] == ["read", "read", "read", "sent"]

    conv = client.get("/api/chats/conversations", headers=auth_header(bob)).json()["data"][0]
    assert conv["unread_count"] == 0

    again = client.get(f"/api/chats/conversations/{conversation_id}/messages", headers=auth_header(bob))
    assert [m["message_status"] for m in again.json()["data"]] == ["read", "read", "read", "sent"]


def test_history_access_control(client, alice, bob, carol):
    conversation_id = send(client, alice, bob, content="secret").json()["data"]["conversation_id"]

    assert client.get(f"/api/chats/conversations/{conversation_id}/messages", headers=auth_header(carol)).status_code == 403
    assert client.get(f"/api/chats/conversations/{ObjectId()}/messages", headers=auth_header(alice)).status_code == 404
    assert client.get("/api/chats/conversations/not-an-id/messages", headers=auth_header(alice)).status_code == 404


def test_bulk_mark_read(client, alice, bob):
    to_bob = send(client, alice, bob, content="for bob").json()["data"]
    to_alice = send(client, bob, alice, content="for alice").json()["data"]

    resp = client.put("/api/chats/messages/read", json={"message_ids": [to_bob["_id"], to_alice["_id"]]},
                      headers=auth_header(bob))
    assert resp.status_code == 200
    updated = resp.json()["data"]
    assert [(m["_id"], m["message_status"]) for m in updated] == [(to_bob["_id"], "read")]


def test_bulk_mark_read_validation(client, bob):
    headers = auth_header(bob)
    assert client.put("/api/chats/messages/read", json={"message_ids": []}, headers=headers).status_code == 400
    assert client.put("/api/chats/messages/read", json={"message_ids": ["zzz"]}, headers=headers).status_code == 400


def test_delete_message(client, alice, bob):
    message = send(client, alice, bob, content="oops").json()["data"]
    url = f"/api/chats/messages/{message['_id']}"

    assert client.delete(url, headers=auth_header(bob)).status_code == 401
    resp = client.delete(url, headers=auth_header(alice))
    assert resp.status_code == 200
    assert resp.json()["message"] == "Message deleted successfully"
    assert client.delete(url, headers=auth_header(alice)).status_code == 404

    history = client.get(f"/api/chats/conversations/{message['conversation_id']}/messages", headers=auth_header(alice))
    assert history.json()["data"] == []


def test_websocket_requires_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()


def test_send_to_online_receiver_is_delivered(client, alice, bob):
    with client.websocket_connect(f"/ws?token={token_for(bob)}") as ws_bob:
        status = identify(ws_bob, bob)
        assert status["online"] is True

        message = send(client, alice, bob, content="hi").json()["data"]
        assert message["message_status"] == "delivered"

        frame = ws_bob.receive_json()
        assert frame["type"] == "message-forward"
        assert frame["data"]["_id"] == message["_id"]

        live = client.get(f"/api/users/{bob}/status", headers=auth_header(alice)).json()["data"]
        assert live["online"] is True

    def offline():
        return client.get(f"/api/users/{bob}/status", headers=auth_header(alice)).json()["data"]

    # The disconnect is processed asynchronously after the socket closes
    assert wait_until(lambda: offline()["online"] is False)
    assert offline()["last_seen"] is not None


def test_delete_notifies_receiver(client, alice, bob):
    message = send(client, alice, bob, content="oops").json()["data"]
    with client.websocket_connect(f"/ws?token={token_for(bob)}") as ws_bob:
        identify(ws_bob, bob)
        client.delete(f"/api/chats/messages/{message['_id']}", headers=auth_header(alice))
        frame = ws_bob.receive_json()
        assert frame == {"type": "message-deleted", "data": {"message_id": message["_id"], "conversation_id": message["conversation_id"]}}


def test_typing_over_websocket(client, alice, bob):
    with client.websocket_connect(f"/ws?token={token_for(bob)}") as ws_bob:
        identify(ws_bob, bob)
        with client.websocket_connect(f"/ws?token={token_for(alice)}") as ws_alice:
            identify(ws_alice, alice)
            assert ws_bob.receive_json()["type"] == "status-change"

            ws_alice.send_json({"type": "typing-start", "data": {"conversation_id": "c1", "receiver_id": bob}})
            frame = ws_bob.receive_json()
            assert frame == {"type": "typing-notify", "data": {"user_id": alice, "conversation_id": "c1", "typing": True}}
            # Auto-clear after the quiet period
            frame = ws_bob.receive_json()
            assert frame["data"]["typing"] is False

        offline = ws_bob.receive_json()
        assert offline["type"] == "status-change"
        assert offline["data"]["online"] is False


def test_schema_and_root(client):
    assert client.get("/").json() == {"message": "Chat backend running"}
    assert client.get("/schema").json() == {"collections": ["user", "conversation", "message"]}

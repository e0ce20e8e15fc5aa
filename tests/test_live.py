"""Chat over HTTP and the /ws live connection, end to end."""
from __future__ import annotations

import threading

import pytest
from starlette.websockets import WebSocketDisconnect


def _non_system(room):
    return [m for m in room["messages"] if not m["system"]]


def test_create_and_list_rooms(client_factory):
    alice = client_factory("alice")
    bob = client_factory("bob")
    admin = client_factory("admin")

    r = alice.post("/api/chats", json={"memberIds": ["alice", "bob"], "displayName": "Deals"})
    assert r.status_code == 200, r.text
    room = r.json()
    assert room["members"] == ["alice", "bob"]
    assert room["displayName"] == "Deals"
    assert room["messages"][0]["system"] is True

    assert [c["id"] for c in bob.get("/api/chats").json()] == [room["id"]]
    assert admin.get("/api/chats").json() == []
    assert admin.get(f"/api/chats/{room['id']}").status_code == 200
    assert client_factory().get("/api/chats").status_code == 401


def test_create_room_errors(client_factory):
    alice = client_factory("alice")
    r = alice.post("/api/chats", json={"memberIds": ["alice", "mallory"]})
    assert r.status_code == 400
    assert r.json()["error"] == "UnknownMember"
    r = alice.post("/api/chats", json={"memberIds": ["alice"]})
    assert r.json()["error"] == "InvalidInput"
    r = alice.post("/api/chats", json={"memberIds": "alice,bob"})
    assert r.status_code == 400


def test_membership_and_rename_over_http(client_factory):
    alice = client_factory("alice")
    admin = client_factory("admin")
    room_id = alice.post("/api/chats", json={"memberIds": ["alice", "bob"]}).json()["id"]

    r = alice.post(f"/api/chats/{room_id}/members", json={"memberIds": ["bob"]})
    assert r.json()["added"] == []
    assert len(r.json()["room"]["messages"]) == 1

    r = alice.post(f"/api/chats/{room_id}/members", json={"memberIds": ["admin"]})
    assert r.json()["added"] == ["admin"]
    assert r.json()["room"]["members"] == ["admin", "alice", "bob"]

    r = admin.put(f"/api/chats/{room_id}", json={"displayName": "Ops"})
    assert r.status_code == 200
    assert r.json()["displayName"] == "Ops"
    assert alice.get(f"/api/chats/{room_id}").json()["displayName"] == "Ops"
    assert alice.post("/api/chats/chat-missing/members", json={"memberIds": ["bob"]}).status_code == 404


def test_non_member_cannot_post_or_read(client_factory):
    alice = client_factory("alice")
    admin = client_factory("admin")
    room_id = alice.post("/api/chats", json={"memberIds": ["alice", "bob"]}).json()["id"]

    r = admin.post("/api/messages", json={"roomId": room_id, "body": "hello"})
    assert r.status_code == 403
    bob_view = client_factory("bob").get(f"/api/chats/{room_id}").json()
    assert _non_system(bob_view) == []


def test_live_broadcast_scenario(client_factory):
    alice = client_factory("alice")
    bob = client_factory("bob")
    room_id = alice.post("/api/chats", json={"memberIds": ["alice", "bob"]}).json()["id"]

    with bob.websocket_connect("/ws") as ws:
        ws.send_json({"event": "join", "roomId": room_id})
        assert ws.receive_json() == {"event": "joined", "roomId": room_id}

        # client-supplied timestamp is ignored
        r = alice.post("/api/messages", json={"roomId": room_id, "body": "hi", "createdAt": "1999-01-01T00:00:00Z"})
        assert r.status_code == 200, r.text
        posted = r.json()["message"]
        assert not posted["createdAt"].startswith("1999")

        frame = ws.receive_json()
        assert frame["event"] == "message"
        assert frame["roomId"] == room_id
        assert frame["message"]["sender"] == "alice"
        assert frame["message"]["body"] == "hi"
        assert frame["message"]["createdAt"] == posted["createdAt"]
        assert frame["message"]["id"] == posted["id"]

    rooms = bob.get("/api/chats").json()
    assert len(rooms) == 1
    assert len(rooms[0]["messages"]) == 2
    assert [m["body"] for m in _non_system(rooms[0])] == ["hi"]


def test_live_message_path_matches_http_path(client_factory):
    alice = client_factory("alice")
    bob = client_factory("bob")
    room_id = alice.post("/api/chats", json={"memberIds": ["alice", "bob"]}).json()["id"]

    with alice.websocket_connect("/ws") as a_ws, bob.websocket_connect("/ws") as b_ws:
        for ws in (a_ws, b_ws):
            ws.send_json({"event": "join", "roomId": room_id})
            assert ws.receive_json()["event"] == "joined"

        a_ws.send_json({"event": "message", "roomId": room_id, "body": "live hello"})
        echoed = a_ws.receive_json()  # sender receives its own broadcast
        received = b_ws.receive_json()
        assert echoed == received
        assert received["message"]["sender"] == "alice"

        bob.post("/api/messages", json={"roomId": room_id, "body": "fallback reply"})
        assert a_ws.receive_json()["message"]["body"] == "fallback reply"
        assert b_ws.receive_json()["message"]["body"] == "fallback reply"

    history = _non_system(alice.get(f"/api/chats/{room_id}").json())
    assert [(m["sender"], m["body"]) for m in history] == [("alice", "live hello"), ("bob", "fallback reply")]


def test_live_order_matches_stored_order_under_concurrent_posts(client_factory):
    alice = client_factory("alice")
    bob = client_factory("bob")
    room_id = alice.post("/api/chats", json={"memberIds": ["alice", "bob"]}).json()["id"]
    per_sender = 8
    barrier = threading.Barrier(2)

    def post_many(client, sender: str) -> None:
        barrier.wait()
        for i in range(per_sender):
            r = client.post("/api/messages", json={"roomId": room_id, "body": f"{sender}-{i}"})
            assert r.status_code == 200, r.text

    with bob.websocket_connect("/ws") as ws:
        ws.send_json({"event": "join", "roomId": room_id})
        assert ws.receive_json()["event"] == "joined"

        threads = [
            threading.Thread(target=post_many, args=(alice, "alice")),
            threading.Thread(target=post_many, args=(bob, "bob")),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        live = [ws.receive_json()["message"]["body"] for _ in range(2 * per_sender)]

    stored = [m["body"] for m in _non_system(alice.get(f"/api/chats/{room_id}").json())]
    assert len(stored) == 2 * per_sender
    assert live == stored


def test_live_errors_go_back_to_origin(client_factory):
    alice = client_factory("alice")
    admin = client_factory("admin")
    room_id = alice.post("/api/chats", json={"memberIds": ["alice", "bob"]}).json()["id"]

    with admin.websocket_connect("/ws") as ws:
        # joining is only listening, so it is allowed
        ws.send_json({"event": "join", "roomId": room_id})
        assert ws.receive_json()["event"] == "joined"

        ws.send_json({"event": "message", "roomId": room_id, "body": "intrude"})
        err = ws.receive_json()
        assert err["event"] == "error"
        assert err["error"] == "Forbidden"

        ws.send_text("not json")
        assert ws.receive_json()["error"] == "InvalidInput"
        ws.send_json({"event": "dance", "roomId": room_id})
        assert ws.receive_json()["error"] == "InvalidInput"

    assert _non_system(alice.get(f"/api/chats/{room_id}").json()) == []


def test_live_connection_requires_session(client_factory):
    anon = client_factory()
    with pytest.raises(WebSocketDisconnect) as info:
        with anon.websocket_connect("/ws") as ws:
            ws.receive_json()
    assert info.value.code == 4401


def test_live_message_after_logout_is_rejected(client_factory):
    alice = client_factory("alice")
    room_id = alice.post("/api/chats", json={"memberIds": ["alice", "bob"]}).json()["id"]

    with alice.websocket_connect("/ws") as ws:
        ws.send_json({"event": "join", "roomId": room_id})
        ws.receive_json()
        alice.post("/api/logout")
        ws.send_json({"event": "message", "roomId": room_id, "body": "still here?"})
        assert ws.receive_json()["error"] == "Unauthenticated"

    login = client_factory("alice")
    assert _non_system(login.get(f"/api/chats/{room_id}").json()) == []

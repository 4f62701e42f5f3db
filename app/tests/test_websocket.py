"""
Integration tests for the live channel: handshake authentication, gated
delivery, echo suppression and forced closure on session revocation.
"""
from contextlib import ExitStack

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import auth_headers
from core.security import issue_token
from db.models import Group, User
from services.subscriptions import SubscriptionGate


def open_channel(client: TestClient, stack: ExitStack, token: str):
    ws = stack.enter_context(client.websocket_connect("/ws"))
    ws.send_json({"type": "connection_init", "payload": {"token": token}})
    assert ws.receive_json()["type"] == "connection_ack"
    return ws


def subscribe(ws, op_id: str, kind: str, args: dict) -> dict:
    ws.send_json({"type": "subscribe", "id": op_id, "kind": kind, "args": args})
    return ws.receive_json()


def post_message(client: TestClient, token: str, group_id: int, text: str) -> dict:
    response = client.post(f"/v1/groups/{group_id}/messages", json={"text": text}, headers=auth_headers(token))
    assert response.status_code == 201
    return response.json()


class TestHandshake:

    def test_valid_token_is_acknowledged(self, test_client: TestClient, seed_test_users: list[User], tokens):
        with ExitStack() as stack:
            ws = open_channel(test_client, stack, tokens[seed_test_users[0].id])
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_missing_token_is_refused(self, test_client: TestClient, test_db):
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "connection_init", "payload": {}})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_forged_token_is_refused(self, test_client: TestClient, seed_test_users: list[User]):
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "connection_init", "payload": {"token": "not-a-jwt"}})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_stale_token_is_refused(self, test_client: TestClient, seed_test_users: list[User], tokens):
        token = tokens[seed_test_users[0].id]
        assert test_client.post("/auth/logout", headers=auth_headers(token)).status_code == 204

        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "connection_init", "payload": {"token": token}})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_first_frame_must_be_connection_init(self, test_client: TestClient, seed_test_users: list[User]):
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "subscribe", "id": "1", "kind": "group_added", "args": {}})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_channel_limit(self, test_client: TestClient, seed_test_users: list[User], tokens):
        token = tokens[seed_test_users[0].id]
        with ExitStack() as stack:
            for _ in range(5):
                open_channel(test_client, stack, token)

            with test_client.websocket_connect("/ws") as ws:
                ws.send_json({"type": "connection_init", "payload": {"token": token}})
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    ws.receive_json()
        assert exc_info.value.code == 4002


class TestSubscriptions:

    def test_message_added_skips_own_messages(
        self, test_client: TestClient, seed_test_users: list[User], seed_group: Group, tokens
    ):
        alice, bob = seed_test_users[0], seed_test_users[1]
        with ExitStack() as stack:
            ws_alice = open_channel(test_client, stack, tokens[alice.id])
            ws_bob = open_channel(test_client, stack, tokens[bob.id])
            assert subscribe(ws_alice, "a", "message_added", {"group_ids": [seed_group.id]})["type"] == "subscribed"
            assert subscribe(ws_bob, "b", "message_added", {"group_ids": [seed_group.id]})["type"] == "subscribed"

            from_alice = post_message(test_client, tokens[alice.id], seed_group.id, "from alice")
            from_bob = post_message(test_client, tokens[bob.id], seed_group.id, "from bob")

            # Alice's own message is filtered, so Bob's is the first she sees
            frame = ws_alice.receive_json()
            assert frame["type"] == "next"
            assert frame["id"] == "a"
            assert frame["payload"]["id"] == from_bob["id"]
            assert frame["payload"]["from"]["id"] == bob.id

            frame = ws_bob.receive_json()
            assert frame["id"] == "b"
            assert frame["payload"]["id"] == from_alice["id"]
            assert frame["payload"]["text"] == "from alice"

    def test_live_payload_matches_http_shape(
        self, test_client: TestClient, seed_test_users: list[User], seed_group: Group, tokens
    ):
        author, reader = seed_test_users[0], seed_test_users[1]
        with ExitStack() as stack:
            ws = open_channel(test_client, stack, tokens[reader.id])
            subscribe(ws, "a", "message_added", {"group_ids": [seed_group.id]})

            message = post_message(test_client, tokens[author.id], seed_group.id, "shape")

            payload = ws.receive_json()["payload"]
            assert set(payload) == set(message)
            assert payload["from"] == message["from"]
            assert payload["group_id"] == message["group_id"]

    def test_delivery_failure_reports_internal_error(
        self, test_client: TestClient, seed_test_users: list[User], seed_group: Group, tokens, monkeypatch
    ):
        def failing_check(self, subscription, context, event):
            raise RuntimeError("database went away")

        author, reader = seed_test_users[0], seed_test_users[1]
        with ExitStack() as stack:
            ws = open_channel(test_client, stack, tokens[reader.id])
            assert subscribe(ws, "a", "message_added", {"group_ids": [seed_group.id]})["type"] == "subscribed"

            monkeypatch.setattr(SubscriptionGate, "check", failing_check)
            post_message(test_client, tokens[author.id], seed_group.id, "lost")

            frame = ws.receive_json()
            assert frame["type"] == "error"
            assert frame["id"] == "a"
            assert frame["error"]["type"] == "internal_error"

            # The failed operation is released and its id can be reused
            monkeypatch.undo()
            assert subscribe(ws, "a", "message_added", {"group_ids": [seed_group.id]})["type"] == "subscribed"

            message = post_message(test_client, tokens[author.id], seed_group.id, "found")
            assert ws.receive_json()["payload"]["id"] == message["id"]

    def test_subscribe_to_foreign_group_is_unauthorized(
        self, test_client: TestClient, seed_test_users: list[User], seed_group: Group, tokens
    ):
        with ExitStack() as stack:
            ws = open_channel(test_client, stack, tokens[seed_test_users[3].id])

            frame = subscribe(ws, "1", "message_added", {"group_ids": [seed_group.id]})

            assert frame["type"] == "error"
            assert frame["id"] == "1"
            assert frame["error"]["type"] == "unauthorized"

            # The channel stays usable
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_unknown_kind(self, test_client: TestClient, seed_test_users: list[User], tokens):
        with ExitStack() as stack:
            ws = open_channel(test_client, stack, tokens[seed_test_users[0].id])
            frame = subscribe(ws, "1", "typing", {})
            assert frame["type"] == "error"
            assert frame["error"]["type"] == "invalid_request"

    def test_group_added_reaches_added_members(self, test_client: TestClient, seed_test_users: list[User], tokens):
        creator, friend = seed_test_users[0], seed_test_users[1]
        with ExitStack() as stack:
            ws_friend = open_channel(test_client, stack, tokens[friend.id])
            assert subscribe(ws_friend, "g", "group_added", {"user_id": friend.id})["type"] == "subscribed"

            response = test_client.post(
                "/v1/groups",
                json={"name": "Surprise", "user_ids": [friend.id]},
                headers=auth_headers(tokens[creator.id])
            )
            assert response.status_code == 201

            frame = ws_friend.receive_json()
            assert frame["type"] == "next"
            assert frame["id"] == "g"
            assert frame["payload"]["id"] == response.json()["id"]
            assert frame["payload"]["name"] == "Surprise"

    def test_group_added_for_other_user_is_unauthorized(
        self, test_client: TestClient, seed_test_users: list[User], tokens
    ):
        with ExitStack() as stack:
            ws = open_channel(test_client, stack, tokens[seed_test_users[0].id])
            frame = subscribe(ws, "g", "group_added", {"user_id": seed_test_users[1].id})
            assert frame["error"]["type"] == "unauthorized"

    def test_complete_stops_subscription(
        self, test_client: TestClient, seed_test_users: list[User], seed_group: Group, tokens
    ):
        with ExitStack() as stack:
            ws = open_channel(test_client, stack, tokens[seed_test_users[1].id])
            subscribe(ws, "a", "message_added", {"group_ids": [seed_group.id]})

            ws.send_json({"type": "complete", "id": "a"})
            assert ws.receive_json() == {"type": "complete", "id": "a"}

            post_message(test_client, tokens[seed_test_users[0].id], seed_group.id, "unheard")
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}


class TestRevocation:

    def test_logout_closes_live_channels(
        self, test_client: TestClient, seed_test_users: list[User], seed_group: Group, tokens
    ):
        user = seed_test_users[1]
        with ExitStack() as stack:
            ws = open_channel(test_client, stack, tokens[user.id])
            subscribe(ws, "a", "message_added", {"group_ids": [seed_group.id]})

            assert test_client.post("/auth/logout", headers=auth_headers(tokens[user.id])).status_code == 204

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 4003

    def test_password_change_closes_live_channels(self, test_client: TestClient, seed_test_users: list[User], tokens):
        user = seed_test_users[0]
        with ExitStack() as stack:
            ws = open_channel(test_client, stack, tokens[user.id])

            response = test_client.post(
                "/auth/password",
                json={"old_password": "password123", "new_password": "rotated-password"},
                headers=auth_headers(tokens[user.id])
            )
            assert response.status_code == 200

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 4003

            # The new token opens a fresh channel
            fresh = open_channel(test_client, stack, response.json()["jwt"])
            fresh.send_json({"type": "ping"})
            assert fresh.receive_json() == {"type": "pong"}

    def test_other_users_channels_survive(
        self, test_client: TestClient, seed_test_users: list[User], seed_group: Group, tokens
    ):
        leaver, stayer = seed_test_users[0], seed_test_users[1]
        with ExitStack() as stack:
            ws = open_channel(test_client, stack, tokens[stayer.id])
            subscribe(ws, "a", "message_added", {"group_ids": [seed_group.id]})

            message = post_message(test_client, tokens[leaver.id], seed_group.id, "bye")
            assert test_client.post("/auth/logout", headers=auth_headers(tokens[leaver.id])).status_code == 204

            frame = ws.receive_json()
            assert frame["payload"]["id"] == message["id"]

    def test_token_with_unknown_version_is_refused(self, test_client: TestClient, seed_test_users: list[User]):
        user = seed_test_users[0]
        future_token = issue_token(user.id, user.token_version + 1)
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "connection_init", "payload": {"token": future_token}})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 4001

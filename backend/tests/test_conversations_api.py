"""Tests for the /api/messaging REST endpoints."""
from unittest.mock import AsyncMock

from kidslink.conversations.schemas import ReadStatus
from kidslink.errors import ImageUploadError

from conftest import ANNA, BINH, CHI

API = "/api/messaging"


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_requires_token(client):
    response = client.get(f"{API}/conversations")
    assert response.status_code == 401
    assert response.json()["detail"] == "Missing authentication token"


def test_rejects_bad_token(client):
    response = client.get(f"{API}/conversations", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or expired token"


class TestCreateConversation:
    """Tests for POST /conversations."""

    def test_caller_becomes_participant(self, client, auth_headers, store, users):
        response = client.post(
            f"{API}/conversations",
            json={"class_id": "class-1", "title": "Lop La 1", "participant_ids": [BINH.id, ANNA.id]},
            headers=auth_headers(ANNA.id),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["participants"] == [ANNA.id, BINH.id]
        assert body["conversation"]["is_class_group"] is False
        assert store.list_participant_ids(body["conversation"]["id"]) == [ANNA.id, BINH.id]

    def test_missing_title(self, client, auth_headers):
        response = client.post(
            f"{API}/conversations", json={"class_id": "class-1"}, headers=auth_headers(ANNA.id)
        )
        assert response.status_code == 422

    def test_live_connections_are_subscribed(self, app, client, auth_headers, issue_token, users):
        with client.websocket_connect(f"/ws/chat?token={issue_token(BINH.id)}") as ws:
            assert ws.receive_json()["data"]["conversation_ids"] == []
            response = client.post(
                f"{API}/conversations",
                json={"class_id": "class-1", "title": "Direct", "participant_ids": [BINH.id]},
                headers=auth_headers(ANNA.id),
            )
            conversation_id = response.json()["conversation"]["id"]
            members = app.state.manager.groups.members(f"conversation:{conversation_id}")
            assert len(members) == 1

    def test_existing_class_group_is_returned(self, client, auth_headers, store, conversation):
        response = client.post(
            f"{API}/conversations",
            json={"class_id": "class-1", "title": "Nhom lop", "is_class_group": True},
            headers=auth_headers(CHI.id),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["conversation"]["id"] == conversation.id
        assert body["conversation"]["title"] == "Lop La 1"
        assert body["participants"] == [ANNA.id, BINH.id, CHI.id]
        assert store.is_participant(conversation.id, CHI.id)

    def test_repeated_class_group_request_creates_one_group(self, client, auth_headers, users):
        request = {"class_id": "class-9", "title": "Lop 9", "is_class_group": True, "participant_ids": [BINH.id]}

        first = client.post(f"{API}/conversations", json=request, headers=auth_headers(ANNA.id))
        second = client.post(f"{API}/conversations", json=request, headers=auth_headers(ANNA.id))

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["conversation"]["id"] == first.json()["conversation"]["id"]

    def test_existing_direct_conversation_is_returned(self, client, auth_headers, users):
        first = client.post(
            f"{API}/conversations",
            json={"class_id": "class-1", "title": "Hoi co Binh", "participant_ids": [BINH.id]},
            headers=auth_headers(ANNA.id),
        )
        second = client.post(
            f"{API}/conversations",
            json={"class_id": "class-1", "title": "Tra loi", "participant_ids": [ANNA.id]},
            headers=auth_headers(BINH.id),
        )

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["conversation"]["id"] == first.json()["conversation"]["id"]
        assert second.json()["participants"] == [ANNA.id, BINH.id]

    def test_unknown_participant(self, client, auth_headers, store, users):
        response = client.post(
            f"{API}/conversations",
            json={"class_id": "class-1", "title": "Ghost", "participant_ids": [BINH.id, "u-ghost"]},
            headers=auth_headers(ANNA.id),
        )

        assert response.status_code == 404
        assert response.json()["detail"] == {"message": "User not found", "details": "u-ghost"}
        assert store.count_conversations_for_user(ANNA.id) == 0


class TestListConversations:
    """Tests for GET /conversations and GET /conversations/{id}."""

    def test_list_with_last_message_and_pagination(self, client, auth_headers, store, conversation):
        store.create_message(conversation.id, BINH.id, content="Hop phu huynh thu sau")
        for i in range(2):
            store.create_conversation(f"Extra {i}", class_id="class-1", participant_ids=[ANNA.id])

        response = client.get(f"{API}/conversations?page=1&limit=2", headers=auth_headers(ANNA.id))

        assert response.status_code == 200
        body = response.json()
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert len(body["conversations"]) == 2

        response = client.get(f"{API}/conversations?page=2&limit=2", headers=auth_headers(ANNA.id))
        assert len(response.json()["conversations"]) == 1

    def test_list_includes_participants(self, client, auth_headers, store, conversation):
        store.create_message(conversation.id, BINH.id, content="hello")
        store.touch_conversation(conversation.id, store.get_last_message(conversation.id).send_at)

        body = client.get(f"{API}/conversations", headers=auth_headers(ANNA.id)).json()

        entry = body["conversations"][0]
        assert entry["id"] == conversation.id
        assert entry["participants_count"] == 2
        assert {p["id"] for p in entry["participants"]} == {ANNA.id, BINH.id}
        assert entry["last_message"]["content"] == "hello"

    def test_limit_is_capped(self, client, auth_headers, conversation):
        body = client.get(f"{API}/conversations?limit=1000", headers=auth_headers(ANNA.id)).json()
        assert body["pagination"]["limit"] == 100

    def test_detail(self, client, auth_headers, conversation):
        response = client.get(f"{API}/conversations/{conversation.id}", headers=auth_headers(BINH.id))
        assert response.status_code == 200
        body = response.json()
        assert body["conversation"]["title"] == "Lop La 1"
        assert [p["full_name"] for p in body["participants"]] == [ANNA.full_name, BINH.full_name]

    def test_detail_forbidden_for_non_participant(self, client, auth_headers, conversation):
        response = client.get(f"{API}/conversations/{conversation.id}", headers=auth_headers(CHI.id))
        assert response.status_code == 403

    def test_detail_not_found(self, client, auth_headers, users):
        response = client.get(f"{API}/conversations/missing", headers=auth_headers(ANNA.id))
        assert response.status_code == 404


class TestAddParticipant:
    """Tests for POST /conversations/{id}/participants."""

    def test_add(self, client, auth_headers, store, conversation):
        response = client.post(
            f"{API}/conversations/{conversation.id}/participants",
            json={"user_id": CHI.id},
            headers=auth_headers(BINH.id),
        )
        assert response.status_code == 201
        assert response.json()["user_id"] == CHI.id
        assert store.is_participant(conversation.id, CHI.id)

    def test_duplicate(self, client, auth_headers, conversation):
        response = client.post(
            f"{API}/conversations/{conversation.id}/participants",
            json={"user_id": ANNA.id},
            headers=auth_headers(BINH.id),
        )
        assert response.status_code == 409

    def test_unknown_user(self, client, auth_headers, conversation):
        response = client.post(
            f"{API}/conversations/{conversation.id}/participants",
            json={"user_id": "u-ghost"},
            headers=auth_headers(BINH.id),
        )
        assert response.status_code == 404
        assert response.json()["detail"]["message"] == "User not found"

    def test_caller_not_participant(self, client, auth_headers, conversation):
        response = client.post(
            f"{API}/conversations/{conversation.id}/participants",
            json={"user_id": CHI.id},
            headers=auth_headers(CHI.id),
        )
        assert response.status_code == 403

    def test_added_user_live_connection_is_subscribed(self, client, auth_headers, issue_token, conversation):
        with client.websocket_connect(f"/ws/chat?token={issue_token(CHI.id)}") as chi, \
             client.websocket_connect(f"/ws/chat?token={issue_token(ANNA.id)}") as anna:
            chi.receive_json()
            anna.receive_json()

            client.post(
                f"{API}/conversations/{conversation.id}/participants",
                json={"user_id": CHI.id},
                headers=auth_headers(ANNA.id),
            )
            anna.send_json({"event": "send_message",
                            "data": {"conversation_id": conversation.id, "content": "chao Chi"}})

            frame = chi.receive_json()
            assert frame["event"] == "new_message"
            assert frame["data"]["message"]["content"] == "chao Chi"


class TestMessages:
    """Tests for history, REST send and read state."""

    def test_history_oldest_first_within_page(self, client, auth_headers, store, conversation):
        for i in range(5):
            store.create_message(conversation.id, ANNA.id, content=f"m{i}")

        body = client.get(
            f"{API}/conversations/{conversation.id}/messages?page=1&limit=3",
            headers=auth_headers(BINH.id),
        ).json()

        assert [m["content"] for m in body["messages"]] == ["m2", "m3", "m4"]
        assert body["pagination"] == {"page": 1, "limit": 3, "total": 5, "pages": 2}

    def test_history_forbidden(self, client, auth_headers, conversation):
        response = client.get(f"{API}/conversations/{conversation.id}/messages", headers=auth_headers(CHI.id))
        assert response.status_code == 403

    def test_send_reaches_live_connections(self, client, auth_headers, issue_token, store, conversation):
        with client.websocket_connect(f"/ws/chat?token={issue_token(BINH.id)}") as ws:
            ws.receive_json()

            response = client.post(
                f"{API}/messages",
                json={"conversation_id": conversation.id, "content": "  Con da an trua  "},
                headers=auth_headers(ANNA.id),
            )
            assert response.status_code == 201
            message = response.json()
            assert message["content"] == "Con da an trua"
            assert message["sender"]["id"] == ANNA.id

            assert ws.receive_json()["event"] == "new_message"
            notification = ws.receive_json()
            assert notification["event"] == "new_message_notification"
            assert notification["data"]["message"]["id"] == message["id"]

        assert store.count_messages(conversation.id) == 1

    def test_send_validation(self, client, auth_headers, conversation):
        response = client.post(
            f"{API}/messages", json={"conversation_id": conversation.id, "content": " "},
            headers=auth_headers(ANNA.id),
        )
        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "Message content or image is required"

    def test_send_forbidden(self, client, auth_headers, conversation):
        response = client.post(
            f"{API}/messages", json={"conversation_id": conversation.id, "content": "hi"},
            headers=auth_headers(CHI.id),
        )
        assert response.status_code == 403

    def test_send_upload_failure(self, app, client, auth_headers, store, conversation, monkeypatch):
        monkeypatch.setattr(
            app.state.image_store, "upload_base64", AsyncMock(side_effect=ImageUploadError("timeout"))
        )
        response = client.post(
            f"{API}/messages",
            json={"conversation_id": conversation.id, "image_base64": "aGVsbG8="},
            headers=auth_headers(ANNA.id),
        )
        assert response.status_code == 502
        assert store.count_messages(conversation.id) == 0

    def test_mark_read_and_unread_count(self, client, auth_headers, store, conversation):
        other = store.create_conversation("Other", class_id="class-1", participant_ids=[ANNA.id, BINH.id])
        for _ in range(3):
            store.create_message(conversation.id, BINH.id, content="x")
        store.create_message(other.id, BINH.id, content="y")
        store.create_message(other.id, ANNA.id, content="mine")

        body = client.get(f"{API}/unread-count", headers=auth_headers(ANNA.id)).json()
        assert body["total"] == 4
        assert {e["conversation_id"]: e["count"] for e in body["by_conversation"]} == {
            conversation.id: 3, other.id: 1,
        }

        response = client.put(f"{API}/conversations/{conversation.id}/read", headers=auth_headers(ANNA.id))
        assert response.status_code == 200
        assert response.json() == {"conversation_id": conversation.id, "count": 3}

        response = client.put(f"{API}/conversations/{conversation.id}/read", headers=auth_headers(ANNA.id))
        assert response.json()["count"] == 0

        body = client.get(f"{API}/unread-count", headers=auth_headers(ANNA.id)).json()
        assert body["total"] == 1
        assert store.get_last_message(other.id).read_status == ReadStatus.UNREAD

    def test_mark_read_forbidden(self, client, auth_headers, conversation):
        response = client.put(f"{API}/conversations/{conversation.id}/read", headers=auth_headers(CHI.id))
        assert response.status_code == 403

    def test_first_request_creates_user_row(self, client, auth_headers, store):
        client.get(f"{API}/unread-count", headers=auth_headers("u-new", username="hoa", role="teacher"))
        user = store.get_user("u-new")
        assert user.username == "hoa"
        assert user.role == "teacher"

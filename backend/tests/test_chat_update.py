"""
End-to-end tests for PATCH/PUT /api/chat/update against an in-memory store.
"""

import json

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import NotFoundError
from app.core.identifiers import normalize_message_id
from app.crud import chat as chat_crud
from app.models import Checkpoint, Message
from app.services import chat_update_service
from app.services.chat_update_service import UpdateOutcome, reconcile_chat_update
from app.schemas.chat import parse_update_request

from conftest import OTHER_OWNER_ID, OWNER_ID

UPDATE_URL = "/api/chat/update"


def _message(message_id="client-msg-1", **overrides):
    message = {"id": message_id, "role": "user", "content": "hi", "createdAt": "2024-01-01T00:00:00Z"}
    message.update(overrides)
    return message


def _stored_messages(db_session, chat_id):
    db_session.expire_all()
    return db_session.query(Message).filter(Message.chat_id == chat_id).order_by(Message.created_at).all()


def _stored_checkpoints(db_session, chat_id):
    db_session.expire_all()
    return db_session.query(Checkpoint).filter(Checkpoint.chat_id == chat_id).all()


class TestUpdateEndpoint:
    def test_rename_and_add_message(self, client, auth_headers, chat, db_session):
        previous_updated_at = chat.updated_at

        response = client.patch(
            UPDATE_URL,
            json={"id": chat.id, "title": "Renamed", "messages": [_message()]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["chat"]["id"] == chat.id
        assert body["chat"]["title"] == "Renamed"
        assert body["chat"]["pinned"] is False
        assert set(body["chat"]) == {"id", "title", "pinned", "updatedAt"}
        assert body["chat"]["updatedAt"].endswith("Z")

        stored = _stored_messages(db_session, chat.id)
        assert [m.id for m in stored] == [normalize_message_id("client-msg-1")]
        assert stored[0].user_id == OWNER_ID
        assert stored[0].created_at == "2024-01-01T00:00:00Z"

        db_session.refresh(chat)
        assert chat.updated_at >= previous_updated_at

    def test_put_behaves_like_patch(self, client, auth_headers, chat):
        response = client.put(UPDATE_URL, json={"id": chat.id, "pinned": True}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["chat"]["pinned"] is True

    def test_resubmitted_message_is_updated_not_duplicated(self, client, auth_headers, chat, db_session):
        client.patch(UPDATE_URL, json={"id": chat.id, "messages": [_message()]}, headers=auth_headers)
        response = client.patch(
            UPDATE_URL,
            json={"id": chat.id, "messages": [_message(content="hi, edited")]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        stored = _stored_messages(db_session, chat.id)
        assert len(stored) == 1
        assert stored[0].content == "hi, edited"

    def test_canonical_message_id_is_kept(self, client, auth_headers, chat, db_session):
        message_id = "9b2d6c1e-1f0a-4c3b-8e7d-6a5b4c3d2e1f"
        client.patch(UPDATE_URL, json={"id": chat.id, "messages": [_message(message_id)]}, headers=auth_headers)

        assert [m.id for m in _stored_messages(db_session, chat.id)] == [message_id]

    def test_structured_content_is_stored_as_json(self, client, auth_headers, chat, db_session):
        parts = [{"type": "text", "text": "hello"}, {"type": "reasoning", "text": "thinking"}]
        client.patch(
            UPDATE_URL,
            json={"id": chat.id, "messages": [_message(role="assistant", content=parts)]},
            headers=auth_headers,
        )

        stored = _stored_messages(db_session, chat.id)
        assert json.loads(stored[0].content) == parts

    def test_checkpoint_upsert_keeps_latest_index(self, client, auth_headers, chat, db_session):
        for index in (1, 4):
            response = client.patch(
                UPDATE_URL,
                json={
                    "id": chat.id,
                    "checkpoints": [{"id": "cp-1", "messageIndex": index, "timestamp": "2024-01-01T00:00:00Z"}],
                },
                headers=auth_headers,
            )
            assert response.status_code == 200

        stored = _stored_checkpoints(db_session, chat.id)
        assert len(stored) == 1
        assert stored[0].id == "cp-1"
        assert stored[0].message_index == 4

    def test_snapshot_prunes_missing_messages(self, client, auth_headers, chat, db_session):
        messages = [_message(f"msg-{i}", createdAt=f"2024-01-01T00:00:0{i}Z") for i in range(3)]
        client.patch(UPDATE_URL, json={"id": chat.id, "messages": messages}, headers=auth_headers)

        # Restoring to a checkpoint resubmits the shorter history
        client.patch(UPDATE_URL, json={"id": chat.id, "messages": messages[:1]}, headers=auth_headers)

        assert [m.id for m in _stored_messages(db_session, chat.id)] == [normalize_message_id("msg-0")]

    def test_empty_lists_leave_rows_alone(self, client, auth_headers, chat, db_session):
        client.patch(UPDATE_URL, json={"id": chat.id, "messages": [_message()]}, headers=auth_headers)

        response = client.patch(
            UPDATE_URL,
            json={"id": chat.id, "messages": [], "checkpoints": []},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert len(_stored_messages(db_session, chat.id)) == 1

    def test_duplicate_ids_in_one_request_keep_the_last(self, client, auth_headers, chat, db_session):
        response = client.patch(
            UPDATE_URL,
            json={"id": chat.id, "messages": [_message(content="first"), _message(content="second")]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        stored = _stored_messages(db_session, chat.id)
        assert [m.content for m in stored] == ["second"]


class TestUpdateRejections:
    def test_no_op_request_is_rejected(self, client, auth_headers, chat):
        response = client.patch(UPDATE_URL, json={"id": chat.id}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_invalid_message_writes_nothing(self, client, auth_headers, chat, db_session):
        bad = _message("msg-2")
        del bad["role"]

        response = client.patch(
            UPDATE_URL,
            json={"id": chat.id, "title": "Should not land", "messages": [_message(), bad]},
            headers=auth_headers,
        )

        assert response.status_code == 400
        body = response.json()
        assert body["details"][0]["field"] == "messages.1.role"
        assert _stored_messages(db_session, chat.id) == []
        db_session.refresh(chat)
        assert chat.title == "Original title"

    def test_oversized_checkpoint_index_writes_nothing(self, client, auth_headers, chat, db_session):
        response = client.patch(
            UPDATE_URL,
            json={
                "id": chat.id,
                "title": "Renamed",
                "checkpoints": [{"id": "cp-1", "messageIndex": 2**63, "timestamp": "t"}],
            },
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["details"][0]["field"] == "checkpoints.0.messageIndex"
        assert _stored_checkpoints(db_session, chat.id) == []
        db_session.refresh(chat)
        assert chat.title == "Original title"

    def test_missing_token(self, client, chat):
        response = client.patch(UPDATE_URL, json={"id": chat.id, "title": "x"})

        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_ERROR"

    def test_garbage_token(self, client, chat):
        response = client.patch(
            UPDATE_URL,
            json={"id": chat.id, "title": "x"},
            headers={"Authorization": "Bearer not-a-jwt"},
        )

        assert response.status_code == 401

    def test_invalid_json(self, client, auth_headers):
        response = client.patch(
            UPDATE_URL,
            content=b"{not json",
            headers={**auth_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON in request body"

    def test_unknown_chat(self, client, auth_headers):
        response = client.patch(
            UPDATE_URL,
            json={"id": "3f2504e0-4f89-41d3-9a0c-0305e82c3301", "title": "x"},
            headers=auth_headers,
        )

        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "Chat not found"
        assert body["code"] == "NOT_FOUND"
        assert "requestId" in body

    def test_other_owner_gets_not_found_and_writes_nothing(
        self, client, other_auth_headers, chat, db_session
    ):
        response = client.patch(
            UPDATE_URL,
            json={"id": chat.id, "title": "Hijacked", "messages": [_message()]},
            headers=other_auth_headers,
        )

        assert response.status_code == 404
        db_session.refresh(chat)
        assert chat.title == "Original title"
        assert _stored_messages(db_session, chat.id) == []


class TestPartialApply:
    def test_rejected_role_keeps_metadata_and_reports_messages(self, client, auth_headers, chat, db_session):
        response = client.patch(
            UPDATE_URL,
            json={"id": chat.id, "title": "Renamed", "messages": [_message(role="tool")]},
            headers=auth_headers,
        )

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "PARTIAL_APPLY"
        assert body["chatId"] == chat.id
        assert body["failed"] == "messages"

        db_session.refresh(chat)
        assert chat.title == "Renamed"
        assert _stored_messages(db_session, chat.id) == []

    def test_failed_messages_skip_checkpoints(self, client, auth_headers, chat, db_session):
        response = client.patch(
            UPDATE_URL,
            json={
                "id": chat.id,
                "messages": [_message(role="tool")],
                "checkpoints": [{"id": "cp-1", "messageIndex": 0, "timestamp": "t"}],
            },
            headers=auth_headers,
        )

        assert response.status_code == 500
        assert _stored_checkpoints(db_session, chat.id) == []

    def test_foreign_message_id_is_not_overwritten(self, client, auth_headers, make_chat, chat, db_session):
        other_chat = make_chat(owner_id=OTHER_OWNER_ID)
        chat_crud.replace_messages(
            db_session,
            other_chat.id,
            OTHER_OWNER_ID,
            [{"id": normalize_message_id("client-msg-1"), "role": "user", "content": "theirs", "created_at": "t"}],
        )

        response = client.patch(UPDATE_URL, json={"id": chat.id, "messages": [_message()]}, headers=auth_headers)

        assert response.status_code == 500
        assert response.json()["failed"] == "messages"
        stored = _stored_messages(db_session, other_chat.id)
        assert [m.content for m in stored] == ["theirs"]

    def test_checkpoint_failure_reports_checkpoints(self, chat, db_session, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError("INSERT INTO checkpoints", {}, Exception("disk I/O error"))

        monkeypatch.setattr(chat_update_service.chat_crud, "replace_checkpoints", broken)
        request = parse_update_request(
            {
                "id": chat.id,
                "pinned": True,
                "messages": [_message()],
                "checkpoints": [{"id": "cp-1", "messageIndex": 0, "timestamp": "t"}],
            }
        )

        result = reconcile_chat_update(db_session, OWNER_ID, request)

        assert result.outcome is UpdateOutcome.METADATA_ONLY
        assert result.chat.pinned is True
        assert result.error.failed == "checkpoints"
        assert len(_stored_messages(db_session, chat.id)) == 1

    def test_checkpoint_overflow_keeps_metadata(self, chat, db_session, monkeypatch):
        def overflowing(*args, **kwargs):
            raise OverflowError("Python int too large to convert to SQLite INTEGER")

        monkeypatch.setattr(chat_update_service.chat_crud, "replace_checkpoints", overflowing)
        request = parse_update_request(
            {"id": chat.id, "title": "Renamed", "checkpoints": [{"id": "cp-1", "messageIndex": 0, "timestamp": "t"}]}
        )

        result = reconcile_chat_update(db_session, OWNER_ID, request)

        assert result.outcome is UpdateOutcome.METADATA_ONLY
        assert result.chat.title == "Renamed"
        assert result.error.failed == "checkpoints"


class TestReconciler:
    def test_applied_result(self, chat, db_session):
        request = parse_update_request({"id": chat.id, "title": "Renamed"})

        result = reconcile_chat_update(db_session, OWNER_ID, request)

        assert result.applied
        assert result.outcome is UpdateOutcome.APPLIED
        assert result.raise_for_outcome().title == "Renamed"

    def test_rejected_result_for_foreign_chat(self, chat, db_session):
        request = parse_update_request({"id": chat.id, "title": "Renamed"})

        result = reconcile_chat_update(db_session, OTHER_OWNER_ID, request)

        assert result.outcome is UpdateOutcome.REJECTED
        assert result.chat is None
        with pytest.raises(NotFoundError):
            result.raise_for_outcome()

    def test_metadata_write_losing_ownership_is_rejected(self, chat, db_session, monkeypatch):
        monkeypatch.setattr(chat_update_service.chat_crud, "update_chat_metadata", lambda *args: 0)
        request = parse_update_request({"id": chat.id, "title": "Renamed"})

        result = reconcile_chat_update(db_session, OWNER_ID, request)

        assert result.outcome is UpdateOutcome.REJECTED
        assert result.error.status_code == 404

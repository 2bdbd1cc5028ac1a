"""Integration tests for blob serving and attachment management.

Tests cover:
- Owner-only access to private blobs, anonymous access to shared ones
- Inline serving headers
- Attachment listing with total size
- Single and batch deletion with background blob cleanup
"""

import pytest

from chatrelay.db.models import Attachment
from tests.factories import create_attachment, create_chat, create_user, message_ids
from tests.helpers import auth_headers, wait_for_background


@pytest.fixture
def owner_id(db_session, test_user_id) -> str:
    return create_user(db_session, test_user_id)


@pytest.fixture
def stored_file(db_session, storage, owner_id) -> dict:
    """A private chat with one text attachment whose blob exists."""
    chat_id = create_chat(db_session, owner_id, messages=[("user", "see file")])
    [message_id] = message_ids(db_session, chat_id)
    path = f"{owner_id}/1700000000000-notes.txt"
    storage.put_object(path, b"hello")
    attachment_id = create_attachment(db_session, owner_id, message_id, path)
    return {
        "chat_id": chat_id,
        "message_id": message_id,
        "path": path,
        "attachment_id": attachment_id,
    }


class TestServeFile:
    """GET /api/files/{path}"""

    def test_owner_reads_inline(self, client, owner_id, stored_file):
        response = client.get(f"/api/files/{stored_file['path']}", headers=auth_headers(owner_id))

        assert response.status_code == 200
        assert response.content == b"hello"
        assert response.headers["content-type"].startswith("text/plain")
        assert response.headers["content-disposition"] == 'inline; filename="notes.txt"'
        assert response.headers["cache-control"] == "private, max-age=3600"

    def test_anonymous_private_file(self, client, stored_file):
        response = client.get(f"/api/files/{stored_file['path']}")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E_UNAUTHENTICATED"

    def test_other_user_forbidden(self, client, db_session, stored_file):
        other = create_user(db_session, "u-other")

        response = client.get(f"/api/files/{stored_file['path']}", headers=auth_headers(other))

        assert response.status_code == 403

    def test_shared_chat_is_public(self, client, db_session, owner_id, stored_file):
        share = client.post(
            f"/api/chats/{stored_file['chat_id']}/share", headers=auth_headers(owner_id)
        )
        assert share.status_code == 200

        response = client.get(f"/api/files/{stored_file['path']}")

        assert response.status_code == 200
        assert response.content == b"hello"

    def test_unknown_path(self, client, owner_id):
        response = client.get(f"/api/files/{owner_id}/missing.txt", headers=auth_headers(owner_id))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_FILE_NOT_FOUND"

    def test_missing_blob(self, client, storage, owner_id, stored_file):
        storage.delete_object(stored_file["path"])

        response = client.get(f"/api/files/{stored_file['path']}", headers=auth_headers(owner_id))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_FILE_NOT_FOUND"

    def test_invalid_token_rejected(self, client, stored_file):
        response = client.get(
            f"/api/files/{stored_file['path']}", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401


class TestListAttachments:
    """GET /api/attachments and GET /api/messages/{id}/attachments"""

    def test_lists_with_total_size(self, client, db_session, owner_id, stored_file):
        create_attachment(
            db_session,
            owner_id,
            stored_file["message_id"],
            f"{owner_id}/photo.png",
            file_name="photo.png",
            file_type="image/png",
            file_size=120,
        )

        response = client.get("/api/attachments", headers=auth_headers(owner_id))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["totalSize"] == 125
        assert [a["fileName"] for a in data["attachments"]] == ["photo.png", "notes.txt"]
        assert data["attachments"][0]["url"] == f"/api/files/{owner_id}/photo.png"

    def test_empty(self, client, owner_id):
        response = client.get("/api/attachments", headers=auth_headers(owner_id))

        assert response.json()["data"] == {"attachments": [], "totalSize": 0}

    def test_message_attachments(self, client, owner_id, stored_file):
        response = client.get(
            f"/api/messages/{stored_file['message_id']}/attachments",
            headers=auth_headers(owner_id),
        )

        assert response.status_code == 200
        [attachment] = response.json()["data"]
        assert attachment["id"] == stored_file["attachment_id"]
        assert attachment["messageId"] == stored_file["message_id"]

    def test_message_of_other_user(self, client, db_session, stored_file):
        other = create_user(db_session, "u-other")

        response = client.get(
            f"/api/messages/{stored_file['message_id']}/attachments",
            headers=auth_headers(other),
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_MESSAGE_NOT_FOUND"


class TestDeleteAttachments:
    """DELETE /api/attachments/{id} and POST /api/attachments/delete"""

    def test_delete_one(self, client, db_session, storage, owner_id, stored_file):
        response = client.delete(
            f"/api/attachments/{stored_file['attachment_id']}", headers=auth_headers(owner_id)
        )
        wait_for_background(client)

        assert response.status_code == 204
        db_session.expire_all()
        assert db_session.get(Attachment, stored_file["attachment_id"]) is None
        assert storage.deleted == [stored_file["path"]]

    def test_delete_one_not_owned(self, client, db_session, stored_file):
        other = create_user(db_session, "u-other")

        response = client.delete(
            f"/api/attachments/{stored_file['attachment_id']}", headers=auth_headers(other)
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_ATTACHMENT_NOT_FOUND"

    def test_delete_many(self, client, db_session, storage, owner_id, stored_file):
        second_path = f"{owner_id}/second.txt"
        storage.put_object(second_path, b"more")
        second_id = create_attachment(
            db_session, owner_id, stored_file["message_id"], second_path
        )

        response = client.post(
            "/api/attachments/delete",
            json={"attachmentIds": [stored_file["attachment_id"], second_id]},
            headers=auth_headers(owner_id),
        )
        wait_for_background(client)

        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": 2}
        assert storage.paths == []

    def test_delete_many_is_all_or_nothing(self, client, db_session, owner_id, stored_file):
        response = client.post(
            "/api/attachments/delete",
            json={"attachmentIds": [stored_file["attachment_id"], "missing"]},
            headers=auth_headers(owner_id),
        )

        assert response.status_code == 404
        db_session.expire_all()
        assert db_session.get(Attachment, stored_file["attachment_id"]) is not None

    def test_delete_many_requires_ids(self, client, owner_id):
        response = client.post(
            "/api/attachments/delete", json={"attachmentIds": []}, headers=auth_headers(owner_id)
        )

        assert response.status_code == 400

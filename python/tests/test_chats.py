"""Integration tests for the chat routes.

Tests cover:
- Chat creation from multipart form data, with and without files
- Listing grouped by recency, with title search
- Owner-only access with masked 404s
- Rename, delete, branch and share
- Message edit and truncation
- Title generation through a mocked provider
"""

import json

import httpx
import respx
from sqlalchemy import select

from chatrelay.db.models import Attachment, Chat, Message, MessageRole
from tests.factories import (
    create_api_key,
    create_attachment,
    create_chat,
    create_user,
    message_ids,
)
from tests.helpers import auth_headers, wait_for_background

OPENAI_URL = "https://api.openai.com/v1/chat/completions"


def _create(client, user_id, content="Hello there", model="gpt-4o-mini", files=None, **form):
    data = {"content": content, "model": model, **form}
    return client.post("/api/chats", data=data, files=files, headers=auth_headers(user_id))


# =============================================================================
# Create
# =============================================================================


class TestCreateChat:
    """POST /api/chats"""

    def test_create_returns_id(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)

        response = _create(client, test_user_id, temporaryId="tmp-1", isSearchEnabled="true")

        assert response.status_code == 201
        chat_id = response.json()["data"]["id"]
        chat = db_session.get(Chat, chat_id)
        assert chat.user_id == test_user_id
        assert chat.title == "New chat"
        [message] = chat.messages
        assert message.role == MessageRole.user
        assert message.content == "Hello there"
        assert message.model == "gpt-4o-mini"
        assert message.temporary_id == "tmp-1"
        assert message.has_web_search is True

    def test_default_system_prompt_is_first_message(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id, default_system_prompt="Answer in French.")

        chat_id = _create(client, test_user_id).json()["data"]["id"]

        roles = [m.role for m in db_session.get(Chat, chat_id).messages]
        assert roles == [MessageRole.system, MessageRole.user]

    def test_files_are_stored_after_commit(self, client, db_session, storage, test_user_id):
        create_user(db_session, test_user_id)

        response = _create(
            client,
            test_user_id,
            files=[
                ("files", ("notes.txt", b"some notes", "text/plain")),
                ("files", ("cat.png", b"\x89PNG", "image/png")),
            ],
        )
        assert response.status_code == 201
        wait_for_background(client)

        chat_id = response.json()["data"]["id"]
        rows = list(db_session.scalars(select(Attachment).order_by(Attachment.file_name)))
        assert [r.file_name for r in rows] == ["cat.png", "notes.txt"]
        assert all(r.file_path.startswith(f"{test_user_id}/{chat_id}/") for r in rows)
        assert storage.get_object(rows[1].file_path) == b"some notes"
        assert db_session.get(Chat, chat_id).messages[0].has_attachments is True

    def test_blank_content_rejected(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)

        response = _create(client, test_user_id, content="   ")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"
        assert db_session.scalar(select(Chat.id)) is None

    def test_missing_model_rejected(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)

        response = client.post(
            "/api/chats", data={"content": "hi"}, headers=auth_headers(test_user_id)
        )

        assert response.status_code == 400

    def test_oversized_file_rejected(self, client, db_session, test_user_id, monkeypatch):
        from chatrelay.config import clear_settings_cache

        monkeypatch.setenv("MAX_UPLOAD_BYTES", "4")
        clear_settings_cache()
        create_user(db_session, test_user_id)

        response = _create(
            client, test_user_id, files=[("files", ("big.txt", b"too large", "text/plain"))]
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_FILE_TOO_LARGE"

    def test_requires_authentication(self, client):
        response = client.post("/api/chats", data={"content": "hi", "model": "gpt-4o-mini"})
        assert response.status_code == 401


# =============================================================================
# Read
# =============================================================================


class TestListChats:
    """GET /api/chats"""

    def test_grouped_by_recency(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        older = create_chat(db_session, test_user_id, title="Old trip notes")
        newer = create_chat(db_session, test_user_id, title="Recipe ideas")

        response = client.get("/api/chats", headers=auth_headers(test_user_id))

        assert response.status_code == 200
        data = response.json()["data"]
        assert set(data) == {"today", "yesterday", "last7Days", "last30Days", "older"}
        assert [c["id"] for c in data["today"]] == [newer, older]

    def test_search_filters_by_title(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        create_chat(db_session, test_user_id, title="Old trip notes")
        wanted = create_chat(db_session, test_user_id, title="Recipe ideas")

        response = client.get("/api/chats?search=recipe", headers=auth_headers(test_user_id))

        assert [c["id"] for c in response.json()["data"]["today"]] == [wanted]

    def test_other_users_chats_hidden(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        other = create_user(db_session, username="other")
        create_chat(db_session, other)

        response = client.get("/api/chats", headers=auth_headers(test_user_id))

        assert all(not bucket for bucket in response.json()["data"].values())


class TestGetChat:
    """GET /api/chats/{id}"""

    def test_messages_exclude_system(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(
            db_session,
            test_user_id,
            messages=[("system", "prompt"), ("user", "q"), ("assistant", "a")],
        )

        response = client.get(f"/api/chats/{chat_id}", headers=auth_headers(test_user_id))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == chat_id
        assert data["isBranched"] is False
        assert [(m["role"], m["content"]) for m in data["messages"]] == [
            ("user", "q"),
            ("assistant", "a"),
        ]

    def test_attachments_have_file_urls(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id)
        path = f"{test_user_id}/{chat_id}/1_abcdef.txt"
        create_attachment(db_session, test_user_id, message_ids(db_session, chat_id)[0], path)

        data = client.get(f"/api/chats/{chat_id}", headers=auth_headers(test_user_id)).json()

        [attachment] = data["data"]["messages"][0]["attachments"]
        assert attachment["url"] == f"/api/files/{path}"
        assert attachment["fileName"] == "notes.txt"

    def test_not_owner_is_404(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        other = create_user(db_session, username="other")
        chat_id = create_chat(db_session, other)

        response = client.get(f"/api/chats/{chat_id}", headers=auth_headers(test_user_id))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_CHAT_NOT_FOUND"


# =============================================================================
# Update and delete
# =============================================================================


class TestRenameChat:
    """PATCH /api/chats/{id}"""

    def test_rename(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id)

        response = client.patch(
            f"/api/chats/{chat_id}", json={"title": "  Trip  "}, headers=auth_headers(test_user_id)
        )

        assert response.status_code == 200
        assert response.json()["data"]["title"] == "Trip"

    def test_blank_title_rejected(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id)

        response = client.patch(
            f"/api/chats/{chat_id}", json={"title": "   "}, headers=auth_headers(test_user_id)
        )

        assert response.status_code == 400


class TestDeleteChat:
    """DELETE /api/chats/{id}"""

    def test_delete_removes_rows_and_blobs(self, client, db_session, storage, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id)
        path = f"{test_user_id}/{chat_id}/1_abcdef.txt"
        storage.put_object(path, b"hello")
        create_attachment(db_session, test_user_id, message_ids(db_session, chat_id)[0], path)

        response = client.delete(f"/api/chats/{chat_id}", headers=auth_headers(test_user_id))
        wait_for_background(client)

        assert response.status_code == 204
        db_session.expire_all()
        assert db_session.get(Chat, chat_id) is None
        assert db_session.scalar(select(Message.id)) is None
        assert db_session.scalar(select(Attachment.id)) is None
        assert storage.deleted == [path]

    def test_delete_not_owner(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        other = create_user(db_session, username="other")
        chat_id = create_chat(db_session, other)

        response = client.delete(f"/api/chats/{chat_id}", headers=auth_headers(test_user_id))

        assert response.status_code == 404
        db_session.expire_all()
        assert db_session.get(Chat, chat_id) is not None


class TestEditAndTruncate:
    """PUT and DELETE /api/chats/{id}/messages"""

    def test_edit_drops_later_messages(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(
            db_session,
            test_user_id,
            messages=[("user", "q1"), ("assistant", "a1"), ("user", "q2")],
        )
        ids = message_ids(db_session, chat_id)

        response = client.put(
            f"/api/chats/{chat_id}/messages",
            json={"messageId": ids[0], "content": "q1 edited"},
            headers=auth_headers(test_user_id),
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"removed": 2}
        assert message_ids(db_session, chat_id) == [ids[0]]

    def test_edit_assistant_message_rejected(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(
            db_session, test_user_id, messages=[("user", "q"), ("assistant", "a")]
        )
        ids = message_ids(db_session, chat_id)

        response = client.put(
            f"/api/chats/{chat_id}/messages",
            json={"messageId": ids[1], "content": "x"},
            headers=auth_headers(test_user_id),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_MESSAGE_NOT_EDITABLE"

    def test_truncate_by_visible_index(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(
            db_session,
            test_user_id,
            messages=[("system", "p"), ("user", "q1"), ("assistant", "a1"), ("user", "q2")],
        )

        response = client.request(
            "DELETE",
            f"/api/chats/{chat_id}/messages",
            json={"messageIndex": 2},
            headers=auth_headers(test_user_id),
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"removed": 1}

    def test_truncate_rejects_non_integer_index(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id)

        response = client.request(
            "DELETE",
            f"/api/chats/{chat_id}/messages",
            json={"messageIndex": "0"},
            headers=auth_headers(test_user_id),
        )

        assert response.status_code == 400


# =============================================================================
# Branch and share
# =============================================================================


class TestBranchChat:
    """POST /api/chats/{id}/branch"""

    def test_branch_copies_prefix(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(
            db_session,
            test_user_id,
            messages=[("user", "q1"), ("assistant", "a1"), ("user", "q2")],
            title="Planning",
        )
        ids = message_ids(db_session, chat_id)
        path = f"{test_user_id}/{chat_id}/1_abcdef.txt"
        create_attachment(db_session, test_user_id, ids[0], path)

        response = client.post(
            f"/api/chats/{chat_id}/branch",
            json={"messageId": ids[1]},
            headers=auth_headers(test_user_id),
        )

        assert response.status_code == 201
        branch = db_session.get(Chat, response.json()["data"]["id"])
        assert branch.title == "Branch of Planning"
        assert branch.is_branched is True
        assert [m.content for m in branch.messages] == ["q1", "a1"]
        assert [a.file_path for a in branch.messages[0].attachments] == [path]

    def test_unknown_message(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id)

        response = client.post(
            f"/api/chats/{chat_id}/branch",
            json={"messageId": "missing"},
            headers=auth_headers(test_user_id),
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_MESSAGE_NOT_FOUND"


class TestShareChat:
    """Share lifecycle and the public read route."""

    def test_share_is_idempotent_and_public(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(
            db_session, test_user_id, messages=[("system", "secret prompt"), ("user", "hello")]
        )
        headers = auth_headers(test_user_id)

        first = client.post(f"/api/chats/{chat_id}/share", headers=headers).json()["data"]
        second = client.post(f"/api/chats/{chat_id}/share", headers=headers).json()["data"]

        assert first == second
        assert first["shareUrl"] == f"/share/{first['sharePath']}"
        assert len(first["sharePath"]) == 12

        public = client.get(f"/api/share/{first['sharePath']}")
        assert public.status_code == 200
        assert [m["content"] for m in public.json()["data"]["messages"]] == ["hello"]

        status = client.get(f"/api/chats/{chat_id}/share-status", headers=headers).json()
        assert status["data"]["isShared"] is True

    def test_unshare(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id, share_path="abcdefghijkl")
        headers = auth_headers(test_user_id)

        response = client.delete(f"/api/chats/{chat_id}/share", headers=headers)

        assert response.status_code == 204
        assert client.get("/api/share/abcdefghijkl").status_code == 404
        status = client.get(f"/api/chats/{chat_id}/share-status", headers=headers).json()
        assert status["data"] == {"isShared": False, "sharePath": None, "shareUrl": None}


# =============================================================================
# Title generation
# =============================================================================


class TestGenerateTitle:
    """POST /api/chats/{id}/title"""

    def test_title_from_first_user_message(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        create_api_key(db_session, test_user_id, "openai", "sk-openai")
        chat_id = create_chat(
            db_session, test_user_id, messages=[("user", "How do I bake bread?"), ("user", "Rye?")]
        )

        with respx.mock:
            route = respx.post(OPENAI_URL).respond(
                200, json={"id": "x", "choices": [{"message": {"content": '"Baking Bread."'}}]}
            )
            response = client.post(
                f"/api/chats/{chat_id}/title", headers=auth_headers(test_user_id)
            )

        assert response.status_code == 200
        assert response.json()["data"]["title"] == "Baking Bread"
        sent = json.loads(route.calls.last.request.content)
        assert sent["model"] == "gpt-4o-mini"
        assert sent["messages"][1] == {"role": "user", "content": "How do I bake bread?"}

    def test_no_credential(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id)

        response = client.post(f"/api/chats/{chat_id}/title", headers=auth_headers(test_user_id))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_NO_CREDENTIAL"

    def test_provider_failure(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        create_api_key(db_session, test_user_id, "openai", "sk-openai")
        chat_id = create_chat(db_session, test_user_id)

        with respx.mock:
            respx.post(OPENAI_URL).mock(side_effect=httpx.ConnectError("refused"))
            response = client.post(
                f"/api/chats/{chat_id}/title", headers=auth_headers(test_user_id)
            )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "E_UPSTREAM"

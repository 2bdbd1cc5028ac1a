"""Tests for the streamed chat reply (POST /api/chats/{id}).

Covers:
- Happy path: meta -> delta* -> done, user and assistant messages persisted
- Rejections before the first byte answered as JSON errors
- A provider failure midway ends the stream without done and saves nothing
- Web search sources and generated images as SSE events
- The reply is drained and saved even when the body is never read
- Message writes run on the threadpool, not the event loop
- SSE event formatting
"""

import asyncio
import base64
import json

import httpx
import respx
from sqlalchemy import select

from chatrelay.background import BackgroundRunner
from chatrelay.db.models import Attachment, Message, MessageRole
from chatrelay.services import conversation_assembly
from chatrelay.services.dispatcher import Dispatcher
from chatrelay.services.llm import LLMRouter
from chatrelay.services.llm.types import GeneratedFile, LLMChunk, LLMSource, Turn
from chatrelay.services.local_models import LocalModelDiscovery
from chatrelay.services.model_registry import ModelRegistry
from chatrelay.services.send_message_stream import ChatStream, chunk_events, format_sse_event
from tests.factories import create_api_key, create_chat, create_user
from tests.helpers import auth_headers, parse_sse, wait_for_background

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"
GEMINI_IMAGE_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-2.0-flash-exp:streamGenerateContent"
)


def sse_body(*payloads) -> bytes:
    return "".join(
        f"data: {p if isinstance(p, str) else json.dumps(p)}\n\n" for p in payloads
    ).encode()


def openai_text(*deltas: str, done: bool = True) -> bytes:
    payloads: list = [{"choices": [{"delta": {"content": d}}]} for d in deltas]
    if done:
        payloads.append("[DONE]")
    return sse_body(*payloads)


def _history(chat_id: str, *fresh: str) -> list[dict]:
    messages = [{"role": "user", "content": "Hello", "chatId": chat_id}]
    messages.extend({"id": f"tmp-{i}", "role": "user", "content": c} for i, c in enumerate(fresh))
    return messages


def _stream(client, user_id, chat_id, messages, model="gpt-4o-mini", **extra):
    return client.post(
        f"/api/chats/{chat_id}",
        json={"messages": messages, "model": model, **extra},
        headers=auth_headers(user_id),
    )


def _messages(db_session, chat_id):
    db_session.expire_all()
    return list(
        db_session.scalars(
            select(Message).where(Message.chat_id == chat_id).order_by(Message.created_at)
        )
    )


class TestStreamHappyPath:
    """Streaming a reply end to end."""

    def test_events_and_persistence(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        create_api_key(db_session, test_user_id, "openai", "sk-openai")
        chat_id = create_chat(db_session, test_user_id)

        with respx.mock:
            route = respx.post(OPENAI_CHAT_URL).respond(200, content=openai_text("Hi", " there"))
            response = _stream(client, test_user_id, chat_id, _history(chat_id, "How are you?"))

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(response.text)
        assert events[0] == (
            "meta", {"chatId": chat_id, "model": "gpt-4o-mini", "provider": "openai"}
        )
        assert events[1:3] == [("delta", {"delta": "Hi"}), ("delta", {"delta": " there"})]
        assert events[-1][0] == "done"

        stored = _messages(db_session, chat_id)
        assert [(m.role, m.content) for m in stored] == [
            (MessageRole.user, "Hello"),
            (MessageRole.user, "How are you?"),
            (MessageRole.assistant, "Hi there"),
        ]
        assert stored[1].temporary_id == "tmp-0"
        assert stored[2].id == events[-1][1]["messageId"]
        assert stored[2].model == "gpt-4o-mini"

        sent = json.loads(route.calls.last.request.content)
        assert [m["content"] for m in sent["messages"]] == ["Hello", "How are you?"]

    def test_regenerate_does_not_save_user_message(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        create_api_key(db_session, test_user_id, "openai", "sk-openai")
        chat_id = create_chat(db_session, test_user_id)

        with respx.mock:
            respx.post(OPENAI_CHAT_URL).respond(200, content=openai_text("Again"))
            response = _stream(client, test_user_id, chat_id, _history(chat_id))

        assert parse_sse(response.text)[-1][0] == "done"
        assert [m.content for m in _messages(db_session, chat_id)] == ["Hello", "Again"]

    def test_attachment_from_data_url_reaches_provider(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        create_api_key(db_session, test_user_id, "openai", "sk-openai")
        chat_id = create_chat(db_session, test_user_id)
        data_url = "data:text/plain;base64," + base64.b64encode(b"notes").decode()
        messages = _history(chat_id, "Summarize")
        messages[-1]["experimental_attachments"] = [
            {"name": "notes.txt", "contentType": "text/plain", "url": data_url}
        ]

        with respx.mock:
            route = respx.post(OPENAI_CHAT_URL).respond(200, content=openai_text("Done"))
            response = _stream(client, test_user_id, chat_id, messages)
        wait_for_background(client)

        assert parse_sse(response.text)[-1][0] == "done"
        content = json.loads(route.calls.last.request.content)["messages"][-1]["content"]
        assert content[0] == {"type": "text", "text": "Summarize"}
        assert content[1]["type"] == "file"
        [attachment] = db_session.scalars(select(Attachment)).all()
        assert attachment.file_name == "notes.txt"


class TestStreamRejections:
    """Failures before the first byte are JSON errors."""

    def test_unknown_chat(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)

        response = _stream(client, test_user_id, "missing", [{"role": "user", "content": "hi"}])

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_CHAT_NOT_FOUND"

    def test_invalid_model_still_saves_user_message(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id)

        response = _stream(
            client, test_user_id, chat_id, _history(chat_id, "Question"), model="gpt-99"
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_MODEL"
        assert [m.content for m in _messages(db_session, chat_id)] == ["Hello", "Question"]

    def test_no_credential(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id)

        response = _stream(client, test_user_id, chat_id, _history(chat_id))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_NO_CREDENTIAL"

    def test_provider_refuses_before_output(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        create_api_key(db_session, test_user_id, "openai", "sk-bad")
        chat_id = create_chat(db_session, test_user_id)

        with respx.mock:
            respx.post(OPENAI_CHAT_URL).respond(
                401, json={"error": {"message": "Incorrect API key provided"}}
            )
            response = _stream(client, test_user_id, chat_id, _history(chat_id))

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "E_UPSTREAM"
        assert "Incorrect API key" in error["message"]
        assert [m.role for m in _messages(db_session, chat_id)] == [MessageRole.user]

    def test_empty_history_rejected(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        chat_id = create_chat(db_session, test_user_id)

        response = _stream(client, test_user_id, chat_id, [])

        assert response.status_code == 400


class TestStreamFailureMidway:
    """A stream that breaks after output ends without done."""

    def test_no_done_and_nothing_saved(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        create_api_key(db_session, test_user_id, "openai", "sk-openai")
        chat_id = create_chat(db_session, test_user_id)

        with respx.mock:
            respx.post(OPENAI_CHAT_URL).respond(200, content=openai_text("Partial", done=False))
            response = _stream(client, test_user_id, chat_id, _history(chat_id))

        assert response.status_code == 200
        events = parse_sse(response.text)
        assert [name for name, _ in events] == ["meta", "delta"]
        assert [m.role for m in _messages(db_session, chat_id)] == [MessageRole.user]


class TestUnreadBody:
    """The drain runs to completion whether or not the client reads the body."""

    @respx.mock
    async def test_reply_saved_without_consuming_events(
        self, db_session, session_factory, storage
    ):
        user_id = create_user(db_session)
        create_api_key(db_session, user_id, "openai", "sk-openai")
        chat_id = create_chat(db_session, user_id)
        respx.post(OPENAI_CHAT_URL).respond(200, content=openai_text("Hi", " there"))
        runner = BackgroundRunner(max_workers=2)

        async with httpx.AsyncClient() as http:
            dispatcher = Dispatcher(LLMRouter(http), ModelRegistry(), LocalModelDiscovery(http))
            plan = await dispatcher.prepare(
                db_session, user_id, "gpt-4o-mini", [Turn("user", "Hello")]
            )
            stream = ChatStream(
                dispatcher, plan, runner, storage, session_factory, chat_id=chat_id, user_id=user_id
            )
            await stream.start()
            await runner.wait_tasks()
        await runner.shutdown()

        stored = _messages(db_session, chat_id)
        assert [(m.role, m.content) for m in stored] == [
            (MessageRole.user, "Hello"),
            (MessageRole.assistant, "Hi there"),
        ]
        assert runner.stats["failed"] == 0


class TestEventLoopOffload:
    """Sync database work on the stream path runs on worker threads."""

    def test_user_message_saved_off_the_loop(
        self, client, db_session, test_user_id, monkeypatch
    ):
        create_user(db_session, test_user_id)
        create_api_key(db_session, test_user_id, "openai", "sk-openai")
        chat_id = create_chat(db_session, test_user_id)
        loop_running = []
        save = conversation_assembly.add_message_to_chat

        def recording_save(*args, **kwargs):
            loop_running.append(_has_running_loop())
            return save(*args, **kwargs)

        monkeypatch.setattr(conversation_assembly, "add_message_to_chat", recording_save)

        with respx.mock:
            respx.post(OPENAI_CHAT_URL).respond(200, content=openai_text("Ok"))
            response = _stream(client, test_user_id, chat_id, _history(chat_id, "Next"))

        assert parse_sse(response.text)[-1][0] == "done"
        assert loop_running == [False]


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class TestStreamExtras:
    """Sources and generated files."""

    def test_web_search_sources(self, client, db_session, test_user_id):
        create_user(db_session, test_user_id)
        create_api_key(db_session, test_user_id, "openai", "sk-openai")
        chat_id = create_chat(db_session, test_user_id)

        with respx.mock:
            respx.post(OPENAI_RESPONSES_URL).respond(
                200,
                content=sse_body(
                    {"type": "response.output_text.delta", "delta": "It is sunny."},
                    {
                        "type": "response.output_text.annotation.added",
                        "annotation": {
                            "type": "url_citation",
                            "url": "https://weather.example/today",
                            "title": "Weather",
                        },
                    },
                    {"type": "response.completed", "response": {"id": "resp_1"}},
                ),
            )
            response = _stream(
                client, test_user_id, chat_id, _history(chat_id), isSearchEnabled=True
            )

        events = parse_sse(response.text)
        assert ("source", {"url": "https://weather.example/today", "title": "Weather"}) in events
        assistant = _messages(db_session, chat_id)[-1]
        assert assistant.sources == [{"title": "Weather", "url": "https://weather.example/today"}]

    def test_generated_image(self, client, db_session, storage, test_user_id):
        create_user(db_session, test_user_id)
        create_api_key(db_session, test_user_id, "google", "g-key")
        chat_id = create_chat(db_session, test_user_id, messages=[("system", "Be kind.")])
        image = base64.b64encode(b"png-bytes").decode()
        messages = [{"role": "system", "content": "Be kind.", "chatId": chat_id}]
        messages.append({"id": "tmp-1", "role": "user", "content": "Draw a red fox"})

        with respx.mock:
            route = respx.post(GEMINI_IMAGE_URL).respond(
                200,
                content=sse_body(
                    {
                        "candidates": [
                            {
                                "content": {
                                    "parts": [
                                        {"text": "Here is your fox."},
                                        {"inlineData": {"mimeType": "image/png", "data": image}},
                                    ]
                                },
                                "finishReason": "STOP",
                            }
                        ]
                    }
                ),
            )
            response = _stream(
                client, test_user_id, chat_id, messages, model="gemini-2.0-flash-exp"
            )
        wait_for_background(client)

        events = parse_sse(response.text)
        assert ("file", {"mimeType": "image/png", "data": image}) in events
        sent = json.loads(route.calls.last.request.content)
        assert "systemInstruction" not in sent
        assert sent["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]

        assistant = _messages(db_session, chat_id)[-1]
        [attachment] = db_session.scalars(
            select(Attachment).where(Attachment.message_id == assistant.id)
        ).all()
        assert attachment.file_name.startswith("generated-image-")
        assert attachment.file_name.endswith("-1.png")
        assert storage.get_object(attachment.file_path) == b"png-bytes"


class TestSseFormatting:
    """Provider chunks to SSE events."""

    def test_format(self):
        assert format_sse_event("delta", {"delta": "x"}) == 'event: delta\ndata: {"delta": "x"}\n\n'

    def test_chunk_event_order(self):
        chunk = LLMChunk(
            delta_text="text",
            done=False,
            reasoning_delta="why",
            sources=(LLMSource("https://a.example", None),),
            files=(GeneratedFile(b"\x00", "image/png"),),
        )

        events = [e.split("\n")[0] for e in chunk_events(chunk)]

        assert events == ["event: reasoning", "event: delta", "event: source", "event: file"]

    def test_terminal_chunk_has_no_events(self):
        assert chunk_events(LLMChunk(delta_text="", done=True)) == []

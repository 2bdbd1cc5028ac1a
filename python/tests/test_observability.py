"""Tests for logging context and provider-call instrumentation.

Covers:
- safe_kv never-log guard
- Logging ContextVars (request, path, chat, task)
- LLM router event emission (llm.request.started / finished / failed)
- No sensitive data in logs (prompt, api_key, content)
"""

import httpx
import pytest
import respx
from structlog.testing import capture_logs

from chatrelay.logging import (
    add_request_context,
    clear_request_context,
    clear_task_context,
    configure_task_logging,
    set_chat_id,
    set_request_context,
)
from chatrelay.services.llm import LLMError, LLMRouter
from chatrelay.services.llm.types import LLMCallContext, LLMOperation, LLMRequest, Turn
from chatrelay.services.redact import FORBIDDEN_KEYS, safe_kv

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


class TestSafeKv:
    """Tests for safe_kv guard."""

    def test_allows_safe_keys(self):
        assert safe_kv(provider="openai", message_chars=12) == {
            "provider": "openai",
            "message_chars": 12,
        }

    def test_allows_redacted_suffix_keys(self):
        assert safe_kv(content_chars=10, prompt_sha256="ab") == {
            "content_chars": 10,
            "prompt_sha256": "ab",
        }

    @pytest.mark.parametrize("key", sorted(FORBIDDEN_KEYS))
    def test_blocks_forbidden_keys_in_dev(self, key):
        with pytest.raises(ValueError, match="Forbidden log keys"):
            safe_kv(**{key: "x"})

    def test_warns_in_prod(self):
        with capture_logs() as logs:
            result = safe_kv(_env="prod", api_key="sk-123")

        assert result == {"api_key": "sk-123"}
        assert logs[0]["event"] == "safe_kv_violation"
        assert logs[0]["forbidden_keys"] == ["api_key"]


class TestContextVars:
    def setup_method(self):
        clear_request_context()
        clear_task_context()

    def teardown_method(self):
        clear_request_context()
        clear_task_context()

    def test_request_fields_injected(self):
        set_request_context("req-1", path="/api/chats/abc", method="POST")
        set_chat_id("abc")

        event_dict = add_request_context(None, "info", {})

        assert event_dict == {
            "request_id": "req-1",
            "path": "/api/chats/abc",
            "method": "POST",
            "chat_id": "abc",
        }

    def test_explicit_fields_win(self):
        set_chat_id("from-context")

        event_dict = add_request_context(None, "info", {"chat_id": "explicit"})

        assert event_dict["chat_id"] == "explicit"

    def test_task_fields_injected(self):
        configure_task_logging(
            request_id="req-2", task_name="persist_attachments", task_id="bg_1", user_id="u1"
        )

        event_dict = add_request_context(None, "info", {})

        assert event_dict["task_name"] == "persist_attachments"
        assert event_dict["task_id"] == "bg_1"
        assert event_dict["request_id"] == "req-2"
        assert event_dict["user_id"] == "u1"

    def test_task_context_drops_previous_chat(self):
        set_chat_id("previous-job")

        configure_task_logging(task_name="persist_generated_files", task_id="bg_2")

        assert "chat_id" not in add_request_context(None, "info", {})

    def test_clear_clears_all(self):
        set_request_context("req-1", path="/x", method="GET")
        set_chat_id("c1")
        clear_request_context()

        assert add_request_context(None, "info", {}) == {}


@pytest.fixture
async def router():
    async with httpx.AsyncClient() as client:
        yield LLMRouter(client)


def _request() -> LLMRequest:
    return LLMRequest(
        model_name="gpt-4o-mini",
        messages=[Turn("user", "my secret question")],
        max_tokens=64,
    )


class TestRouterEvents:
    @respx.mock
    async def test_success_events(self, router):
        respx.post(OPENAI_CHAT_URL).respond(
            200,
            json={
                "choices": [{"message": {"content": "answer"}}],
                "usage": {"prompt_tokens": 4, "completion_tokens": 1, "total_tokens": 5},
            },
        )

        with capture_logs() as logs:
            await router.generate(
                "openai",
                _request(),
                "sk-live-secret",
                key_mode="personal",
                call_context=LLMCallContext(LLMOperation.TITLE, chat_id="c1"),
            )

        events = [e for e in logs if e["event"].startswith("llm.request.")]
        assert [e["event"] for e in events] == ["llm.request.started", "llm.request.finished"]
        finished = events[1]
        assert finished["outcome"] == "success"
        assert finished["tokens_total"] == 5
        assert finished["llm_operation"] == "title"
        assert finished["chat_id"] == "c1"
        assert finished["message_chars"] == len("my secret question")

        rendered = repr(logs)
        assert "my secret question" not in rendered
        assert "sk-live-secret" not in rendered

    @respx.mock
    async def test_failure_event(self, router):
        respx.post(OPENAI_CHAT_URL).respond(
            429, json={"error": {"message": "Slow down"}}, headers={"x-request-id": "req_abc"}
        )

        with capture_logs() as logs, pytest.raises(LLMError):
            await router.generate("openai", _request(), "sk-live-secret")

        [failed] = [e for e in logs if e["event"] == "llm.request.failed"]
        assert failed["error_class"] == "E_LLM_RATE_LIMIT"
        assert failed["provider_request_id"] == "req_abc"
        assert failed["llm_operation"] == "other"

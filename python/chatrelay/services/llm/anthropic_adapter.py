"""Anthropic LLM adapter implementation.

- Endpoint: POST https://api.anthropic.com/v1/messages
- Headers: x-api-key: <key>, anthropic-version: 2023-06-01, Content-Type: application/json

Turn conversion:
- System turns extracted to the separate "system" field
- Attachment parts become content blocks: images as base64 image blocks, PDFs
  as base64 document blocks, text/* files as plain-text document blocks

Thinking:
- thinking: {"type": "enabled", "budget_tokens": N}; temperature is omitted
- thinking_delta events are surfaced as reasoning

Streaming:
- Events: message_start (id), content_block_delta (text_delta, thinking_delta),
  message_delta (usage), message_stop (terminal)
"""

import base64
import json
from collections.abc import AsyncIterator

import httpx

from chatrelay.logging import get_logger
from chatrelay.services.llm.adapter import LLMAdapter, raise_for_status_with_body
from chatrelay.services.llm.errors import LLMError, LLMErrorClass
from chatrelay.services.llm.types import (
    FilePart,
    ImagePart,
    LLMChunk,
    LLMRequest,
    LLMResponse,
    LLMUsage,
    TextPart,
    Turn,
)

logger = get_logger(__name__)

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_API_VERSION = "2023-06-01"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class AnthropicAdapter(LLMAdapter):
    """Anthropic API adapter for the messages endpoint."""

    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: int,
        base_url: str | None = None,
    ) -> LLMResponse:
        """Non-streaming message generation."""
        response = await self._client.post(
            self._messages_url(base_url),
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=False),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        )
        response.raise_for_status()
        return self._parse_response(response.json())

    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: int,
        base_url: str | None = None,
    ) -> AsyncIterator[LLMChunk]:
        async with self._client.stream(
            "POST",
            self._messages_url(base_url),
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=True),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        ) as response:
            await raise_for_status_with_body(response)

            provider_request_id: str | None = None
            input_tokens: int | None = None
            usage: LLMUsage | None = None
            received_stop = False

            async for line in response.aiter_lines():
                if not line:
                    continue

                # Anthropic SSE format: "event: <type>\ndata: {...}"
                if line.startswith("event: "):
                    if line[7:] == "message_stop":
                        received_stop = True
                        yield LLMChunk(
                            delta_text="",
                            done=True,
                            usage=usage,
                            provider_request_id=provider_request_id,
                        )
                        break
                    continue

                if not line.startswith("data: "):
                    continue

                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    continue

                event_type = data.get("type", "")

                if event_type == "message_start":
                    message = data.get("message", {})
                    provider_request_id = message.get("id")
                    input_tokens = (message.get("usage") or {}).get("input_tokens")
                    continue

                if event_type == "content_block_delta":
                    delta = data.get("delta", {})
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield LLMChunk(delta_text=delta["text"], done=False)
                    elif delta.get("type") == "thinking_delta" and delta.get("thinking"):
                        yield LLMChunk(delta_text="", done=False, reasoning_delta=delta["thinking"])
                    continue

                if event_type == "message_delta":
                    usage_data = data.get("usage", {})
                    if usage_data:
                        output_tokens = usage_data.get("output_tokens")
                        total = None
                        if input_tokens is not None and output_tokens is not None:
                            total = input_tokens + output_tokens
                        usage = LLMUsage(
                            prompt_tokens=input_tokens,
                            completion_tokens=output_tokens,
                            total_tokens=total,
                        )
                    continue

                if event_type == "error":
                    error = data.get("error") or {}
                    raise LLMError(
                        LLMErrorClass.PROVIDER_DOWN,
                        error.get("message") or "Anthropic stream error",
                        provider="anthropic",
                    )

            if not received_stop:
                raise LLMError(
                    LLMErrorClass.PROVIDER_DOWN,
                    "Anthropic stream ended without message_stop event",
                    provider="anthropic",
                )

    def _messages_url(self, base_url: str | None) -> str:
        return f"{(base_url or ANTHROPIC_BASE_URL).rstrip('/')}/messages"

    def _build_headers(self, api_key: str | None) -> dict[str, str]:
        return {
            "x-api-key": api_key or "",
            "anthropic-version": ANTHROPIC_API_VERSION,
            "Content-Type": "application/json",
        }

    def _build_request_body(self, req: LLMRequest, stream: bool) -> dict:
        """Build request body from LLMRequest. System turns go to "system"."""
        system_parts = []
        messages = []
        for turn in req.messages:
            if turn.role == "system":
                system_parts.append(turn.text)
            else:
                messages.append(self._turn_to_message(turn))

        body: dict = {
            "model": req.model_name,
            "max_tokens": req.max_tokens,
            "messages": messages,
            "stream": stream,
        }

        system_prompt = "\n\n".join(p for p in system_parts if p)
        if system_prompt:
            body["system"] = system_prompt

        if req.thinking_budget:
            body["thinking"] = {"type": "enabled", "budget_tokens": req.thinking_budget}
        elif req.temperature is not None:
            body["temperature"] = req.temperature

        return body

    def _turn_to_message(self, turn: Turn) -> dict:
        if isinstance(turn.content, str):
            return {"role": turn.role, "content": turn.content}
        return {"role": turn.role, "content": [self._part_to_block(p) for p in turn.content]}

    def _part_to_block(self, part: TextPart | ImagePart | FilePart) -> dict:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if isinstance(part, ImagePart):
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": part.mime_type, "data": _b64(part.data)},
            }
        if part.mime_type.startswith("text/"):
            return {
                "type": "document",
                "title": part.filename,
                "source": {
                    "type": "text",
                    "media_type": "text/plain",
                    "data": part.data.decode("utf-8", errors="replace"),
                },
            }
        return {
            "type": "document",
            "title": part.filename,
            "source": {"type": "base64", "media_type": part.mime_type, "data": _b64(part.data)},
        }

    def _parse_response(self, data: dict) -> LLMResponse:
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )

        usage = None
        usage_data = data.get("usage")
        if usage_data:
            input_tokens = usage_data.get("input_tokens")
            output_tokens = usage_data.get("output_tokens")
            total = None
            if input_tokens is not None and output_tokens is not None:
                total = input_tokens + output_tokens
            usage = LLMUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=total,
            )

        return LLMResponse(text=text, usage=usage, provider_request_id=data.get("id"))

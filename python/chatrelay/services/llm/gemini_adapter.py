"""Google Gemini LLM adapter implementation.

- Non-streaming: POST {base}/models/{model}:generateContent
- Streaming: POST {base}/models/{model}:streamGenerateContent?alt=sse

Auth:
- Header: x-goog-api-key: <key>
- NEVER put key in query param

Turn conversion:
- System turns -> systemInstruction.parts[].text
- "assistant" role -> "model" role
- Image and file parts -> inlineData {mimeType, data (base64)}

Generation options:
- thinking_budget -> generationConfig.thinkingConfig {includeThoughts, thinkingBudget}
- response_modalities -> generationConfig.responseModalities
- search_grounding -> tools: [{"google_search": {}}]

Streaming:
- Each event: data: {"candidates":[{"content":{"parts":[...]}}]}
- Parts with thought=true are reasoning; inlineData parts are generated files
- groundingMetadata.groundingChunks[].web -> URL sources
- Terminal: an event with a finishReason (STOP, MAX_TOKENS, ...)
"""

import base64
import binascii
import json
from collections.abc import AsyncIterator

import httpx

from chatrelay.logging import get_logger
from chatrelay.services.llm.adapter import LLMAdapter, raise_for_status_with_body
from chatrelay.services.llm.errors import LLMError, LLMErrorClass
from chatrelay.services.llm.types import (
    GeneratedFile,
    LLMChunk,
    LLMRequest,
    LLMResponse,
    LLMSource,
    LLMUsage,
    TextPart,
    Turn,
)

logger = get_logger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Finish reasons that still end the stream normally
TERMINAL_FINISH_REASONS = frozenset({"STOP", "MAX_TOKENS"})


def _usage_from(metadata: dict | None) -> LLMUsage | None:
    if not metadata:
        return None
    return LLMUsage(
        prompt_tokens=metadata.get("promptTokenCount"),
        completion_tokens=metadata.get("candidatesTokenCount"),
        total_tokens=metadata.get("totalTokenCount"),
    )


class GeminiAdapter(LLMAdapter):
    """Google Gemini API adapter."""

    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: int,
        base_url: str | None = None,
    ) -> LLMResponse:
        """Non-streaming content generation."""
        url = f"{self._models_url(base_url)}/{req.model_name}:generateContent"
        response = await self._client.post(
            url,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req),
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
        url = f"{self._models_url(base_url)}/{req.model_name}:streamGenerateContent?alt=sse"

        async with self._client.stream(
            "POST",
            url,
            headers=self._build_headers(api_key),
            json=self._build_request_body(req),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        ) as response:
            await raise_for_status_with_body(response)

            received_stop = False
            usage: LLMUsage | None = None
            seen_urls: set[str] = set()

            async for line in response.aiter_lines():
                if not line or not line.startswith("data: "):
                    continue

                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    continue

                usage = _usage_from(data.get("usageMetadata")) or usage

                candidates = data.get("candidates", [])
                if not candidates:
                    continue
                candidate = candidates[0]

                chunk = self._candidate_to_chunk(candidate, seen_urls)
                if not chunk.is_empty:
                    yield chunk

                finish_reason = candidate.get("finishReason")
                if finish_reason in TERMINAL_FINISH_REASONS:
                    received_stop = True
                    yield LLMChunk(delta_text="", done=True, usage=usage)
                    break
                if finish_reason:
                    raise LLMError(
                        LLMErrorClass.PROVIDER_DOWN,
                        f"Gemini stopped generating: {finish_reason}",
                        provider="google",
                    )

            if not received_stop:
                raise LLMError(
                    LLMErrorClass.PROVIDER_DOWN,
                    "Gemini stream ended without STOP finish reason",
                    provider="google",
                )

    def _candidate_to_chunk(self, candidate: dict, seen_urls: set[str]) -> LLMChunk:
        text = ""
        reasoning = ""
        files = []
        for part in (candidate.get("content") or {}).get("parts", []):
            if "text" in part:
                if part.get("thought"):
                    reasoning += part["text"]
                else:
                    text += part["text"]
            inline = part.get("inlineData")
            if inline and inline.get("data"):
                try:
                    files.append(
                        GeneratedFile(
                            data=base64.b64decode(inline["data"]),
                            mime_type=inline.get("mimeType", "image/png"),
                        )
                    )
                except (binascii.Error, ValueError):
                    logger.warning("gemini_inline_data_undecodable")

        sources = []
        grounding = candidate.get("groundingMetadata") or {}
        for grounding_chunk in grounding.get("groundingChunks", []):
            web = grounding_chunk.get("web") or {}
            url = web.get("uri")
            if url and url not in seen_urls:
                seen_urls.add(url)
                sources.append(LLMSource(url=url, title=web.get("title")))

        return LLMChunk(
            delta_text=text,
            done=False,
            reasoning_delta=reasoning,
            sources=tuple(sources),
            files=tuple(files),
        )

    def _models_url(self, base_url: str | None) -> str:
        return f"{(base_url or GEMINI_BASE_URL).rstrip('/')}/models"

    def _build_headers(self, api_key: str | None) -> dict[str, str]:
        # Key goes in a header, never in the query string
        return {
            "x-goog-api-key": api_key or "",
            "Content-Type": "application/json",
        }

    def _build_request_body(self, req: LLMRequest) -> dict:
        system_parts = []
        contents = []
        for turn in req.messages:
            if turn.role == "system":
                if turn.text:
                    system_parts.append({"text": turn.text})
            else:
                contents.append(self._turn_to_content(turn))

        generation_config: dict = {"maxOutputTokens": req.max_tokens}
        if req.temperature is not None:
            generation_config["temperature"] = req.temperature
        if req.thinking_budget:
            generation_config["thinkingConfig"] = {
                "includeThoughts": True,
                "thinkingBudget": req.thinking_budget,
            }
        if req.response_modalities:
            generation_config["responseModalities"] = list(req.response_modalities)

        body: dict = {"contents": contents, "generationConfig": generation_config}
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        if req.search_grounding:
            body["tools"] = [{"google_search": {}}]

        return body

    def _turn_to_content(self, turn: Turn) -> dict:
        """Gemini uses "model" instead of "assistant" for the role."""
        role = "model" if turn.role == "assistant" else turn.role
        parts = []
        for part in turn.parts:
            if isinstance(part, TextPart):
                parts.append({"text": part.text})
            else:
                parts.append(
                    {
                        "inlineData": {
                            "mimeType": part.mime_type,
                            "data": base64.b64encode(part.data).decode("ascii"),
                        }
                    }
                )
        return {"role": role, "parts": parts}

    def _parse_response(self, data: dict) -> LLMResponse:
        candidates = data.get("candidates", [])
        if not candidates:
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "Gemini response missing candidates",
                provider="google",
            )

        parts = (candidates[0].get("content") or {}).get("parts", [])
        text = "".join(p.get("text", "") for p in parts if "text" in p and not p.get("thought"))

        return LLMResponse(
            text=text,
            usage=_usage_from(data.get("usageMetadata")),
            provider_request_id=None,
        )

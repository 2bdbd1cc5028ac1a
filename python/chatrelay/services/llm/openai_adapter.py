"""OpenAI-format LLM adapters.

Chat Completions:
- Endpoint: POST {base_url}/chat/completions
- Headers: Authorization: Bearer <key>, Content-Type: application/json
- Streaming: Server-Sent Events with data: {...} format
- Terminal event: data: [DONE]
- Usage arrives in a choice-less chunk before [DONE] (stream_options.include_usage)

Responses API (only when web search is requested):
- Endpoint: POST {base_url}/responses
- tools: [{"type": "web_search_preview", "search_context_size": "high"}], forced
- Events: response.output_text.delta, response.output_text.annotation.added
  (url_citation), response.completed (terminal, carries usage)

The same wire format serves OpenRouter (with attribution headers) and local
LM Studio / Ollama servers (OpenAI-compatible /v1 endpoints, no key).
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
    LLMSource,
    LLMUsage,
    TextPart,
    Turn,
)

logger = get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

WEB_SEARCH_TOOL = {"type": "web_search_preview", "search_context_size": "high"}


def _data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def _usage_from(data: dict | None, input_key: str, output_key: str) -> LLMUsage | None:
    if not data:
        return None
    prompt = data.get(input_key)
    completion = data.get(output_key)
    total = data.get("total_tokens")
    if total is None and prompt is not None and completion is not None:
        total = prompt + completion
    return LLMUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


class OpenAIAdapter(LLMAdapter):
    """OpenAI API adapter for chat completions and search via the Responses API."""

    provider_name = "openai"
    default_base_url = OPENAI_BASE_URL
    requires_api_key = True

    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: int,
        base_url: str | None = None,
    ) -> LLMResponse:
        """Non-streaming chat completion."""
        response = await self._client.post(
            self._chat_url(base_url),
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=False),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        )
        response.raise_for_status()
        return self._parse_response(response.json(), response.headers)

    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: int,
        base_url: str | None = None,
    ) -> AsyncIterator[LLMChunk]:
        if req.web_search:
            async for chunk in self._stream_responses(req, api_key, timeout_s, base_url):
                yield chunk
            return

        async with self._client.stream(
            "POST",
            self._chat_url(base_url),
            headers=self._build_headers(api_key),
            json=self._build_request_body(req, stream=True),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        ) as response:
            await raise_for_status_with_body(response)

            provider_request_id = response.headers.get("x-request-id")
            usage: LLMUsage | None = None
            received_done = False

            async for line in response.aiter_lines():
                if not line or not line.startswith("data: "):
                    continue

                data_str = line[6:]

                if data_str == "[DONE]":
                    received_done = True
                    yield LLMChunk(
                        delta_text="",
                        done=True,
                        usage=usage,
                        provider_request_id=provider_request_id,
                    )
                    break

                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    continue

                if data.get("usage"):
                    usage = _usage_from(data["usage"], "prompt_tokens", "completion_tokens")
                provider_request_id = provider_request_id or data.get("id")

                choices = data.get("choices") or []
                if not choices:
                    continue

                delta = choices[0].get("delta") or {}
                chunk = LLMChunk(
                    delta_text=delta.get("content") or "",
                    done=False,
                    reasoning_delta=delta.get("reasoning") or delta.get("reasoning_content") or "",
                    sources=self._annotation_sources(delta.get("annotations")),
                )
                if not chunk.is_empty:
                    yield chunk

            if not received_done:
                raise LLMError(
                    LLMErrorClass.PROVIDER_DOWN,
                    f"{self.provider_name} stream ended without [DONE] marker",
                    provider=self.provider_name,
                )

    async def _stream_responses(
        self,
        req: LLMRequest,
        api_key: str | None,
        timeout_s: int,
        base_url: str | None,
    ) -> AsyncIterator[LLMChunk]:
        """Web search through the Responses API."""
        url = f"{(base_url or self.default_base_url).rstrip('/')}/responses"
        async with self._client.stream(
            "POST",
            url,
            headers=self._build_headers(api_key),
            json=self._build_responses_body(req),
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        ) as response:
            await raise_for_status_with_body(response)

            provider_request_id = response.headers.get("x-request-id")
            received_completed = False

            async for line in response.aiter_lines():
                if not line or not line.startswith("data: "):
                    continue
                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    continue

                event_type = data.get("type", "")

                if event_type == "response.output_text.delta":
                    delta_text = data.get("delta") or ""
                    if delta_text:
                        yield LLMChunk(delta_text=delta_text, done=False)
                elif event_type == "response.reasoning_summary_text.delta":
                    reasoning = data.get("delta") or ""
                    if reasoning:
                        yield LLMChunk(delta_text="", done=False, reasoning_delta=reasoning)
                elif event_type == "response.output_text.annotation.added":
                    sources = self._annotation_sources([data.get("annotation") or {}])
                    if sources:
                        yield LLMChunk(delta_text="", done=False, sources=sources)
                elif event_type == "response.completed":
                    received_completed = True
                    body = data.get("response") or {}
                    yield LLMChunk(
                        delta_text="",
                        done=True,
                        usage=_usage_from(body.get("usage"), "input_tokens", "output_tokens"),
                        provider_request_id=provider_request_id or body.get("id"),
                    )
                    break
                elif event_type in ("response.failed", "error"):
                    error = (data.get("response") or {}).get("error") or data
                    raise LLMError(
                        LLMErrorClass.PROVIDER_DOWN,
                        error.get("message") or "Response failed",
                        provider=self.provider_name,
                    )

            if not received_completed:
                raise LLMError(
                    LLMErrorClass.PROVIDER_DOWN,
                    f"{self.provider_name} stream ended without response.completed event",
                    provider=self.provider_name,
                )

    def _annotation_sources(self, annotations: list | None) -> tuple[LLMSource, ...]:
        sources = []
        for annotation in annotations or []:
            if not isinstance(annotation, dict) or annotation.get("type") != "url_citation":
                continue
            # Chat Completions nests the citation, Responses API inlines it
            citation = annotation.get("url_citation") or annotation
            url = citation.get("url")
            if url:
                sources.append(LLMSource(url=url, title=citation.get("title")))
        return tuple(sources)

    def _chat_url(self, base_url: str | None) -> str:
        return f"{(base_url or self.default_base_url).rstrip('/')}/chat/completions"

    def _build_headers(self, api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _build_request_body(self, req: LLMRequest, stream: bool) -> dict:
        body: dict = {
            "model": req.model_name,
            "messages": [self._turn_to_message(turn) for turn in req.messages],
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}

        if req.reasoning_effort:
            # Reasoning models reject max_tokens and temperature
            body["reasoning_effort"] = req.reasoning_effort
            body["max_completion_tokens"] = req.max_tokens
        else:
            body["max_tokens"] = req.max_tokens
            if req.temperature is not None:
                body["temperature"] = req.temperature

        return body

    def _build_responses_body(self, req: LLMRequest) -> dict:
        system = [t.text for t in req.messages if t.role == "system"]
        body: dict = {
            "model": req.model_name,
            "input": [self._turn_to_input(t) for t in req.messages if t.role != "system"],
            "tools": [dict(WEB_SEARCH_TOOL)],
            "tool_choice": {"type": "web_search_preview"},
            "max_output_tokens": req.max_tokens,
            "stream": True,
        }
        if system:
            body["instructions"] = "\n\n".join(system)
        if req.reasoning_effort:
            body["reasoning"] = {"effort": req.reasoning_effort}
        elif req.temperature is not None:
            body["temperature"] = req.temperature
        return body

    def _turn_to_message(self, turn: Turn) -> dict:
        """Convert Turn to a Chat Completions message.

        Text-only turns keep a plain string content.
        """
        if isinstance(turn.content, str):
            return {"role": turn.role, "content": turn.content}

        content: list[dict] = []
        for part in turn.content:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                content.append(
                    {"type": "image_url", "image_url": {"url": _data_url(part.data, part.mime_type)}}
                )
            elif isinstance(part, FilePart):
                content.append(
                    {
                        "type": "file",
                        "file": {
                            "filename": part.filename,
                            "file_data": _data_url(part.data, part.mime_type),
                        },
                    }
                )
        return {"role": turn.role, "content": content}

    def _turn_to_input(self, turn: Turn) -> dict:
        """Convert Turn to a Responses API input item."""
        if isinstance(turn.content, str):
            return {"role": turn.role, "content": turn.content}

        content: list[dict] = []
        for part in turn.content:
            if isinstance(part, TextPart):
                content.append({"type": "input_text", "text": part.text})
            elif isinstance(part, ImagePart):
                content.append(
                    {"type": "input_image", "image_url": _data_url(part.data, part.mime_type)}
                )
            elif isinstance(part, FilePart):
                content.append(
                    {
                        "type": "input_file",
                        "filename": part.filename,
                        "file_data": _data_url(part.data, part.mime_type),
                    }
                )
        return {"role": turn.role, "content": content}

    def _parse_response(self, data: dict, headers: httpx.Headers) -> LLMResponse:
        choices = data.get("choices", [])
        if not choices:
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                f"{self.provider_name} response missing choices",
                provider=self.provider_name,
            )

        return LLMResponse(
            text=choices[0].get("message", {}).get("content") or "",
            usage=_usage_from(data.get("usage"), "prompt_tokens", "completion_tokens"),
            provider_request_id=headers.get("x-request-id") or data.get("id"),
        )


class OpenRouterAdapter(OpenAIAdapter):
    """OpenRouter aggregator. Model ids arrive already aliased ("vendor/model")."""

    provider_name = "openrouter"
    default_base_url = OPENROUTER_BASE_URL

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        app_url: str | None = None,
        app_name: str | None = None,
    ):
        super().__init__(client)
        self._app_url = app_url
        self._app_name = app_name

    def _build_headers(self, api_key: str | None) -> dict[str, str]:
        headers = super()._build_headers(api_key)
        if self._app_url:
            headers["HTTP-Referer"] = self._app_url
        if self._app_name:
            headers["X-Title"] = self._app_name
        return headers


class LocalOpenAIAdapter(OpenAIAdapter):
    """LM Studio and Ollama through their OpenAI-compatible /v1 endpoints.

    base_url is the server root as stored by the user ("http://host:1234");
    no key is sent.
    """

    requires_api_key = False

    def __init__(self, client: httpx.AsyncClient, provider_name: str):
        super().__init__(client)
        self.provider_name = provider_name

    def _chat_url(self, base_url: str | None) -> str:
        if not base_url:
            raise LLMError(
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                f"No endpoint configured for {self.provider_name}",
                provider=self.provider_name,
            )
        return f"{base_url.rstrip('/')}/v1/chat/completions"

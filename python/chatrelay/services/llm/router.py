"""LLM router: the provider dispatch table and error normalization.

- Resolves the adapter for a provider id from a single table; adding a
  provider is adding one entry
- Wraps adapter calls with error normalization (one place, not per adapter)
- Emits llm.request.started / llm.request.finished / llm.request.failed
  events through safe_kv()

Error handling:
- Provider 401/403 -> E_LLM_INVALID_KEY
- Provider 429 -> E_LLM_RATE_LIMIT
- Timeout -> E_LLM_TIMEOUT
- Context too large -> E_LLM_CONTEXT_TOO_LARGE
- Other -> E_LLM_PROVIDER_DOWN
The provider's own error message is kept on the LLMError when it sent one.
"""

import time
from collections.abc import AsyncIterator

import httpx

from chatrelay.logging import get_logger
from chatrelay.services.llm.adapter import LLMAdapter
from chatrelay.services.llm.anthropic_adapter import AnthropicAdapter
from chatrelay.services.llm.errors import (
    LLMError,
    LLMErrorClass,
    classify_provider_error,
    extract_provider_message,
)
from chatrelay.services.llm.gemini_adapter import GeminiAdapter
from chatrelay.services.llm.openai_adapter import (
    LocalOpenAIAdapter,
    OpenAIAdapter,
    OpenRouterAdapter,
)
from chatrelay.services.llm.types import (
    LLMCallContext,
    LLMChunk,
    LLMOperation,
    LLMRequest,
    LLMResponse,
)
from chatrelay.services.redact import safe_kv

logger = get_logger(__name__)

DEFAULT_TIMEOUT_S = 120


def _base_log_fields(
    provider: str,
    req: LLMRequest,
    key_mode: str,
    streaming: bool,
    call_ctx: LLMCallContext | None,
) -> dict:
    fields: dict = {
        "provider": provider,
        "model_name": req.model_name,
        "key_mode": key_mode,
        "streaming": streaming,
        "llm_operation": call_ctx.operation.value if call_ctx else LLMOperation.OTHER.value,
        "message_chars": sum(len(t.text) for t in req.messages),
        "num_turns": len(req.messages),
    }
    if call_ctx and call_ctx.chat_id:
        fields["chat_id"] = call_ctx.chat_id
    return fields


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class LLMRouter:
    """Routes LLM requests to provider adapters and normalizes their errors."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        openrouter_app_url: str | None = None,
        openrouter_app_name: str | None = None,
    ):
        self._client = client
        self._adapters: dict[str, LLMAdapter] = {
            "openai": OpenAIAdapter(client),
            "anthropic": AnthropicAdapter(client),
            "google": GeminiAdapter(client),
            "openrouter": OpenRouterAdapter(
                client, app_url=openrouter_app_url, app_name=openrouter_app_name
            ),
            "lmstudio": LocalOpenAIAdapter(client, "lmstudio"),
            "ollama": LocalOpenAIAdapter(client, "ollama"),
        }

    @property
    def providers(self) -> list[str]:
        return list(self._adapters)

    def is_provider_available(self, provider: str) -> bool:
        return provider in self._adapters

    def resolve_adapter(self, provider: str) -> LLMAdapter:
        """Get adapter for provider.

        Raises:
            LLMError: If provider is unknown.
        """
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise LLMError(
                LLMErrorClass.MODEL_NOT_AVAILABLE,
                f"Unknown provider: {provider}",
                provider=provider,
            )
        return adapter

    async def generate(
        self,
        provider: str,
        req: LLMRequest,
        api_key: str | None,
        *,
        base_url: str | None = None,
        timeout_s: int = DEFAULT_TIMEOUT_S,
        key_mode: str = "unknown",
        call_context: LLMCallContext | None = None,
    ) -> LLMResponse:
        """Non-streaming LLM generation with error normalization.

        Raises:
            LLMError: With normalized error class on failure.
        """
        adapter = self.resolve_adapter(provider)
        base = _base_log_fields(provider, req, key_mode, streaming=False, call_ctx=call_context)
        logger.info("llm.request.started", **safe_kv(**base))
        start = time.monotonic()

        try:
            response = await adapter.generate(
                req, api_key=api_key, timeout_s=timeout_s, base_url=base_url
            )
        except Exception as e:
            error = self._normalize(provider, e, base, start)
            if error is e:
                raise
            raise error from e

        usage = response.usage
        logger.info(
            "llm.request.finished",
            **safe_kv(
                **base,
                outcome="success",
                latency_ms=_elapsed_ms(start),
                tokens_input=usage.prompt_tokens if usage else None,
                tokens_output=usage.completion_tokens if usage else None,
                tokens_total=usage.total_tokens if usage else None,
                provider_request_id=response.provider_request_id,
            ),
        )
        return response

    async def generate_stream(
        self,
        provider: str,
        req: LLMRequest,
        api_key: str | None,
        *,
        base_url: str | None = None,
        timeout_s: int = DEFAULT_TIMEOUT_S,
        key_mode: str = "unknown",
        call_context: LLMCallContext | None = None,
    ) -> AsyncIterator[LLMChunk]:
        """Streaming LLM generation with error normalization.

        Yields:
            LLMChunk objects until terminal chunk (done=True).

        Raises:
            LLMError: With normalized error class on failure.
        """
        adapter = self.resolve_adapter(provider)
        base = _base_log_fields(provider, req, key_mode, streaming=True, call_ctx=call_context)
        logger.info("llm.request.started", **safe_kv(**base))
        start = time.monotonic()

        try:
            async for chunk in adapter.generate_stream(
                req, api_key=api_key, timeout_s=timeout_s, base_url=base_url
            ):
                if chunk.done:
                    usage = chunk.usage
                    logger.info(
                        "llm.request.finished",
                        **safe_kv(
                            **base,
                            outcome="success",
                            latency_ms=_elapsed_ms(start),
                            tokens_input=usage.prompt_tokens if usage else None,
                            tokens_output=usage.completion_tokens if usage else None,
                            tokens_total=usage.total_tokens if usage else None,
                            provider_request_id=chunk.provider_request_id,
                        ),
                    )
                yield chunk
        except Exception as e:
            error = self._normalize(provider, e, base, start)
            if error is e:
                raise
            raise error from e

    def _normalize(self, provider: str, exc: Exception, base: dict, start: float) -> LLMError:
        """Map any adapter failure to an LLMError and log it once."""
        provider_request_id = None

        if isinstance(exc, LLMError):
            error = exc
        elif isinstance(exc, httpx.TimeoutException):
            error = LLMError(LLMErrorClass.TIMEOUT, "Request timed out", provider=provider)
        elif isinstance(exc, httpx.HTTPStatusError):
            response = exc.response
            json_body = self._safe_parse_json(response)
            error_class = classify_provider_error(provider, response.status_code, json_body, None)
            message = extract_provider_message(json_body) or (
                f"Provider returned HTTP {response.status_code}"
            )
            provider_request_id = response.headers.get("x-request-id") or response.headers.get(
                "request-id"
            )
            error = LLMError(error_class, message, provider=provider)
        elif isinstance(exc, httpx.NetworkError):
            error = LLMError(LLMErrorClass.PROVIDER_DOWN, "Network error", provider=provider)
        else:
            error = LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                f"Unexpected error: {type(exc).__name__}",
                provider=provider,
            )

        logger.error(
            "llm.request.failed",
            **safe_kv(
                **base,
                outcome="error",
                error_class=error.error_class.value,
                latency_ms=_elapsed_ms(start),
                provider_request_id=provider_request_id,
            ),
        )
        return error

    def _safe_parse_json(self, response: httpx.Response) -> dict | None:
        try:
            return response.json()
        except (ValueError, httpx.ResponseNotRead):
            return None

"""LLM adapter layer for provider-agnostic LLM integration.

Unified streaming interface over OpenAI, Anthropic, Google Gemini, OpenRouter
and local LM Studio / Ollama servers:

- Provider adapters with async support (non-streaming + streaming)
- A provider dispatch table in LLMRouter
- Error classification and normalization

Usage:
    from chatrelay.services.llm import LLMRouter, LLMRequest, Turn

    router = LLMRouter(httpx_client)
    request = LLMRequest(
        model_name="gpt-4o-mini",
        messages=[Turn(role="user", content="Hello!")],
        max_tokens=100,
    )
    async for chunk in router.generate_stream("openai", request, api_key="sk-..."):
        ...

Rules:
- No retries inside adapters
- No DB access inside adapters
- No logging of request/response bodies
"""

from chatrelay.services.llm.adapter import LLMAdapter
from chatrelay.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from chatrelay.services.llm.router import LLMRouter
from chatrelay.services.llm.types import (
    ContentPart,
    FilePart,
    GeneratedFile,
    ImagePart,
    LLMCallContext,
    LLMChunk,
    LLMOperation,
    LLMRequest,
    LLMResponse,
    LLMSource,
    LLMUsage,
    TextPart,
    Turn,
)

__all__ = [
    "Turn",
    "ContentPart",
    "TextPart",
    "ImagePart",
    "FilePart",
    "LLMRequest",
    "LLMResponse",
    "LLMChunk",
    "LLMUsage",
    "LLMSource",
    "GeneratedFile",
    "LLMOperation",
    "LLMCallContext",
    "LLMAdapter",
    "LLMRouter",
    "LLMError",
    "LLMErrorClass",
    "classify_provider_error",
]

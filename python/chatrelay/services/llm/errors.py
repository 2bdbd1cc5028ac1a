"""LLM error classification and normalization.

Classifies provider-specific errors into normalized error classes. Called by
the router after catching adapter exceptions.

Error classes:
- E_LLM_INVALID_KEY: Authentication failure (401/403)
- E_LLM_RATE_LIMIT: Rate limit exceeded (429)
- E_LLM_CONTEXT_TOO_LARGE: Context length exceeded
- E_LLM_TIMEOUT: Request timed out
- E_LLM_PROVIDER_DOWN: Provider unavailable (5xx, network error)
- E_MODEL_NOT_AVAILABLE: Model not found or disabled

OpenRouter, LM Studio and Ollama speak the OpenAI wire format and share its
error shape.
"""

from enum import Enum

from chatrelay.logging import get_logger

logger = get_logger(__name__)

OPENAI_COMPATIBLE_PROVIDERS = frozenset({"openai", "openrouter", "lmstudio", "ollama"})


class LLMErrorClass(str, Enum):
    INVALID_KEY = "E_LLM_INVALID_KEY"
    RATE_LIMIT = "E_LLM_RATE_LIMIT"
    CONTEXT_TOO_LARGE = "E_LLM_CONTEXT_TOO_LARGE"
    TIMEOUT = "E_LLM_TIMEOUT"
    PROVIDER_DOWN = "E_LLM_PROVIDER_DOWN"
    MODEL_NOT_AVAILABLE = "E_MODEL_NOT_AVAILABLE"


class LLMError(Exception):
    """Exception for LLM-related errors.

    Attributes:
        error_class: The normalized error classification
        message: Human-readable error message, the provider's own when it sent one
        provider: The provider that returned the error (if known)
    """

    def __init__(
        self,
        error_class: LLMErrorClass,
        message: str,
        provider: str | None = None,
    ):
        self.error_class = error_class
        self.message = message
        self.provider = provider
        super().__init__(message)


def extract_provider_message(json_body: dict | list | None) -> str | None:
    """Pull the human-readable message out of a provider error body.

    OpenAI, Anthropic and OpenRouter use {"error": {"message": ...}}; Gemini
    uses the same shape, sometimes wrapped in a one-element list.
    """
    if isinstance(json_body, list) and json_body:
        json_body = json_body[0]
    if not isinstance(json_body, dict):
        return None
    error = json_body.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    if isinstance(error, str) and error:
        return error
    message = json_body.get("message")
    return message if isinstance(message, str) and message else None


def classify_provider_error(
    provider: str,
    status_code: int | None,
    json_body: dict | None,
    exception: Exception | None,
) -> LLMErrorClass:
    """Classify provider error into normalized error class."""
    if exception is not None:
        exception_type = type(exception).__name__
        if "Timeout" in exception_type or "timeout" in str(exception).lower():
            return LLMErrorClass.TIMEOUT
        if "Network" in exception_type or "Connection" in exception_type:
            return LLMErrorClass.PROVIDER_DOWN

    if status_code is None:
        return LLMErrorClass.PROVIDER_DOWN

    if provider in OPENAI_COMPATIBLE_PROVIDERS:
        return _classify_openai_error(status_code, json_body)
    elif provider == "anthropic":
        return _classify_anthropic_error(status_code, json_body)
    elif provider == "google":
        return _classify_gemini_error(status_code, json_body)
    else:
        logger.warning("unknown_provider_for_error_classification", provider=provider)
        return LLMErrorClass.PROVIDER_DOWN


def _classify_openai_error(status_code: int, json_body: dict | None) -> LLMErrorClass:
    """OpenAI-format errors.

    - 401 or 403 -> INVALID_KEY
    - 429 -> RATE_LIMIT
    - 404 -> MODEL_NOT_AVAILABLE
    - 400 + context_length_exceeded or "maximum context length" -> CONTEXT_TOO_LARGE
    - 5xx -> PROVIDER_DOWN
    """
    if status_code in (401, 403):
        return LLMErrorClass.INVALID_KEY
    if status_code == 429:
        return LLMErrorClass.RATE_LIMIT
    if status_code == 404:
        return LLMErrorClass.MODEL_NOT_AVAILABLE
    if status_code >= 500:
        return LLMErrorClass.PROVIDER_DOWN

    if status_code == 400 and isinstance(json_body, dict):
        error = json_body.get("error") or {}
        if not isinstance(error, dict):
            return LLMErrorClass.PROVIDER_DOWN
        error_code = error.get("code") or ""
        error_message = (error.get("message") or "").lower()

        if error_code == "context_length_exceeded":
            return LLMErrorClass.CONTEXT_TOO_LARGE
        if "maximum context length" in error_message:
            return LLMErrorClass.CONTEXT_TOO_LARGE
        if "model" in error_message and "not found" in error_message:
            return LLMErrorClass.MODEL_NOT_AVAILABLE

    return LLMErrorClass.PROVIDER_DOWN


def _classify_anthropic_error(status_code: int, json_body: dict | None) -> LLMErrorClass:
    if status_code in (401, 403):
        return LLMErrorClass.INVALID_KEY
    if status_code == 429:
        return LLMErrorClass.RATE_LIMIT
    if status_code == 404:
        return LLMErrorClass.MODEL_NOT_AVAILABLE
    if status_code >= 500:
        return LLMErrorClass.PROVIDER_DOWN

    if status_code == 400 and isinstance(json_body, dict):
        error = json_body.get("error") or {}
        error_type = error.get("type", "")
        error_message = (error.get("message") or "").lower()
        if error_type == "invalid_request_error" and "too long" in error_message:
            return LLMErrorClass.CONTEXT_TOO_LARGE

    return LLMErrorClass.PROVIDER_DOWN


def _classify_gemini_error(status_code: int, json_body: dict | None) -> LLMErrorClass:
    """Gemini errors; the body is checked before the status code."""
    body_str = str(json_body).lower() if json_body else ""

    if "api_key_invalid" in body_str:
        return LLMErrorClass.INVALID_KEY
    if status_code in (401, 403):
        return LLMErrorClass.INVALID_KEY
    if status_code == 429 or "resource_exhausted" in body_str:
        return LLMErrorClass.RATE_LIMIT
    if "exceeds the maximum" in body_str:
        return LLMErrorClass.CONTEXT_TOO_LARGE
    if status_code == 404 or "model not found" in body_str:
        return LLMErrorClass.MODEL_NOT_AVAILABLE

    return LLMErrorClass.PROVIDER_DOWN

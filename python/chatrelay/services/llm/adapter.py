"""Abstract base class for LLM adapters.

- Async adapters with httpx.AsyncClient
- No retries inside adapters
- No DB access
- No logging of request/response bodies
- Raw provider errors bubble up to router for classification
- Each adapter handles Turn -> provider format conversion internally
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import httpx

from chatrelay.services.llm.types import LLMChunk, LLMRequest, LLMResponse


async def raise_for_status_with_body(response: httpx.Response) -> None:
    """raise_for_status for streamed responses.

    A streamed body is not read until iterated; reading it first keeps the
    provider's error message available to the router.
    """
    if response.is_error:
        await response.aread()
    response.raise_for_status()


class LLMAdapter(ABC):
    """Abstract base class for LLM provider adapters.

    Each adapter implements provider-specific HTTP communication and
    Turn -> provider format conversion. base_url overrides the provider's
    default endpoint (local servers, aggregators).
    """

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    @abstractmethod
    async def generate(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: int,
        base_url: str | None = None,
    ) -> LLMResponse:
        """Non-streaming generation. Returns complete response.

        Raises:
            httpx.HTTPStatusError: On non-2xx HTTP response.
            httpx.TimeoutException: On request timeout.
            httpx.NetworkError: On network failure.
        """
        pass

    @abstractmethod
    async def generate_stream(
        self,
        req: LLMRequest,
        *,
        api_key: str | None,
        timeout_s: int,
        base_url: str | None = None,
    ) -> AsyncIterator[LLMChunk]:
        """Streaming generation. Yields chunks until done=True.

        Raises:
            httpx.HTTPStatusError: On non-2xx HTTP response.
            httpx.TimeoutException: On request timeout.
            httpx.NetworkError: On network failure.
            LLMError: If stream ends without proper terminal marker.
        """
        pass
        # This is an abstract async generator, must yield to be valid
        yield  # type: ignore

"""Streaming reply for a chat: provider chunks to SSE events.

The provider stream is drained by a background task feeding a queue; the
response body only reads from that queue. The drain therefore runs to
completion even when the client disconnects, and the assistant message is
persisted exactly once, after the provider stream ended on its own.

The first provider event is awaited before the response starts so that a
connect-time failure can still be answered with a JSON error.

SSE Events:
- meta: {"chatId", "model", "provider"}
- delta: {"delta": "text chunk"}
- reasoning: {"delta": "reasoning chunk"}
- source: {"url", "title"}
- file: {"mimeType", "data"} with base64 data
- done: {"messageId"}; absent when the stream failed midway

Sync DB access uses run_in_threadpool (starlette) to avoid blocking the event loop.
"""

import asyncio
import base64
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from chatrelay.background import BackgroundRunner
from chatrelay.errors import ApiError
from chatrelay.logging import get_logger
from chatrelay.services.dispatcher import CompletionAccumulator, Dispatcher, DispatchPlan
from chatrelay.services.llm.types import LLMChunk
from chatrelay.services.reconciler import on_stream_complete
from chatrelay.storage.client import StorageClientBase

logger = get_logger(__name__)


def format_sse_event(event: str, data: dict) -> str:
    """Format data as an SSE event."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def chunk_events(chunk: LLMChunk) -> list[str]:
    """SSE events for one provider chunk. The terminal chunk maps to none."""
    events = []
    if chunk.reasoning_delta:
        events.append(format_sse_event("reasoning", {"delta": chunk.reasoning_delta}))
    if chunk.delta_text:
        events.append(format_sse_event("delta", {"delta": chunk.delta_text}))
    for source in chunk.sources:
        events.append(format_sse_event("source", {"url": source.url, "title": source.title}))
    for generated in chunk.files:
        events.append(
            format_sse_event(
                "file",
                {
                    "mimeType": generated.mime_type,
                    "data": base64.b64encode(generated.data).decode("ascii"),
                },
            )
        )
    return events


@dataclass(frozen=True)
class _Completed:
    message_id: str


# Queue items: a chunk, the completion marker, or the error that ended the drain
_QueueItem = LLMChunk | _Completed | Exception


class ChatStream:
    """One provider call for a chat, drained in the background."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        plan: DispatchPlan,
        runner: BackgroundRunner,
        storage: StorageClientBase,
        session_factory: sessionmaker[Session] | None,
        *,
        chat_id: str,
        user_id: str,
    ):
        self.dispatcher = dispatcher
        self.plan = plan
        self.runner = runner
        self.storage = storage
        self.session_factory = session_factory
        self.chat_id = chat_id
        self.user_id = user_id
        self._queue: asyncio.Queue[_QueueItem] = asyncio.Queue()
        self._first: _QueueItem | None = None

    async def _drain(self) -> None:
        accumulator = CompletionAccumulator()
        try:
            async for chunk in self.dispatcher.stream(self.plan, chat_id=self.chat_id):
                accumulator.add(chunk)
                await self._queue.put(chunk)

            message_id = await run_in_threadpool(
                on_stream_complete,
                self.session_factory,
                self.storage,
                self.runner,
                chat_id=self.chat_id,
                user_id=self.user_id,
                model_key=self.plan.model_key,
                result=accumulator.result(),
            )
            await self._queue.put(_Completed(message_id))
        except ApiError as e:
            logger.warning(
                "chat_stream_failed",
                chat_id=self.chat_id,
                error_code=e.code.value,
                error=e.message,
            )
            await self._queue.put(e)
        except Exception as e:
            logger.exception("chat_stream_failed", chat_id=self.chat_id)
            await self._queue.put(e)

    async def start(self) -> None:
        """Start the drain and wait for its first item.

        Raises:
            ApiError: The provider call failed before producing anything.
        """
        self.runner.spawn(self._drain(), "drain_chat_stream")
        first = await self._queue.get()
        if isinstance(first, Exception):
            raise first
        self._first = first

    async def events(self) -> AsyncIterator[str]:
        """SSE body. Call after start()."""
        yield format_sse_event(
            "meta",
            {"chatId": self.chat_id, "model": self.plan.model_key, "provider": self.plan.provider},
        )
        item = self._first
        while True:
            if isinstance(item, Exception):
                return
            if isinstance(item, _Completed):
                yield format_sse_event("done", {"messageId": item.message_id})
                return
            if item is not None:
                for event in chunk_events(item):
                    yield event
            item = await self._queue.get()

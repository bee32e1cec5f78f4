from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import json
import logging
from typing import Any

from starlette.concurrency import run_in_threadpool

from fichamento.llm import CompletionClient, UpstreamStream
from fichamento.services.chat import DeltaAggregator, Summary, iter_stream_events
from fichamento.services.chat.merge import merge_summary, persist_merge
from fichamento.services.chat.prompts import (
    UPDATE_FICHAMENTO_TOOL,
    build_messages,
    build_system_prompt,
)
from fichamento.store import BookNotFoundError, ReadingStore, StorageError

logger = logging.getLogger(__name__)


class ChatValidationError(ValueError):
    pass


def encode_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}\n\n"


class ChatStream:
    """One in-flight chat turn: owns the upstream stream and its accumulator."""

    def __init__(
        self,
        *,
        store: ReadingStore,
        upstream: UpstreamStream,
        book_id: str,
        existing_summary: Summary | None,
    ) -> None:
        self._store = store
        self._upstream = upstream
        self._book_id = book_id
        self._existing_summary = existing_summary
        self._aggregator = DeltaAggregator()

    async def iter_frames(self) -> AsyncIterator[str]:
        log_extra = {"book_id": self._book_id}

        try:
            async for event in iter_stream_events(self._upstream.aiter_bytes()):
                content = self._aggregator.apply(event)
                if content:
                    yield encode_frame({"type": "content", "content": content})
        except (asyncio.CancelledError, GeneratorExit):
            logger.info("chat stream aborted by client", extra=log_extra)
            raise
        except Exception:
            logger.exception("upstream stream failed", extra=log_extra)
            raise
        finally:
            await self._upstream.aclose()

        updated = await self._merge_extractions()
        await self._persist_assistant_message()

        logger.info(
            "chat stream completed",
            extra={**log_extra, "fichamento_updated": updated},
        )
        yield encode_frame({"type": "done", "fichamentoUpdated": updated})

    async def _merge_extractions(self) -> bool:
        updates = self._aggregator.finalize()
        result = merge_summary(self._existing_summary, updates, book_id=self._book_id)
        return await run_in_threadpool(persist_merge, self._store, self._existing_summary, result)

    async def _persist_assistant_message(self) -> None:
        # streamed content cannot be taken back, so a failed write is only logged
        try:
            await run_in_threadpool(
                self._store.add_message,
                self._book_id,
                role="assistant",
                content=self._aggregator.full_message,
            )
        except StorageError:
            logger.exception("assistant message write failed", extra={"book_id": self._book_id})


async def open_chat_stream(
    *,
    store: ReadingStore,
    llm_client: CompletionClient,
    book_id: str | None,
    user_message: str | None,
    use_context_memory: bool = True,
    history_limit: int = 20,
) -> ChatStream:
    """Run every pre-stream step and open the upstream completion.

    Anything raised from here happens before the response starts, so the
    caller can still answer with a plain JSON error.
    """
    if not book_id or not user_message:
        raise ChatValidationError("bookId and userMessage are required")

    book = await run_in_threadpool(store.get_book, book_id)
    if book is None:
        raise BookNotFoundError("Book not found")

    history = (
        await run_in_threadpool(store.list_recent_messages, book_id, limit=history_limit)
        if use_context_memory
        else []
    )
    existing_summary = await run_in_threadpool(store.get_summary, book_id)

    # durable before the provider is called, even if the model call then fails
    await run_in_threadpool(store.add_message, book_id, role="user", content=user_message)

    upstream = await llm_client.open_stream(
        system_prompt=build_system_prompt(book, existing_summary),
        messages=build_messages(history, user_message),
        tools=[UPDATE_FICHAMENTO_TOOL],
    )
    logger.info(
        "upstream stream opened",
        extra={"book_id": book_id, "status_code": upstream.status_code, "history": len(history)},
    )

    return ChatStream(
        store=store,
        upstream=upstream,
        book_id=book_id,
        existing_summary=existing_summary,
    )

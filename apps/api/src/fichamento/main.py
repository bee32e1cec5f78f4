from datetime import datetime
import logging
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import Response

from fichamento.config import get_settings
from fichamento.db import get_engine
from fichamento.llm import CompletionClient, GatewayCompletionClient
from fichamento.logging_config import configure_logging
from fichamento.services.chat import ChatMessage, Summary
from fichamento.services.chat.gateway import open_chat_stream
from fichamento.store import ReadingStore, SqlReadingStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Fichamento Chat Gateway", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins,
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    book_id: str | None = Field(default=None, alias="bookId")
    user_message: str | None = Field(default=None, alias="userMessage")
    use_context_memory: bool = Field(default=True, alias="useContextMemory")


@app.on_event("startup")
def startup() -> None:
    configure_logging(get_settings().log_level)
    get_engine()


def get_store() -> ReadingStore:
    return SqlReadingStore(get_engine())


def get_completion_client() -> CompletionClient:
    settings = get_settings()
    return GatewayCompletionClient(
        base_url=settings.ai_gateway_url,
        api_key=settings.ai_gateway_api_key,
        model=settings.ai_model,
        timeout_seconds=settings.ai_timeout_seconds,
    )


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _message_detail(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "book_id": message.book_id,
        "role": message.role,
        "content": message.content,
        "created_at": _to_iso(message.created_at),
    }


def _summary_detail(summary: Summary) -> dict[str, Any]:
    return {
        "book_id": summary.book_id,
        **summary.field_values(),
        "updated_at": _to_iso(summary.updated_at),
    }


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/books/{book_id}/chats")
def list_chats(
    book_id: str,
    store: Annotated[ReadingStore, Depends(get_store)],
) -> list[dict[str, Any]]:
    return [_message_detail(message) for message in store.list_messages(book_id)]


@app.get("/books/{book_id}/summary")
def get_summary(
    book_id: str,
    store: Annotated[ReadingStore, Depends(get_store)],
) -> dict[str, Any]:
    summary = store.get_summary(book_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="summary not found")
    return _summary_detail(summary)


@app.options("/chat-with-ai")
def chat_with_ai_options() -> Response:
    # CORS pre-flights are answered by the middleware before reaching here
    return Response(status_code=200)


@app.post("/chat-with-ai")
async def chat_with_ai(
    request: ChatRequest,
    store: Annotated[ReadingStore, Depends(get_store)],
    llm_client: Annotated[CompletionClient, Depends(get_completion_client)],
) -> Response:
    settings = get_settings()

    try:
        chat_stream = await open_chat_stream(
            store=store,
            llm_client=llm_client,
            book_id=request.book_id,
            user_message=request.user_message,
            use_context_memory=request.use_context_memory,
            history_limit=settings.chat_history_limit,
        )
    except Exception as exc:
        logger.exception("chat-with-ai failed before streaming", extra={"book_id": request.book_id})
        return JSONResponse(status_code=500, content={"error": str(exc) or "Erro desconhecido"})

    return StreamingResponse(
        chat_stream.iter_frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


def run() -> None:
    import uvicorn

    uvicorn.run("fichamento.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()

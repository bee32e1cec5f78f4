from collections.abc import AsyncIterator, Callable
import json
from typing import Any

import httpx
from fastapi.testclient import TestClient
import pytest
from sqlalchemy.orm import Session

from fichamento.config import get_settings
from fichamento.db import get_engine
from fichamento.llm import GatewayCompletionClient
from fichamento.main import app, get_completion_client, get_store
from fichamento.models import ChatMessageRecord, SummaryRecord
from fichamento.store import SqlReadingStore, StorageError


def content_chunk(text: str) -> bytes:
    payload = {"choices": [{"index": 0, "delta": {"content": text}}]}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def tool_call_chunk(arguments: str, *, index: int = 0, with_header: bool = False) -> bytes:
    tool_call: dict[str, Any] = {"index": index, "function": {"arguments": arguments}}
    if with_header:
        tool_call["id"] = f"call_{index}"
        tool_call["type"] = "function"
        tool_call["function"]["name"] = "update_fichamento"
    payload = {"choices": [{"index": 0, "delta": {"tool_calls": [tool_call]}}]}
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


DONE_CHUNK = b"data: [DONE]\n\n"


class FakeUpstreamStream:
    def __init__(self, chunks: list[bytes]) -> None:
        self.status_code = 200
        self.closed = False
        self._chunks = chunks

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class FakeCompletionClient:
    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = chunks
        self.calls: list[dict[str, Any]] = []
        self.streams: list[FakeUpstreamStream] = []

    async def open_stream(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]],
    ) -> FakeUpstreamStream:
        self.calls.append({"system_prompt": system_prompt, "messages": messages, "tools": tools})
        stream = FakeUpstreamStream(list(self._chunks))
        self.streams.append(stream)
        return stream


def _frames(body: str) -> list[dict[str, Any]]:
    frames = []
    for block in body.split("\n\n"):
        if not block:
            continue
        assert block.startswith("data: ")
        frames.append(json.loads(block[len("data: "):]))
    return frames


def _stored_messages(book_id: str) -> list[tuple[str, str]]:
    with Session(get_engine()) as session:
        records = session.query(ChatMessageRecord).filter_by(book_id=book_id).all()
        ordered = sorted(records, key=lambda record: record.created_at)
        return [(record.role, record.content) for record in ordered]


def _use_fake(chunks: list[bytes]) -> FakeCompletionClient:
    fake_client = FakeCompletionClient(chunks)
    app.dependency_overrides[get_completion_client] = lambda: fake_client
    return fake_client


def test_chat_streams_content_and_persists_both_messages(
    client: TestClient,
    seed_book: Callable[..., str],
) -> None:
    seed_book("b1")
    fake_client = _use_fake([content_chunk("Olá"), content_chunk("!"), DONE_CHUNK])

    response = client.post("/chat-with-ai", json={"bookId": "b1", "userMessage": "Oi"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.text == (
        'data: {"type":"content","content":"Olá"}\n\n'
        'data: {"type":"content","content":"!"}\n\n'
        'data: {"type":"done","fichamentoUpdated":false}\n\n'
    )
    assert _stored_messages("b1") == [("user", "Oi"), ("assistant", "Olá!")]
    assert fake_client.streams[0].closed is True
    assert client.get("/books/b1/summary").status_code == 404


def test_chat_reassembles_tool_call_and_inserts_summary(
    client: TestClient,
    seed_book: Callable[..., str],
) -> None:
    seed_book("b1")
    _use_fake(
        [
            content_chunk("Anotei a tese."),
            tool_call_chunk('{"thesis":"A', with_header=True),
            tool_call_chunk('","reference":"R1"}'),
            DONE_CHUNK,
        ]
    )

    response = client.post("/chat-with-ai", json={"bookId": "b1", "userMessage": "A tese é A"})

    assert response.status_code == 200
    assert _frames(response.text) == [
        {"type": "content", "content": "Anotei a tese."},
        {"type": "done", "fichamentoUpdated": True},
    ]

    summary = client.get("/books/b1/summary").json()
    assert summary["thesis"] == "A"
    assert summary["reference"] == "R1"
    for name in ("key_ideas", "citations", "counterpoints", "applications", "vocabulary", "bibliography"):
        assert summary[name] is None


def test_chat_updates_existing_summary_in_place(
    client: TestClient,
    seed_book: Callable[..., str],
) -> None:
    seed_book("b1")
    with Session(get_engine()) as session:
        session.add(SummaryRecord(book_id="b1", thesis="antiga", vocabulary="logos"))
        session.commit()

    fake_client = _use_fake(
        [tool_call_chunk('{"thesis":"nova","vocabulary":""}', with_header=True), DONE_CHUNK]
    )

    response = client.post("/chat-with-ai", json={"bookId": "b1", "userMessage": "Mudei de ideia"})

    assert _frames(response.text) == [{"type": "done", "fichamentoUpdated": True}]
    assert "Tese Central: antiga" in fake_client.calls[0]["system_prompt"]

    with Session(get_engine()) as session:
        rows = session.query(SummaryRecord).filter_by(book_id="b1").all()
    assert len(rows) == 1
    assert rows[0].thesis == "nova"
    assert rows[0].vocabulary == "logos"
    assert _stored_messages("b1") == [("user", "Mudei de ideia"), ("assistant", "")]


def test_chat_drops_malformed_frames(
    client: TestClient,
    seed_book: Callable[..., str],
) -> None:
    seed_book("b1")
    _use_fake(
        [
            content_chunk("Primeiro"),
            b"data: {not-json\n\n",
            content_chunk(" e segundo"),
            DONE_CHUNK,
        ]
    )

    response = client.post("/chat-with-ai", json={"bookId": "b1", "userMessage": "Oi"})

    assert response.status_code == 200
    assert _frames(response.text) == [
        {"type": "content", "content": "Primeiro"},
        {"type": "content", "content": " e segundo"},
        {"type": "done", "fichamentoUpdated": False},
    ]
    assert _stored_messages("b1")[-1] == ("assistant", "Primeiro e segundo")


@pytest.mark.parametrize("arguments", ['{"thesis": "trunc', ""])
def test_chat_discards_undecodable_tool_call(
    client: TestClient,
    seed_book: Callable[..., str],
    arguments: str,
) -> None:
    seed_book("b1")
    _use_fake([tool_call_chunk(arguments, with_header=True), DONE_CHUNK])

    response = client.post("/chat-with-ai", json={"bookId": "b1", "userMessage": "Oi"})

    assert _frames(response.text) == [{"type": "done", "fichamentoUpdated": False}]
    assert client.get("/books/b1/summary").status_code == 404


def test_chat_rate_limit_returns_json_error_and_keeps_user_message(
    client: TestClient,
    seed_book: Callable[..., str],
) -> None:
    seed_book("b1")
    gateway_client = GatewayCompletionClient(
        base_url="https://gateway.test/v1",
        api_key="test-key",
        model="google/gemini-2.5-flash",
        transport=httpx.MockTransport(lambda request: httpx.Response(429)),
    )
    app.dependency_overrides[get_completion_client] = lambda: gateway_client

    response = client.post("/chat-with-ai", json={"bookId": "b1", "userMessage": "Oi"})

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"error": "Rate limit excedido. Aguarde um momento."}
    assert _stored_messages("b1") == [("user", "Oi")]


@pytest.mark.parametrize(
    "body",
    [
        {"userMessage": "Oi"},
        {"bookId": "b1"},
        {"bookId": "", "userMessage": "Oi"},
        {"bookId": "b1", "userMessage": ""},
    ],
)
def test_chat_requires_book_and_message(
    client: TestClient,
    seed_book: Callable[..., str],
    body: dict[str, str],
) -> None:
    seed_book("b1")
    fake_client = _use_fake([DONE_CHUNK])

    response = client.post("/chat-with-ai", json=body)

    assert response.status_code == 500
    assert response.json() == {"error": "bookId and userMessage are required"}
    assert fake_client.calls == []
    assert _stored_messages("b1") == []


def test_chat_unknown_book_fails_before_upstream(client: TestClient) -> None:
    fake_client = _use_fake([DONE_CHUNK])

    response = client.post("/chat-with-ai", json={"bookId": "missing", "userMessage": "Oi"})

    assert response.status_code == 500
    assert response.json() == {"error": "Book not found"}
    assert fake_client.calls == []


def test_chat_sends_recent_history_and_book_context(
    client: TestClient,
    seed_book: Callable[..., str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CHAT_HISTORY_LIMIT", "2")
    get_settings.cache_clear()
    seed_book("b1", title="Meditações", author="Marco Aurélio", subject="Estoicismo")
    with Session(get_engine()) as session:
        for role, content in [
            ("user", "mensagem antiga"),
            ("assistant", "resposta antiga"),
            ("user", "sobre a morte"),
            ("assistant", "memento mori"),
        ]:
            session.add(ChatMessageRecord(book_id="b1", role=role, content=content))
            session.commit()

    fake_client = _use_fake([DONE_CHUNK])

    client.post("/chat-with-ai", json={"bookId": "b1", "userMessage": "E o tempo?"})

    call = fake_client.calls[0]
    assert 'Livro atual: "Meditações" de Marco Aurélio' in call["system_prompt"]
    assert "Assunto: Estoicismo" in call["system_prompt"]
    assert "Nenhum fichamento ainda." in call["system_prompt"]
    assert call["messages"] == [
        {
            "role": "user",
            "content": (
                "Histórico recente:\nUsuário: sobre a morte\nAssistente: memento mori\n\n"
                "Nova mensagem: E o tempo?"
            ),
        }
    ]
    assert call["tools"][0]["function"]["name"] == "update_fichamento"


def test_chat_without_context_memory_skips_history(
    client: TestClient,
    seed_book: Callable[..., str],
) -> None:
    seed_book("b1")
    with Session(get_engine()) as session:
        session.add(ChatMessageRecord(book_id="b1", role="user", content="lembra disto?"))
        session.commit()

    fake_client = _use_fake([DONE_CHUNK])

    client.post(
        "/chat-with-ai",
        json={"bookId": "b1", "userMessage": "Oi", "useContextMemory": False},
    )

    assert "lembra disto?" not in fake_client.calls[0]["messages"][0]["content"]


def test_chat_preflight_allows_any_origin(client: TestClient) -> None:
    response = client.options(
        "/chat-with-ai",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "authorization, apikey, content-type",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"


def test_list_chats_returns_messages_oldest_first(
    client: TestClient,
    seed_book: Callable[..., str],
) -> None:
    seed_book("b1")
    _use_fake([content_chunk("Olá"), DONE_CHUNK])

    client.post("/chat-with-ai", json={"bookId": "b1", "userMessage": "Oi"})
    response = client.get("/books/b1/chats")

    assert response.status_code == 200
    assert [(item["role"], item["content"]) for item in response.json()] == [
        ("user", "Oi"),
        ("assistant", "Olá"),
    ]


class UserWriteFailingStore(SqlReadingStore):
    def add_message(self, book_id: str, *, role: str, content: str):
        raise StorageError("database is locked")


def test_chat_fails_whole_request_when_user_message_cannot_be_saved(
    client: TestClient,
    seed_book: Callable[..., str],
) -> None:
    seed_book("b1")
    fake_client = _use_fake([content_chunk("Olá"), DONE_CHUNK])
    app.dependency_overrides[get_store] = lambda: UserWriteFailingStore(get_engine())

    response = client.post("/chat-with-ai", json={"bookId": "b1", "userMessage": "Oi"})

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"error": "database is locked"}
    assert fake_client.calls == []
    assert _stored_messages("b1") == []


def test_chat_answers_plain_options_request(client: TestClient) -> None:
    response = client.options("/chat-with-ai")

    assert response.status_code == 200
    assert response.content == b""

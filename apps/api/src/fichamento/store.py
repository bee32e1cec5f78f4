from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fichamento.models import BookRecord, ChatMessageRecord, SummaryRecord
from fichamento.services.chat.types import SUMMARY_FIELDS, Book, ChatMessage, Summary


class StorageError(RuntimeError):
    pass


class BookNotFoundError(LookupError):
    pass


class ReadingStore(Protocol):
    def get_book(self, book_id: str) -> Book | None: ...

    def get_summary(self, book_id: str) -> Summary | None: ...

    def list_recent_messages(self, book_id: str, *, limit: int) -> Sequence[ChatMessage]: ...

    def list_messages(self, book_id: str) -> Sequence[ChatMessage]: ...

    def add_message(self, book_id: str, *, role: str, content: str) -> ChatMessage: ...

    def save_summary(self, summary: Summary, *, insert: bool) -> None: ...


def _to_book(record: BookRecord) -> Book:
    return Book(id=record.id, title=record.title, author=record.author, subject=record.subject)


def _to_message(record: ChatMessageRecord) -> ChatMessage:
    return ChatMessage(
        id=record.id,
        book_id=record.book_id,
        role=record.role,
        content=record.content,
        created_at=record.created_at,
    )


def _to_summary(record: SummaryRecord) -> Summary:
    return Summary(
        book_id=record.book_id,
        updated_at=record.updated_at,
        **{name: getattr(record, name) for name in SUMMARY_FIELDS},
    )


class SqlReadingStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get_book(self, book_id: str) -> Book | None:
        try:
            with Session(self._engine) as session:
                record = session.get(BookRecord, book_id)
                return _to_book(record) if record is not None else None
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    def get_summary(self, book_id: str) -> Summary | None:
        try:
            with Session(self._engine) as session:
                record = session.scalar(
                    select(SummaryRecord).where(SummaryRecord.book_id == book_id).limit(1)
                )
                return _to_summary(record) if record is not None else None
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    def list_recent_messages(self, book_id: str, *, limit: int) -> list[ChatMessage]:
        try:
            with Session(self._engine) as session:
                records = session.scalars(
                    select(ChatMessageRecord)
                    .where(ChatMessageRecord.book_id == book_id)
                    .order_by(ChatMessageRecord.created_at.desc(), ChatMessageRecord.id.desc())
                    .limit(limit)
                ).all()
                return [_to_message(record) for record in reversed(records)]
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    def list_messages(self, book_id: str) -> list[ChatMessage]:
        try:
            with Session(self._engine) as session:
                records = session.scalars(
                    select(ChatMessageRecord)
                    .where(ChatMessageRecord.book_id == book_id)
                    .order_by(ChatMessageRecord.created_at.asc(), ChatMessageRecord.id.asc())
                ).all()
                return [_to_message(record) for record in records]
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    def add_message(self, book_id: str, *, role: str, content: str) -> ChatMessage:
        try:
            with Session(self._engine) as session:
                record = ChatMessageRecord(book_id=book_id, role=role, content=content)
                session.add(record)
                session.commit()
                return _to_message(record)
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    def save_summary(self, summary: Summary, *, insert: bool) -> None:
        values = summary.field_values()
        updated_at = summary.updated_at or datetime.now(timezone.utc)

        try:
            with Session(self._engine) as session:
                if insert:
                    session.add(
                        SummaryRecord(book_id=summary.book_id, updated_at=updated_at, **values)
                    )
                else:
                    record = session.scalar(
                        select(SummaryRecord).where(SummaryRecord.book_id == summary.book_id)
                    )
                    if record is None:
                        raise StorageError(f"summary for book {summary.book_id} disappeared")
                    for name, value in values.items():
                        setattr(record, name, value)
                    record.updated_at = updated_at
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union

from pydantic import BaseModel, ConfigDict

SUMMARY_FIELDS: tuple[str, ...] = (
    "reference",
    "thesis",
    "key_ideas",
    "citations",
    "counterpoints",
    "applications",
    "vocabulary",
    "bibliography",
)


@dataclass(frozen=True)
class Book:
    id: str
    title: str
    author: str
    subject: str | None = None


@dataclass(frozen=True)
class ChatMessage:
    id: str
    book_id: str
    role: str
    content: str
    created_at: datetime


@dataclass(frozen=True)
class Summary:
    book_id: str
    reference: str | None = None
    thesis: str | None = None
    key_ideas: str | None = None
    citations: str | None = None
    counterpoints: str | None = None
    applications: str | None = None
    vocabulary: str | None = None
    bibliography: str | None = None
    updated_at: datetime | None = None

    def field_values(self) -> dict[str, str | None]:
        return {name: getattr(self, name) for name in SUMMARY_FIELDS}


class FichamentoUpdate(BaseModel):
    """Arguments of one ``update_fichamento`` tool call."""

    model_config = ConfigDict(extra="ignore")

    reference: str | None = None
    thesis: str | None = None
    key_ideas: str | None = None
    citations: str | None = None
    counterpoints: str | None = None
    applications: str | None = None
    vocabulary: str | None = None
    bibliography: str | None = None


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True)
class StreamDone:
    pass


StreamEvent = Union[ContentDelta, ToolCallFragment, StreamDone]

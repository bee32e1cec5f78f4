from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging

from pydantic import ValidationError

from fichamento.services.chat.types import (
    ContentDelta,
    FichamentoUpdate,
    StreamDone,
    StreamEvent,
    ToolCallFragment,
)

logger = logging.getLogger(__name__)

UPDATE_FICHAMENTO = "update_fichamento"


@dataclass
class ToolCallSlot:
    id: str | None = None
    name: str | None = None
    fragments: list[str] = field(default_factory=list)

    @property
    def arguments(self) -> str:
        return "".join(self.fragments)


class DeltaAggregator:
    """Request-scoped accumulator for one streamed completion.

    Content is returned from :meth:`apply` as soon as it arrives so the caller
    can forward it; tool-call fragments stay internal until :meth:`finalize`.
    """

    def __init__(self) -> None:
        self._content: list[str] = []
        self._slots: dict[int, ToolCallSlot] = {}

    @property
    def full_message(self) -> str:
        return "".join(self._content)

    @property
    def slots(self) -> dict[int, ToolCallSlot]:
        return dict(self._slots)

    def apply(self, event: StreamEvent) -> str | None:
        if isinstance(event, ContentDelta):
            self._content.append(event.text)
            return event.text
        if isinstance(event, ToolCallFragment):
            self._accumulate(event)
            return None
        if isinstance(event, StreamDone):
            return None
        raise TypeError(f"Unsupported stream event: {event!r}")

    def _accumulate(self, fragment: ToolCallFragment) -> None:
        slot = self._slots.setdefault(fragment.index, ToolCallSlot())
        if fragment.id and slot.id is None:
            slot.id = fragment.id
        if fragment.name and slot.name is None:
            slot.name = fragment.name
        if fragment.arguments:
            slot.fragments.append(fragment.arguments)

    def finalize(self, tool_name: str = UPDATE_FICHAMENTO) -> list[FichamentoUpdate]:
        updates: list[FichamentoUpdate] = []

        for index in sorted(self._slots):
            slot = self._slots[index]
            if slot.name != tool_name:
                logger.info(
                    "ignoring tool call for unknown function",
                    extra={"slot_index": index, "function_name": slot.name},
                )
                continue

            try:
                parsed = json.loads(slot.arguments)
                if not isinstance(parsed, dict):
                    raise ValueError("tool call arguments must be a JSON object")
                updates.append(FichamentoUpdate.model_validate(parsed))
            except (ValueError, ValidationError) as exc:
                logger.warning(
                    "discarding undecodable tool call",
                    extra={"slot_index": index, "tool_call_id": slot.id, "error": str(exc)},
                )

        return updates

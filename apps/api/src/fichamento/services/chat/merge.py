from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Sequence

from fichamento.services.chat.types import SUMMARY_FIELDS, FichamentoUpdate, Summary
from fichamento.store import ReadingStore, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    summary: Summary | None
    changed: bool


def merge_summary(
    existing: Summary | None,
    updates: Sequence[FichamentoUpdate],
    *,
    book_id: str,
) -> MergeResult:
    """Fold extracted fields over the existing summary.

    A field takes the last non-empty extracted value; empty or missing values
    never erase what is already there.
    """
    if not updates:
        return MergeResult(summary=existing, changed=False)

    values: dict[str, str | None] = (
        existing.field_values() if existing is not None else dict.fromkeys(SUMMARY_FIELDS)
    )
    for update in updates:
        for name in SUMMARY_FIELDS:
            candidate = getattr(update, name)
            if candidate:
                values[name] = candidate

    return MergeResult(
        summary=Summary(book_id=book_id, updated_at=datetime.now(timezone.utc), **values),
        changed=True,
    )


def persist_merge(store: ReadingStore, existing: Summary | None, result: MergeResult) -> bool:
    # Read-modify-write without locking: concurrent requests for one book race
    # and the last write wins.
    if not result.changed or result.summary is None:
        return False

    try:
        store.save_summary(result.summary, insert=existing is None)
    except StorageError:
        logger.exception("summary upsert failed", extra={"book_id": result.summary.book_id})
        return False

    logger.info(
        "summary updated",
        extra={"book_id": result.summary.book_id, "inserted": existing is None},
    )
    return True

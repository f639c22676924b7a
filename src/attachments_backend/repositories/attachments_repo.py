"""Attachment document store.

Thin async wrapper around the `attachments` table that speaks in wire
documents and reports how many rows each write touched, together with the
affected document ("return changes").
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlmodel.ext.asyncio.session import AsyncSession

from attachments_backend.models import COLUMN_FIELDS, Attachment, attachment_to_doc


@dataclass(frozen=True)
class InsertResult:
    inserted: int
    new_doc: dict[str, Any] | None


@dataclass(frozen=True)
class UpdateResult:
    replaced: int
    new_doc: dict[str, Any] | None


@dataclass(frozen=True)
class DeleteResult:
    deleted: int
    old_doc: dict[str, Any] | None


async def get(session: AsyncSession, attachment_id: str) -> dict[str, Any] | None:
    row = await session.get(Attachment, attachment_id)
    return attachment_to_doc(row) if row is not None else None


async def insert(session: AsyncSession, row: Attachment) -> InsertResult:
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return InsertResult(inserted=1, new_doc=attachment_to_doc(row))


async def update(
    session: AsyncSession, attachment_id: str, fields: Mapping[str, Any]
) -> UpdateResult:
    """Apply wire-named `fields` to one row; unknown keys are ignored."""

    row = await session.get(Attachment, attachment_id, with_for_update=True)
    if row is None:
        await session.rollback()
        return UpdateResult(replaced=0, new_doc=None)

    changed = False
    for key, value in fields.items():
        column = COLUMN_FIELDS.get(key)
        if column is None or getattr(row, column) == value:
            continue
        setattr(row, column, value)
        changed = True

    if not changed:
        await session.rollback()
        return UpdateResult(replaced=0, new_doc=attachment_to_doc(row))

    session.add(row)
    await session.commit()
    await session.refresh(row)
    return UpdateResult(replaced=1, new_doc=attachment_to_doc(row))


async def delete(session: AsyncSession, attachment_id: str) -> DeleteResult:
    row = await session.get(Attachment, attachment_id, with_for_update=True)
    if row is None:
        await session.rollback()
        return DeleteResult(deleted=0, old_doc=None)

    old_doc = attachment_to_doc(row)
    await session.delete(row)
    await session.commit()
    return DeleteResult(deleted=1, old_doc=old_doc)


class StoreAttachmentReader:
    """Local read path, used when no peer read service is configured."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_attachment(self, attachment_id: str) -> dict[str, Any] | None:
        return await get(self._session, attachment_id)

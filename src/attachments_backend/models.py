# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Column name -> wire (camelCase) name.
WIRE_FIELDS: dict[str, str] = {
    "id": "id",
    "filename": "filename",
    "mimetype": "mimetype",
    "size": "size",
    "path": "path",
    "timestamp": "timestamp",
    "user_id": "userId",
    "parent_id": "parentId",
    "parent_type": "parentType",
    "parent_subtype": "parentSubtype",
}

COLUMN_FIELDS: dict[str, str] = {wire: column for column, wire in WIRE_FIELDS.items()}

FILENAME_MAX_LENGTH = 255
MIMETYPE_MAX_LENGTH = 255
USER_ID_MAX_LENGTH = 128

# Column widths of the fields a PATCH may change, by wire name.
PARENT_MAX_LENGTHS: dict[str, int] = {
    "parentId": 128,
    "parentType": 64,
    "parentSubtype": 64,
}


class Attachment(SQLModel, table=True):
    __tablename__ = "attachments"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(primary_key=True, min_length=1, max_length=36)

    # Provenance; written once at creation.
    filename: Optional[str] = Field(default=None, max_length=FILENAME_MAX_LENGTH)
    mimetype: Optional[str] = Field(default=None, max_length=MIMETYPE_MAX_LENGTH)
    size: int = Field(default=0)
    # Storage key of the backing object.
    path: str = Field(min_length=1, max_length=512, index=True)
    timestamp: datetime = Field(default_factory=utc_now, index=True)
    user_id: str = Field(index=True, min_length=1, max_length=USER_ID_MAX_LENGTH)

    # The only fields a PATCH may change.
    parent_id: Optional[str] = Field(
        default=None, index=True, max_length=PARENT_MAX_LENGTHS["parentId"]
    )
    parent_type: Optional[str] = Field(default=None, max_length=PARENT_MAX_LENGTHS["parentType"])
    parent_subtype: Optional[str] = Field(
        default=None, max_length=PARENT_MAX_LENGTHS["parentSubtype"]
    )


def attachment_to_doc(row: Attachment) -> dict[str, Any]:
    """Wire document for a stored row (camelCase keys)."""
    return {wire: getattr(row, column) for column, wire in WIRE_FIELDS.items()}

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ErrorObject(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    detail: str
    property_name: str | None = Field(default=None, alias="propertyName")
    status: int


class ErrorEnvelope(BaseModel):
    """Error reply: {errors: [{title, detail, propertyName?, status}], requestId?}."""

    model_config = ConfigDict(populate_by_name=True)

    errors: list[ErrorObject]
    request_id: str | None = Field(default=None, alias="requestId")


class AttachmentDoc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    filename: str | None = None
    mimetype: str | None = None
    size: int = 0
    path: str
    timestamp: datetime | None = None
    user_id: str = Field(alias="userId")
    parent_id: str | None = Field(default=None, alias="parentId")
    parent_type: str | None = Field(default=None, alias="parentType")
    parent_subtype: str | None = Field(default=None, alias="parentSubtype")


class AttachmentEnvelope(BaseModel):
    data: AttachmentDoc | None = None

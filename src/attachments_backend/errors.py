"""Error taxonomy for attachment writes.

Every failure a caller can observe is one of these exceptions. They render to
the error object of the `{errors: [...]}` envelope, so the HTTP layer never
has to know which pipeline step produced them.
"""

from __future__ import annotations

from typing import Any


class AttachmentWriteError(Exception):
    status: int = 500
    title: str = "Unknown error"
    detail: str = "Internal server error."

    def __init__(
        self,
        detail: str | None = None,
        *,
        title: str | None = None,
        property_name: str | None = None,
    ) -> None:
        if detail is not None:
            self.detail = detail
        if title is not None:
            self.title = title
        self.property_name = property_name
        super().__init__(self.detail)

    def to_error_object(self) -> dict[str, Any]:
        obj: dict[str, Any] = {"title": self.title, "detail": self.detail}
        if self.property_name:
            obj["propertyName"] = self.property_name
        obj["status"] = self.status
        return obj


class InvalidInput(AttachmentWriteError):
    status = 400
    title = "Parameters not valid"
    detail = "Parameters not valid."


class Unauthorized(AttachmentWriteError):
    status = 403
    title = "Unauthorized"
    detail = "You are not authorized to do this."


class NotFound(AttachmentWriteError):
    status = 404
    title = "Not found"
    detail = "Attachment not found."


class WriteFailed(AttachmentWriteError):
    status = 500
    title = "Unknown error"
    detail = "Failed writing to database."


class InfrastructureError(AttachmentWriteError):
    status = 500
    title = "Unknown error"
    detail = "Internal server error."


def missing_body() -> InvalidInput:
    return InvalidInput("JSON body is missing.", property_name="body")


def missing_file() -> InvalidInput:
    return InvalidInput("File is missing.", property_name="attachment")


def missing_id() -> InvalidInput:
    return InvalidInput("Attachment id is missing.", property_name="id")

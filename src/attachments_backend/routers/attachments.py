"""Attachments write API."""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from attachments_backend.config import settings
from attachments_backend.deps import get_consumer_token, get_write_service
from attachments_backend.errors import InvalidInput
from attachments_backend.schemas import AttachmentEnvelope, ErrorEnvelope
from attachments_backend.services.attachments_write_service import (
    AttachmentsWriteService,
    FileUpload,
    MutationResult,
)

router = APIRouter()

_FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")
_FILE_FIELDS = ("attachment", "file")

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorEnvelope},
    403: {"model": ErrorEnvelope},
    404: {"model": ErrorEnvelope},
    500: {"model": ErrorEnvelope},
}


def _data_response(result: MutationResult, *, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"data": result.data}))


async def _read_upload_file_limited(*, file: UploadFile, max_bytes: int) -> bytes:
    # Read the file in chunks and hard-stop once size exceeds max_bytes.
    buf = bytearray()
    chunk_size = 1024 * 1024
    while True:
        chunk = await file.read(chunk_size)
        if not chunk:
            break
        buf.extend(chunk)
        if max_bytes > 0 and len(buf) > max_bytes:
            raise HTTPException(
                status_code=413,
                detail="Attachment too large.",
            )
    return bytes(buf)


async def _parse_create_form(request: Request) -> tuple[dict[str, Any] | None, UploadFile | None]:
    content_type = request.headers.get("content-type", "").lower()
    if not content_type.startswith(_FORM_CONTENT_TYPES):
        return None, None

    form = await request.form()
    body: dict[str, Any] = {}
    upload: UploadFile | None = None
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if upload is None and key in _FILE_FIELDS:
                upload = value
            continue
        body[key] = value
    return body, upload


async def _parse_patch_body(request: Request) -> dict[str, Any] | None:
    raw = await request.body()
    if not raw.strip():
        return None
    try:
        body = json.loads(raw)
    except ValueError as e:
        raise InvalidInput("JSON body is not valid.", property_name="body") from e
    if not isinstance(body, dict):
        raise InvalidInput("JSON body must be an object.", property_name="body")
    return body


@router.post(
    "/attachments",
    status_code=status.HTTP_201_CREATED,
    response_model=AttachmentEnvelope,
    responses={413: {"model": ErrorEnvelope}, **_ERROR_RESPONSES},
)
async def create_attachment(
    request: Request,
    consumer_token: str | None = Depends(get_consumer_token),
    service: AttachmentsWriteService = Depends(get_write_service),
) -> JSONResponse:
    body, upload = await _parse_create_form(request)
    file: FileUpload | None = None
    if upload is not None:
        data = await _read_upload_file_limited(
            file=upload, max_bytes=int(settings.attachments_max_size_bytes)
        )
        file = FileUpload(filename=upload.filename, mimetype=upload.content_type, data=data)
    # Storing the bytes happens inside the pipeline, after the caller is authenticated.
    result = await service.create(consumer_token=consumer_token, body=body, file=file)
    return _data_response(result, status_code=status.HTTP_201_CREATED)


@router.patch(
    "/attachments/{attachment_id}",
    response_model=AttachmentEnvelope,
    responses=_ERROR_RESPONSES,
)
async def update_attachment(
    attachment_id: str,
    request: Request,
    consumer_token: str | None = Depends(get_consumer_token),
    service: AttachmentsWriteService = Depends(get_write_service),
) -> JSONResponse:
    body = await _parse_patch_body(request)
    result = await service.update(
        consumer_token=consumer_token, attachment_id=attachment_id, body=body
    )
    return _data_response(result)


@router.delete(
    "/attachments/{attachment_id}",
    response_model=AttachmentEnvelope,
    responses=_ERROR_RESPONSES,
)
async def delete_attachment(
    attachment_id: str,
    consumer_token: str | None = Depends(get_consumer_token),
    service: AttachmentsWriteService = Depends(get_write_service),
) -> JSONResponse:
    result = await service.delete(consumer_token=consumer_token, attachment_id=attachment_id)
    return _data_response(result)


@router.patch("/attachments", include_in_schema=False)
async def update_attachment_without_id(
    consumer_token: str | None = Depends(get_consumer_token),
    service: AttachmentsWriteService = Depends(get_write_service),
) -> JSONResponse:
    result = await service.update(consumer_token=consumer_token, attachment_id=None, body=None)
    return _data_response(result)


@router.delete("/attachments", include_in_schema=False)
async def delete_attachment_without_id(
    consumer_token: str | None = Depends(get_consumer_token),
    service: AttachmentsWriteService = Depends(get_write_service),
) -> JSONResponse:
    result = await service.delete(consumer_token=consumer_token, attachment_id=None)
    return _data_response(result)

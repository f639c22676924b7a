from __future__ import annotations

import httpx
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel.ext.asyncio.session import AsyncSession

from attachments_backend.config import settings
from attachments_backend.db import get_session
from attachments_backend.integrations.peer_services import (
    ActionAuthorizer,
    AttachmentReader,
    HttpxActionAuthorizer,
    HttpxAttachmentReader,
)
from attachments_backend.integrations.storage.object_storage import ObjectStorage, get_object_storage
from attachments_backend.repositories.attachments_repo import StoreAttachmentReader
from attachments_backend.services.attachments_write_service import AttachmentsWriteService
from attachments_backend.services.cleanup import CleanupTrigger

_bearer = HTTPBearer(auto_error=False)


def get_consumer_token(
    creds: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> str | None:
    # Verification happens inside the pipeline so failures share its error shape.
    raw = creds.credentials if creds is not None else None
    if raw and raw.strip():
        return raw.strip()
    return None


def _shared_http_client(request: Request) -> httpx.AsyncClient | None:
    # Set by the application lifespan; None falls back to a client per call.
    return getattr(request.app.state, "http_client", None)


def get_cleanup_trigger(request: Request) -> CleanupTrigger:
    cleanup = getattr(request.app.state, "cleanup", None)
    if cleanup is None:
        cleanup = CleanupTrigger(get_object_storage())
        request.app.state.cleanup = cleanup
    return cleanup


def get_attachment_reader(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> AttachmentReader:
    if not settings.read_service_base_url.strip():
        return StoreAttachmentReader(session)
    return HttpxAttachmentReader(
        base_url=settings.read_service_base_url,
        endpoint=settings.read_service_attachment_endpoint,
        timeout_seconds=settings.peer_request_timeout_seconds,
        client=_shared_http_client(request),
    )


def get_action_authorizer(request: Request) -> ActionAuthorizer:
    return HttpxActionAuthorizer(
        base_url=settings.authz_service_base_url,
        endpoint=settings.authz_service_user_can_endpoint,
        timeout_seconds=settings.peer_request_timeout_seconds,
        client=_shared_http_client(request),
    )


def get_write_service(
    request: Request,
    session: AsyncSession = Depends(get_session),
    storage: ObjectStorage = Depends(get_object_storage),
    reader: AttachmentReader = Depends(get_attachment_reader),
    authorizer: ActionAuthorizer = Depends(get_action_authorizer),
    cleanup: CleanupTrigger = Depends(get_cleanup_trigger),
) -> AttachmentsWriteService:
    return AttachmentsWriteService(
        session=session,
        storage=storage,
        reader=reader,
        authorizer=authorizer,
        cleanup=cleanup,
        request_id=getattr(request.state, "request_id", None),
    )

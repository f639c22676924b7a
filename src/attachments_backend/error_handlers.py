"""Exception handlers rendering every failure as an error envelope.

Domain errors, HTTPException, request validation errors and unhandled
exceptions all become {errors: [{title, detail, propertyName?, status}]} with
the HTTP status equal to `status`. The request id is added when the
middleware set one.
"""

from __future__ import annotations

import logging
from typing import cast

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from attachments_backend.errors import AttachmentWriteError, InfrastructureError
from attachments_backend.schemas import ErrorEnvelope, ErrorObject

logger = logging.getLogger(__name__)


_HTTP_TITLES: dict[int, str] = {
    400: "Parameters not valid",
    401: "Unauthorized",
    403: "Unauthorized",
    404: "Not found",
    405: "Method not allowed",
    413: "Payload too large",
    422: "Parameters not valid",
}


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def error_response(
    *errors: ErrorObject,
    request_id: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = ErrorEnvelope(errors=list(errors), request_id=request_id)
    return JSONResponse(
        status_code=errors[0].status,
        content=jsonable_encoder(payload, by_alias=True, exclude_none=True),
        headers=headers,
    )


def _error_object(exc: AttachmentWriteError) -> ErrorObject:
    return ErrorObject.model_validate(exc.to_error_object())


async def _attachment_error_handler(request: Request, exc: Exception) -> JSONResponse:
    write_exc = cast(AttachmentWriteError, exc)
    if write_exc.status >= 500:
        logger.warning(
            "attachment write failed request_id=%s method=%s path=%s",
            _request_id(request),
            request.method,
            request.url.path,
            exc_info=write_exc.__cause__ or write_exc,
        )
    return error_response(_error_object(write_exc), request_id=_request_id(request))


async def _http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    http_exc = cast(StarletteHTTPException, exc)
    obj = ErrorObject(
        title=_HTTP_TITLES.get(http_exc.status_code, "Error"),
        detail=str(http_exc.detail),
        status=http_exc.status_code,
    )
    return error_response(
        obj, request_id=_request_id(request), headers=getattr(http_exc, "headers", None)
    )


async def _validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    validation_exc = cast(RequestValidationError, exc)
    objs: list[ErrorObject] = []
    for err in validation_exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in {"body", "path", "query", "header"}]
        objs.append(
            ErrorObject(
                title="Parameters not valid",
                detail=str(err.get("msg") or "invalid value"),
                property_name=".".join(loc) or None,
                status=400,
            )
        )
    if not objs:
        objs.append(ErrorObject(title="Parameters not valid", detail="invalid request", status=400))
    return error_response(*objs, request_id=_request_id(request))


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled exception request_id=%s method=%s path=%s",
        _request_id(request),
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return error_response(_error_object(InfrastructureError()), request_id=_request_id(request))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AttachmentWriteError, _attachment_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)

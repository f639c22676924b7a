from __future__ import annotations

from typing import Protocol

from attachments_backend.config import settings


class ObjectStorage(Protocol):
    async def put_bytes(
        self, key: str, data: bytes, *, content_type: str | None = None
    ) -> None: ...

    async def delete(self, key: str) -> None: ...


def attachment_storage_key(attachment_id: str) -> str:
    # Owner ids come from tokens and are not safe path segments; keys use the record id only.
    return f"uploads/{attachment_id}"


def get_object_storage() -> ObjectStorage:
    if settings.s3_configured():
        from .s3_storage import S3ObjectStorage

        return S3ObjectStorage(
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            bucket=settings.s3_bucket,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            force_path_style=settings.s3_force_path_style,
        )

    from .local_storage import LocalObjectStorage

    return LocalObjectStorage(root_dir=settings.attachments_local_dir)

from __future__ import annotations

from dataclasses import dataclass

from botocore.config import Config
from starlette.concurrency import run_in_threadpool


@dataclass(frozen=True)
class S3Config:
    endpoint_url: str
    region: str
    bucket: str
    force_path_style: bool


class S3ObjectStorage:
    def __init__(
        self,
        *,
        endpoint_url: str,
        region: str,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        force_path_style: bool,
    ) -> None:
        self._cfg = S3Config(
            endpoint_url=endpoint_url,
            region=region,
            bucket=bucket,
            force_path_style=force_path_style,
        )

        import boto3

        addressing_style = "path" if force_path_style else "virtual"
        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region or None,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(s3={"addressing_style": addressing_style}),
        )

    async def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        kwargs: dict[str, object] = {"Bucket": self._cfg.bucket, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        await run_in_threadpool(lambda: self._client.put_object(**kwargs))

    async def delete(self, key: str) -> None:
        # DeleteObjects reports per-key failures in the body instead of raising.
        def _delete() -> None:
            resp = self._client.delete_objects(
                Bucket=self._cfg.bucket,
                Delete={"Objects": [{"Key": key}], "Quiet": True},
            )
            errors = resp.get("Errors") or []
            if errors:
                first = errors[0]
                raise RuntimeError(
                    f"s3 delete failed key={first.get('Key')} code={first.get('Code')} "
                    f"message={first.get('Message')}"
                )

        await run_in_threadpool(_delete)

from __future__ import annotations

from typing import ClassVar, final

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_JWT_SECRET_PLACEHOLDER = "jwt_secret_change_me"


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [x.strip() for x in value.split(",") if x.strip()]


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )
    app_name: str = "Attachments Backend"
    api_prefix: str = "/api/v1"

    # Environment (ENVIRONMENT): development | production
    environment: str = "development"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./dev.db"

    # Caller tokens (Authorization: Bearer <jwt>)
    jwt_secret: str = _JWT_SECRET_PLACEHOLDER
    jwt_algorithms: str = "HS256"

    # Peer services. An empty read service URL means "read from the local store".
    read_service_base_url: str = ""
    read_service_attachment_endpoint: str = "/api/v1/attachments/{attachment_id}"
    authz_service_base_url: str = "http://authorize:8080"
    authz_service_user_can_endpoint: str = "/api/v1/authorize/user-can"
    peer_request_timeout_seconds: float = 10.0

    # Attachments
    attachments_local_dir: str = ".data/attachments"
    attachments_max_size_bytes: int = 25 * 1024 * 1024

    # S3-compatible storage
    s3_endpoint_url: str = ""
    s3_region: str = ""
    s3_bucket: str = ""
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    s3_force_path_style: bool = False

    # Validate production settings early to fail fast on unsafe defaults.
    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        if self.environment.strip().lower() != "production":
            return self

        errors: list[str] = []

        secret = self.jwt_secret.strip()
        if not secret or secret == _JWT_SECRET_PLACEHOLDER:
            errors.append("JWT_SECRET must be set in production")

        if not self.authz_service_base_url.strip():
            errors.append("AUTHZ_SERVICE_BASE_URL must be set in production")

        # If any S3 setting is provided, require the full set to avoid silently falling back to local storage.
        s3_fields = {
            "S3_BUCKET": self.s3_bucket.strip(),
            "S3_ENDPOINT_URL": self.s3_endpoint_url.strip(),
            "S3_ACCESS_KEY_ID": self.s3_access_key_id.strip(),
            "S3_SECRET_ACCESS_KEY": self.s3_secret_access_key.strip(),
        }
        if any(v for v in s3_fields.values()) and any(not v for v in s3_fields.values()):
            missing = ",".join([k for k, v in s3_fields.items() if not v])
            errors.append(f"S3 config incomplete in production; missing: {missing}")

        if errors:
            raise ValueError("Invalid production settings: " + "; ".join(errors))
        return self

    def jwt_algorithms_list(self) -> list[str]:
        return _split_csv(self.jwt_algorithms) or ["HS256"]

    def s3_configured(self) -> bool:
        return bool(
            self.s3_bucket.strip()
            and self.s3_endpoint_url.strip()
            and self.s3_access_key_id.strip()
            and self.s3_secret_access_key.strip()
        )

    def security_warnings(self) -> list[str]:
        warnings: list[str] = []
        secret = self.jwt_secret.strip()
        if not secret or secret == _JWT_SECRET_PLACEHOLDER:
            warnings.append("JWT_SECRET is missing or using placeholder value")
        if not self.authz_service_base_url.strip():
            warnings.append("AUTHZ_SERVICE_BASE_URL is empty; edit/delete checks will fail")
        return warnings


settings = Settings()

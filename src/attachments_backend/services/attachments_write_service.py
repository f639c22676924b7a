"""Write-side pipeline for attachments (create / partial update / delete).

Each operation is a fixed sequence of stages run by `_run_pipeline`. A stage
either returns None (go on), returns a MutationResult (terminal success:
missing-on-update, no-op, completed write) or raises an AttachmentWriteError
(terminal failure). Whatever the terminal outcome, the loop stops there, so no
later fetch/authorize/store/write call is ever issued for that request.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from attachments_backend.domain.attachment_diff import MUTABLE_FIELDS, compute_diff
from attachments_backend.errors import (
    AttachmentWriteError,
    InfrastructureError,
    InvalidInput,
    NotFound,
    Unauthorized,
    WriteFailed,
    missing_body,
    missing_file,
    missing_id,
)
from attachments_backend.integrations.peer_services import ActionAuthorizer, AttachmentReader
from attachments_backend.integrations.storage.object_storage import (
    ObjectStorage,
    attachment_storage_key,
)
from attachments_backend.models import (
    FILENAME_MAX_LENGTH,
    MIMETYPE_MAX_LENGTH,
    PARENT_MAX_LENGTHS,
    USER_ID_MAX_LENGTH,
    Attachment,
    utc_now,
)
from attachments_backend.repositories import attachments_repo
from attachments_backend.security import TokenVerificationError, verify_token
from attachments_backend.services.attachment_gates import (
    Decision,
    Missing,
    authorize_edit,
    fetch_by_id,
)
from attachments_backend.services.cleanup import CleanupTrigger

logger = logging.getLogger(__name__)


class MutationStage(str, enum.Enum):
    VALIDATING = "validating"
    AUTHENTICATING = "authenticating"
    FETCHING = "fetching"
    AUTHORIZING = "authorizing"
    DIFFING = "diffing"
    STORING = "storing"
    WRITING = "writing"
    CLEANING = "cleaning"


@dataclass(frozen=True)
class FileUpload:
    """An uploaded file, not yet stored."""

    filename: str | None
    mimetype: str | None
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class MutationResult:
    data: dict[str, Any] | None
    # Stage that produced the outcome.
    stage: MutationStage
    wrote: bool = False


@dataclass
class _Run:
    op: str
    consumer_token: str | None
    attachment_id: str | None = None
    body: Mapping[str, Any] | None = None
    file: FileUpload | None = None
    stage: MutationStage = MutationStage.VALIDATING
    subject: str | None = None
    storage_key: str | None = None
    current: dict[str, Any] | None = None
    diff: Mapping[str, Any] = field(default_factory=dict)

    def done(self, data: dict[str, Any] | None, *, wrote: bool = False) -> MutationResult:
        return MutationResult(data=data, stage=self.stage, wrote=wrote)

    def absent(self, what: str) -> RuntimeError:
        return RuntimeError(f"attachment {self.op}: no {what} at stage {self.stage.value}")

    def requested_id(self) -> str:
        if not self.attachment_id:
            raise self.absent("attachment id")
        return self.attachment_id

    def current_doc(self) -> dict[str, Any]:
        if self.current is None:
            raise self.absent("current document")
        return self.current

    def target_id(self) -> str:
        # Writes address the record that was fetched and authorized.
        doc_id = self.current_doc().get("id")
        if isinstance(doc_id, str) and doc_id:
            return doc_id
        return self.requested_id()


_Step = Callable[[_Run], Awaitable[MutationResult | None]]


def _check_parent_values(values: Mapping[str, Any]) -> None:
    for key in MUTABLE_FIELDS:
        value = values.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise InvalidInput(f"{key} must be a string or null.", property_name=key)
        limit = PARENT_MAX_LENGTHS[key]
        if len(value) > limit:
            raise InvalidInput(
                f"{key} must be at most {limit} characters.", property_name=key
            )


def _fit_filename(filename: str | None) -> str | None:
    if not filename:
        return None
    if len(filename) <= FILENAME_MAX_LENGTH:
        return filename
    # Shorten the stem, keep the extension.
    suffix = PurePosixPath(filename).suffix
    if len(suffix) > 16:
        suffix = ""
    return filename[: FILENAME_MAX_LENGTH - len(suffix)] + suffix


class AttachmentsWriteService:
    def __init__(
        self,
        *,
        session: AsyncSession,
        storage: ObjectStorage,
        reader: AttachmentReader,
        authorizer: ActionAuthorizer,
        cleanup: CleanupTrigger,
        token_verifier: Callable[[str | None], str] = verify_token,
        request_id: str | None = None,
    ) -> None:
        self._session = session
        self._storage = storage
        self._reader = reader
        self._authorizer = authorizer
        self._cleanup = cleanup
        self._verify_token = token_verifier
        self._request_id = request_id

    async def create(
        self,
        *,
        consumer_token: str | None,
        body: Mapping[str, Any] | None,
        file: FileUpload | None,
    ) -> MutationResult:
        run = _Run(op="create", consumer_token=consumer_token, body=body, file=file)
        return await self._run_pipeline(
            run,
            [
                (MutationStage.VALIDATING, self._validate_create),
                (MutationStage.AUTHENTICATING, self._authenticate),
                (MutationStage.STORING, self._store_file),
                (MutationStage.WRITING, self._insert),
            ],
        )

    async def update(
        self,
        *,
        consumer_token: str | None,
        attachment_id: str | None,
        body: Mapping[str, Any] | None,
    ) -> MutationResult:
        run = _Run(
            op="update", consumer_token=consumer_token, attachment_id=attachment_id, body=body
        )
        return await self._run_pipeline(
            run,
            [
                (MutationStage.VALIDATING, self._validate_id),
                (MutationStage.FETCHING, self._fetch_for_update),
                (MutationStage.AUTHORIZING, self._authorize),
                (MutationStage.DIFFING, self._diff),
                (MutationStage.WRITING, self._write_update),
            ],
        )

    async def delete(
        self, *, consumer_token: str | None, attachment_id: str | None
    ) -> MutationResult:
        run = _Run(op="delete", consumer_token=consumer_token, attachment_id=attachment_id)
        return await self._run_pipeline(
            run,
            [
                (MutationStage.VALIDATING, self._validate_id),
                (MutationStage.FETCHING, self._fetch_for_delete),
                (MutationStage.AUTHORIZING, self._authorize),
                (MutationStage.WRITING, self._write_delete),
                (MutationStage.CLEANING, self._trigger_cleanup),
            ],
        )

    async def _run_pipeline(
        self, run: _Run, steps: Sequence[tuple[MutationStage, _Step]]
    ) -> MutationResult:
        for stage, step in steps:
            run.stage = stage
            try:
                outcome = await step(run)
            except AttachmentWriteError as e:
                logger.info(
                    "attachment %s stopped request_id=%s id=%s stage=%s status=%s",
                    run.op,
                    self._request_id,
                    run.attachment_id,
                    stage.value,
                    e.status,
                )
                raise
            if outcome is not None:
                logger.info(
                    "attachment %s done request_id=%s id=%s stage=%s wrote=%s",
                    run.op,
                    self._request_id,
                    run.attachment_id,
                    stage.value,
                    outcome.wrote,
                )
                return outcome
        # Every pipeline ends with a stage that always returns an outcome.
        raise RuntimeError(f"attachment {run.op} pipeline ended without an outcome")

    async def _validate_create(self, run: _Run) -> None:
        if run.body is None:
            raise missing_body()
        if run.file is None:
            raise missing_file()
        _check_parent_values(run.body)
        mimetype = run.file.mimetype
        if mimetype and len(mimetype) > MIMETYPE_MAX_LENGTH:
            raise InvalidInput("Attachment content type is too long.", property_name="attachment")

    async def _validate_id(self, run: _Run) -> None:
        if not run.attachment_id or not run.attachment_id.strip():
            raise missing_id()

    async def _authenticate(self, run: _Run) -> None:
        try:
            subject = self._verify_token(run.consumer_token)
        except TokenVerificationError as e:
            logger.debug("token rejected request_id=%s: %s", self._request_id, e)
            raise Unauthorized() from e
        if len(subject) > USER_ID_MAX_LENGTH:
            logger.debug("token subject too long request_id=%s", self._request_id)
            raise Unauthorized()
        run.subject = subject

    async def _store_file(self, run: _Run) -> None:
        if run.file is None:
            raise run.absent("file")
        run.attachment_id = str(uuid.uuid4())
        key = attachment_storage_key(run.attachment_id)
        try:
            await self._storage.put_bytes(key, run.file.data, content_type=run.file.mimetype)
        except Exception as e:
            logger.exception(
                "attachment upload failed request_id=%s key=%s", self._request_id, key
            )
            raise InfrastructureError() from e
        run.storage_key = key

    async def _insert(self, run: _Run) -> MutationResult:
        if run.body is None or run.file is None or not run.subject or not run.storage_key:
            raise run.absent("stored upload")
        row = Attachment(
            id=run.requested_id(),
            filename=_fit_filename(run.file.filename),
            mimetype=run.file.mimetype or None,
            size=run.file.size,
            path=run.storage_key,
            timestamp=utc_now(),
            user_id=run.subject,
            parent_id=run.body.get("parentId"),
            parent_type=run.body.get("parentType"),
            parent_subtype=run.body.get("parentSubtype"),
        )
        # On any failure below the record was never written; drop the orphaned object.
        try:
            result = await attachments_repo.insert(self._session, row)
        except SQLAlchemyError as e:
            _ = self._cleanup.delete_file(run.storage_key)
            logger.exception("attachment insert failed request_id=%s", self._request_id)
            raise InfrastructureError() from e
        except Exception:
            _ = self._cleanup.delete_file(run.storage_key)
            raise
        if result.inserted == 0 or result.new_doc is None:
            _ = self._cleanup.delete_file(run.storage_key)
            raise WriteFailed()
        return run.done(result.new_doc, wrote=True)

    async def _fetch(self, run: _Run) -> bool:
        fetched = await fetch_by_id(self._reader, run.requested_id())
        if isinstance(fetched, Missing):
            return False
        run.current = fetched.resource
        return True

    async def _fetch_for_update(self, run: _Run) -> MutationResult | None:
        # Missing on update is a "no data" success, unlike delete.
        if not await self._fetch(run):
            return run.done(None)
        return None

    async def _fetch_for_delete(self, run: _Run) -> None:
        if not await self._fetch(run):
            raise NotFound()

    async def _authorize(self, run: _Run) -> None:
        decision = await authorize_edit(
            self._authorizer, consumer_token=run.consumer_token, resource=run.current_doc()
        )
        if decision is Decision.DENY:
            raise Unauthorized()

    async def _diff(self, run: _Run) -> MutationResult | None:
        current = run.current_doc()
        run.diff = compute_diff(current, run.body or {})
        if not run.diff:
            return run.done(current)
        _check_parent_values(run.diff)
        return None

    async def _write_update(self, run: _Run) -> MutationResult:
        target_id = run.target_id()
        try:
            result = await attachments_repo.update(self._session, target_id, run.diff)
        except SQLAlchemyError as e:
            logger.exception(
                "attachment update failed request_id=%s id=%s", self._request_id, target_id
            )
            raise InfrastructureError() from e
        if result.replaced == 0 or result.new_doc is None:
            # e.g. deleted concurrently; answer with the last state we saw.
            return run.done(run.current_doc())
        return run.done(result.new_doc, wrote=True)

    async def _write_delete(self, run: _Run) -> MutationResult | None:
        target_id = run.target_id()
        try:
            result = await attachments_repo.delete(self._session, target_id)
        except SQLAlchemyError as e:
            logger.exception(
                "attachment delete failed request_id=%s id=%s", self._request_id, target_id
            )
            raise InfrastructureError() from e
        if result.deleted == 0:
            return run.done(None)
        return None

    async def _trigger_cleanup(self, run: _Run) -> MutationResult:
        _ = self._cleanup.delete_file(str(run.current_doc().get("path") or ""))
        return run.done(None, wrote=True)

from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy.exc import OperationalError

from attachments_backend.db import session_scope
from attachments_backend.errors import (
    InfrastructureError,
    InvalidInput,
    NotFound,
    Unauthorized,
    WriteFailed,
)
from attachments_backend.integrations.peer_services import PeerServiceError
from attachments_backend.models import Attachment
from attachments_backend.repositories import attachments_repo
from attachments_backend.repositories.attachments_repo import (
    DeleteResult,
    InsertResult,
    StoreAttachmentReader,
    UpdateResult,
)
from attachments_backend.security import TokenVerificationError
from attachments_backend.services.attachments_write_service import (
    AttachmentsWriteService,
    FileUpload,
    MutationStage,
)
from attachments_backend.services.cleanup import CleanupTrigger


class _FakeAuthorizer:
    def __init__(self, *, can: bool = True, fail: bool = False) -> None:
        self.can = can
        self.fail = fail
        self.calls: list[dict[str, Any]] = []

    async def user_can(
        self, *, consumer_token: str | None, what: str, context: dict[str, Any]
    ) -> bool:
        self.calls.append({"consumer_token": consumer_token, "what": what, "context": context})
        if self.fail:
            raise PeerServiceError("authorize failed. 503")
        return self.can


class _FailingReader:
    async def get_attachment(self, attachment_id: str) -> dict[str, Any] | None:
        raise PeerServiceError(f"read attachment failed id={attachment_id}")


class _FakeStorage:
    def __init__(self, *, fail: bool = False, fail_put: bool = False) -> None:
        self.fail = fail
        self.fail_put = fail_put
        self.put: dict[str, bytes] = {}
        self.deleted: list[str] = []

    async def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        if self.fail_put:
            raise OSError("disk full")
        self.put[key] = data

    async def delete(self, key: str) -> None:
        self.deleted.append(key)
        if self.fail:
            raise RuntimeError("storage down")


class _StoreSpy:
    """Counts calls to the document store's write path."""

    def __init__(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self.calls: list[str] = []
        for name in ("insert", "update", "delete"):
            original = getattr(attachments_repo, name)
            monkeypatch.setattr(attachments_repo, name, self._wrap(name, original))

    def _wrap(self, name: str, original: Any) -> Any:
        async def _spy(*args: Any, **kwargs: Any) -> Any:
            self.calls.append(name)
            return await original(*args, **kwargs)

        return _spy


def _verify_token(token: str | None) -> str:
    if token == "tok-u1":
        return "u1"
    if token == "tok-u2":
        return "u2"
    raise TokenVerificationError("bad token")


_FILE = FileUpload(filename="a.png", mimetype="image/png", data=b"png")


async def _seed(attachment_id: str = "42", *, user_id: str = "u1", parent_id: str = "p1") -> None:
    async with session_scope() as session:
        session.add(
            Attachment(
                id=attachment_id,
                filename="a.png",
                mimetype="image/png",
                size=3,
                path=f"uploads/{attachment_id}",
                user_id=user_id,
                parent_id=parent_id,
                parent_type="mod",
                parent_subtype=None,
            )
        )
        await session.commit()


async def _stored(attachment_id: str) -> dict[str, Any] | None:
    async with session_scope() as session:
        return await attachments_repo.get(session, attachment_id)


def _service(session: Any, **kwargs: Any) -> AttachmentsWriteService:
    storage = kwargs.pop("storage", _FakeStorage())
    return AttachmentsWriteService(
        session=session,
        storage=storage,
        reader=kwargs.pop("reader", StoreAttachmentReader(session)),
        authorizer=kwargs.pop("authorizer", _FakeAuthorizer()),
        cleanup=kwargs.pop("cleanup", CleanupTrigger(storage)),
        token_verifier=_verify_token,
        request_id="req-1",
    )


@pytest.mark.anyio
async def test_create_uses_caller_as_owner(sqlite_db: str) -> None:
    async with session_scope() as session:
        result = await _service(session).create(
            consumer_token="tok-u2",
            body={"parentId": "p1", "parentType": "mod", "parentSubtype": "x", "userId": "u1"},
            file=_FILE,
        )

    assert result.wrote is True
    data = result.data
    assert data is not None
    assert data["id"]
    assert data["userId"] == "u2"
    assert data["parentId"] == "p1"
    assert data["parentType"] == "mod"
    assert data["parentSubtype"] == "x"
    assert data["path"] == f"uploads/{data['id']}"
    assert data["filename"] == "a.png"
    assert data["size"] == 3
    assert data["timestamp"] is not None
    assert (await _stored(data["id"])) is not None


@pytest.mark.anyio
async def test_create_without_body_or_file_is_invalid(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    spy = _StoreSpy(monkeypatch)
    async with session_scope() as session:
        service = _service(session)
        with pytest.raises(InvalidInput) as no_body:
            await service.create(consumer_token="tok-u1", body=None, file=_FILE)
        with pytest.raises(InvalidInput) as no_file:
            await service.create(consumer_token="tok-u1", body={}, file=None)

    assert no_body.value.to_error_object() == {
        "title": "Parameters not valid",
        "detail": "JSON body is missing.",
        "propertyName": "body",
        "status": 400,
    }
    assert no_file.value.property_name == "attachment"
    assert no_file.value.detail == "File is missing."
    assert spy.calls == []


@pytest.mark.anyio
async def test_create_with_bad_token_is_unauthorized(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    spy = _StoreSpy(monkeypatch)
    storage = _FakeStorage()
    async with session_scope() as session:
        with pytest.raises(Unauthorized) as excinfo:
            await _service(session, storage=storage).create(
                consumer_token="nope", body={}, file=_FILE
            )
    assert excinfo.value.status == 403
    assert spy.calls == []
    # Nothing reaches storage before the caller is known.
    assert storage.put == {}


@pytest.mark.anyio
async def test_create_reports_write_failed_when_nothing_inserted(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _insert_nothing(session: Any, row: Attachment) -> InsertResult:
        return InsertResult(inserted=0, new_doc=None)

    monkeypatch.setattr(attachments_repo, "insert", _insert_nothing)
    storage = _FakeStorage()
    cleanup = CleanupTrigger(storage)
    async with session_scope() as session:
        with pytest.raises(WriteFailed) as excinfo:
            await _service(session, storage=storage, cleanup=cleanup).create(
                consumer_token="tok-u1", body={}, file=_FILE
            )
    await cleanup.drain()
    assert len(storage.put) == 1
    assert storage.deleted == list(storage.put)
    assert excinfo.value.to_error_object() == {
        "title": "Unknown error",
        "detail": "Failed writing to database.",
        "status": 500,
    }


@pytest.mark.anyio
@pytest.mark.parametrize("attachment_id", [None, "", "   "])
async def test_update_and_delete_require_id(sqlite_db: str, attachment_id: str | None) -> None:
    authorizer = _FakeAuthorizer()
    async with session_scope() as session:
        service = _service(session, authorizer=authorizer)
        with pytest.raises(InvalidInput) as upd:
            await service.update(consumer_token="tok-u1", attachment_id=attachment_id, body={})
        with pytest.raises(InvalidInput) as dele:
            await service.delete(consumer_token="tok-u1", attachment_id=attachment_id)
    assert upd.value.property_name == "id"
    assert dele.value.detail == "Attachment id is missing."
    assert authorizer.calls == []


@pytest.mark.anyio
async def test_update_missing_attachment_is_empty_success(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    spy = _StoreSpy(monkeypatch)
    authorizer = _FakeAuthorizer()
    async with session_scope() as session:
        result = await _service(session, authorizer=authorizer).update(
            consumer_token="tok-u1", attachment_id="nope", body={"parentId": "p2"}
        )
    assert result.data is None
    assert result.stage is MutationStage.FETCHING
    assert authorizer.calls == []
    assert spy.calls == []


@pytest.mark.anyio
async def test_update_denied_never_writes(sqlite_db: str, monkeypatch: pytest.MonkeyPatch) -> None:
    await _seed("42", user_id="owner-a")
    spy = _StoreSpy(monkeypatch)
    authorizer = _FakeAuthorizer(can=False)
    async with session_scope() as session:
        with pytest.raises(Unauthorized):
            await _service(session, authorizer=authorizer).update(
                consumer_token="tok-u2", attachment_id="42", body={"parentId": "p2"}
            )

    # The check is about the stored owner, with the caller's token forwarded.
    assert authorizer.calls == [
        {"consumer_token": "tok-u2", "what": "attachments:edit", "context": {"owner": "owner-a"}}
    ]
    assert spy.calls == []
    stored = await _stored("42")
    assert stored is not None and stored["parentId"] == "p1"


@pytest.mark.anyio
async def test_update_noop_returns_current_without_writing(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    await _seed("42")
    spy = _StoreSpy(monkeypatch)
    async with session_scope() as session:
        result = await _service(session).update(
            consumer_token="tok-u1",
            attachment_id="42",
            body={"parentId": "p1", "userId": "u9", "size": 100},
        )
    assert result.stage is MutationStage.DIFFING
    assert result.wrote is False
    assert result.data is not None
    assert result.data["parentId"] == "p1"
    assert result.data["userId"] == "u1"
    assert spy.calls == []


@pytest.mark.anyio
async def test_update_applies_only_mutable_fields(sqlite_db: str) -> None:
    await _seed("42")
    async with session_scope() as session:
        result = await _service(session).update(
            consumer_token="tok-u1",
            attachment_id="42",
            body={"parentId": "p2", "parentSubtype": "x", "path": "elsewhere", "userId": "u9"},
        )
    assert result.wrote is True
    assert result.data is not None
    assert result.data["parentId"] == "p2"
    assert result.data["parentSubtype"] == "x"

    stored = await _stored("42")
    assert stored is not None
    assert stored["parentId"] == "p2"
    assert stored["parentType"] == "mod"
    assert stored["path"] == "uploads/42"
    assert stored["userId"] == "u1"


@pytest.mark.anyio
async def test_update_returns_last_known_state_when_nothing_replaced(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    await _seed("42")

    async def _replace_nothing(session: Any, attachment_id: str, fields: Any) -> UpdateResult:
        return UpdateResult(replaced=0, new_doc=None)

    monkeypatch.setattr(attachments_repo, "update", _replace_nothing)
    async with session_scope() as session:
        result = await _service(session).update(
            consumer_token="tok-u1", attachment_id="42", body={"parentId": "p2"}
        )
    assert result.wrote is False
    assert result.data is not None
    assert result.data["parentId"] == "p1"


@pytest.mark.anyio
async def test_update_rejects_non_string_parent_values(sqlite_db: str) -> None:
    await _seed("42")
    async with session_scope() as session:
        with pytest.raises(InvalidInput) as excinfo:
            await _service(session).update(
                consumer_token="tok-u1", attachment_id="42", body={"parentId": {"$ne": 1}}
            )
    assert excinfo.value.property_name == "parentId"


@pytest.mark.anyio
async def test_delete_missing_attachment_is_not_found(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    spy = _StoreSpy(monkeypatch)
    storage = _FakeStorage()
    cleanup = CleanupTrigger(storage)
    async with session_scope() as session:
        with pytest.raises(NotFound) as excinfo:
            await _service(session, cleanup=cleanup).delete(
                consumer_token="tok-u1", attachment_id="99"
            )
    await cleanup.drain()
    assert excinfo.value.to_error_object() == {
        "title": "Not found",
        "detail": "Attachment not found.",
        "status": 404,
    }
    assert spy.calls == []
    assert storage.deleted == []


@pytest.mark.anyio
async def test_delete_denied_keeps_record_and_file(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    await _seed("42", user_id="owner-a")
    spy = _StoreSpy(monkeypatch)
    storage = _FakeStorage()
    cleanup = CleanupTrigger(storage)
    async with session_scope() as session:
        with pytest.raises(Unauthorized):
            await _service(session, authorizer=_FakeAuthorizer(can=False), cleanup=cleanup).delete(
                consumer_token="tok-u2", attachment_id="42"
            )
    await cleanup.drain()
    assert spy.calls == []
    assert storage.deleted == []
    assert (await _stored("42")) is not None


@pytest.mark.anyio
async def test_delete_removes_record_then_file_once(sqlite_db: str) -> None:
    await _seed("42")
    storage = _FakeStorage()
    cleanup = CleanupTrigger(storage)
    async with session_scope() as session:
        result = await _service(session, cleanup=cleanup).delete(
            consumer_token="tok-u1", attachment_id="42"
        )

    assert result.data is None
    assert result.stage is MutationStage.CLEANING
    assert (await _stored("42")) is None

    await cleanup.drain()
    assert storage.deleted == ["uploads/42"]


@pytest.mark.anyio
async def test_delete_of_zero_rows_skips_cleanup(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    await _seed("42")

    async def _delete_nothing(session: Any, attachment_id: str) -> DeleteResult:
        return DeleteResult(deleted=0, old_doc=None)

    monkeypatch.setattr(attachments_repo, "delete", _delete_nothing)
    storage = _FakeStorage()
    cleanup = CleanupTrigger(storage)
    async with session_scope() as session:
        result = await _service(session, cleanup=cleanup).delete(
            consumer_token="tok-u1", attachment_id="42"
        )
    await cleanup.drain()
    assert result.data is None
    assert result.stage is MutationStage.WRITING
    assert storage.deleted == []


@pytest.mark.anyio
async def test_delete_succeeds_even_if_file_cleanup_fails(sqlite_db: str) -> None:
    await _seed("42")
    storage = _FakeStorage(fail=True)
    cleanup = CleanupTrigger(storage)
    async with session_scope() as session:
        result = await _service(session, cleanup=cleanup).delete(
            consumer_token="tok-u1", attachment_id="42"
        )
    await cleanup.drain()
    assert result.data is None
    assert storage.deleted == ["uploads/42"]
    assert cleanup.pending == 0


@pytest.mark.anyio
async def test_peer_failures_become_infrastructure_errors(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    await _seed("42")
    spy = _StoreSpy(monkeypatch)
    async with session_scope() as session:
        with pytest.raises(InfrastructureError) as read_err:
            await _service(session, reader=_FailingReader()).delete(
                consumer_token="tok-u1", attachment_id="42"
            )
        with pytest.raises(InfrastructureError) as authz_err:
            await _service(session, authorizer=_FakeAuthorizer(fail=True)).update(
                consumer_token="tok-u1", attachment_id="42", body={"parentId": "p2"}
            )
    assert read_err.value.status == 500
    assert authz_err.value.to_error_object()["detail"] == "Internal server error."
    assert spy.calls == []


@pytest.mark.anyio
async def test_create_stores_upload_under_record_id(sqlite_db: str) -> None:
    storage = _FakeStorage()
    async with session_scope() as session:
        result = await _service(session, storage=storage).create(
            consumer_token="tok-u1", body={}, file=_FILE
        )
    assert result.data is not None
    assert storage.put == {f"uploads/{result.data['id']}": b"png"}


@pytest.mark.anyio
async def test_create_upload_failure_never_writes_record(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    spy = _StoreSpy(monkeypatch)
    async with session_scope() as session:
        with pytest.raises(InfrastructureError) as excinfo:
            await _service(session, storage=_FakeStorage(fail_put=True)).create(
                consumer_token="tok-u1", body={}, file=_FILE
            )
    assert excinfo.value.to_error_object() == {
        "title": "Unknown error",
        "detail": "Internal server error.",
        "status": 500,
    }
    assert spy.calls == []


@pytest.mark.anyio
async def test_create_insert_failure_is_infrastructure_error_and_drops_upload(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _insert_broken(session: Any, row: Attachment) -> InsertResult:
        raise OperationalError("INSERT INTO attachments", {}, Exception("database is locked"))

    monkeypatch.setattr(attachments_repo, "insert", _insert_broken)
    storage = _FakeStorage()
    cleanup = CleanupTrigger(storage)
    async with session_scope() as session:
        with pytest.raises(InfrastructureError) as excinfo:
            await _service(session, storage=storage, cleanup=cleanup).create(
                consumer_token="tok-u1", body={"parentId": "p1"}, file=_FILE
            )
    await cleanup.drain()
    assert excinfo.value.detail == "Internal server error."
    assert len(storage.put) == 1
    assert storage.deleted == list(storage.put)


@pytest.mark.anyio
async def test_create_unexpected_insert_error_still_drops_upload(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _insert_broken(session: Any, row: Attachment) -> InsertResult:
        raise ValueError("unexpected")

    monkeypatch.setattr(attachments_repo, "insert", _insert_broken)
    storage = _FakeStorage()
    cleanup = CleanupTrigger(storage)
    async with session_scope() as session:
        with pytest.raises(ValueError):
            await _service(session, storage=storage, cleanup=cleanup).create(
                consumer_token="tok-u1", body={}, file=_FILE
            )
    await cleanup.drain()
    assert storage.deleted == list(storage.put)


@pytest.mark.anyio
async def test_update_and_delete_store_failures_are_infrastructure_errors(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    await _seed("42")

    async def _broken(*args: Any, **kwargs: Any) -> Any:
        raise OperationalError("UPDATE attachments", {}, Exception("connection lost"))

    monkeypatch.setattr(attachments_repo, "update", _broken)
    monkeypatch.setattr(attachments_repo, "delete", _broken)
    storage = _FakeStorage()
    cleanup = CleanupTrigger(storage)
    async with session_scope() as session:
        service = _service(session, storage=storage, cleanup=cleanup)
        with pytest.raises(InfrastructureError) as upd:
            await service.update(
                consumer_token="tok-u1", attachment_id="42", body={"parentId": "p2"}
            )
        with pytest.raises(InfrastructureError) as dele:
            await service.delete(consumer_token="tok-u1", attachment_id="42")
    await cleanup.drain()

    assert upd.value.to_error_object()["detail"] == "Internal server error."
    assert dele.value.status == 500
    assert storage.deleted == []
    stored = await _stored("42")
    assert stored is not None and stored["parentId"] == "p1"


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("field", "limit"), [("parentId", 128), ("parentType", 64), ("parentSubtype", 64)]
)
async def test_over_long_parent_values_are_invalid(
    sqlite_db: str, monkeypatch: pytest.MonkeyPatch, field: str, limit: int
) -> None:
    await _seed("42")
    spy = _StoreSpy(monkeypatch)
    storage = _FakeStorage()
    async with session_scope() as session:
        service = _service(session, storage=storage)
        with pytest.raises(InvalidInput) as on_create:
            await service.create(
                consumer_token="tok-u1", body={field: "x" * (limit + 1)}, file=_FILE
            )
        with pytest.raises(InvalidInput) as on_update:
            await service.update(
                consumer_token="tok-u1", attachment_id="42", body={field: "y" * (limit + 1)}
            )
        # Exactly at the limit is fine.
        ok = await service.update(
            consumer_token="tok-u1", attachment_id="42", body={field: "z" * limit}
        )

    assert on_create.value.property_name == field
    assert on_update.value.property_name == field
    assert on_update.value.status == 400
    assert ok.data is not None and ok.data[field] == "z" * limit
    assert storage.put == {}
    assert spy.calls == ["update"]


@pytest.mark.anyio
async def test_create_shortens_long_filename_and_rejects_long_mimetype(sqlite_db: str) -> None:
    long_name = "n" * 300 + ".pdf"
    async with session_scope() as session:
        service = _service(session)
        result = await service.create(
            consumer_token="tok-u1",
            body={},
            file=FileUpload(filename=long_name, mimetype="application/pdf", data=b"%PDF"),
        )
        with pytest.raises(InvalidInput) as excinfo:
            await service.create(
                consumer_token="tok-u1",
                body={},
                file=FileUpload(filename="a.bin", mimetype="x/" + "y" * 300, data=b"1"),
            )

    assert result.data is not None
    assert len(result.data["filename"]) == 255
    assert result.data["filename"].endswith(".pdf")
    assert excinfo.value.property_name == "attachment"


@pytest.mark.anyio
async def test_create_rejects_token_subject_wider_than_owner_column(sqlite_db: str) -> None:
    async with session_scope() as session:
        service = AttachmentsWriteService(
            session=session,
            storage=_FakeStorage(),
            reader=StoreAttachmentReader(session),
            authorizer=_FakeAuthorizer(),
            cleanup=CleanupTrigger(_FakeStorage()),
            token_verifier=lambda token: "u" * 129,
        )
        with pytest.raises(Unauthorized):
            await service.create(consumer_token="tok", body={}, file=_FILE)


class _AliasReader:
    """Read service that resolves any requested id to record 42."""

    def __init__(self, session: Any) -> None:
        self._inner = StoreAttachmentReader(session)
        self.requested: list[str] = []

    async def get_attachment(self, attachment_id: str) -> dict[str, Any] | None:
        self.requested.append(attachment_id)
        return await self._inner.get_attachment("42")


@pytest.mark.anyio
async def test_writes_target_the_fetched_record(sqlite_db: str) -> None:
    await _seed("42")
    await _seed("42?x=1", parent_id="other")
    storage = _FakeStorage()
    cleanup = CleanupTrigger(storage)
    async with session_scope() as session:
        reader = _AliasReader(session)
        service = _service(session, reader=reader, cleanup=cleanup)
        updated = await service.update(
            consumer_token="tok-u1", attachment_id="42?x=1", body={"parentId": "p2"}
        )
        await service.delete(consumer_token="tok-u1", attachment_id="42?x=1")
    await cleanup.drain()

    assert reader.requested == ["42?x=1", "42?x=1"]
    assert updated.data is not None and updated.data["id"] == "42"
    assert (await _stored("42")) is None
    untouched = await _stored("42?x=1")
    assert untouched is not None and untouched["parentId"] == "other"
    assert storage.deleted == ["uploads/42"]

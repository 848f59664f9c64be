import io
import uuid
from unittest.mock import AsyncMock

import pytest
import sqlalchemy as sa
from fastapi import UploadFile
from httpx import AsyncClient, ASGITransport
from sqlalchemy.exc import SQLAlchemyError

from foldly.db.models.batch import Batch
from foldly.db.models.file import File
from foldly.db.models.link import Link
from foldly.db.models.notification import Notification
from foldly.db.models.user import User
from foldly.exceptions import InvalidInputError, StorageError, DatabaseError, UnauthorizedError
from foldly.services.upload_service import UploadService, BatchRequest, DeclaredFile, LinkFileForm
from foldly.utils.security import hash_password
from foldly.utils.types import BatchStatus, ProcessingStatus


@pytest.fixture
def uploads(db, storage, bus):
    return UploadService(db, storage, bus)


def batch_request(link: Link, *names: str, **kwargs) -> BatchRequest:
    kwargs.setdefault("uploader_name", "Ada Lovelace")
    return BatchRequest(
        link_id=link.id,
        files=[DeclaredFile(name, 5, "text/plain") for name in names],
        **kwargs,
    )


def upload_of(name: str, data: bytes = b"hello") -> UploadFile:
    return UploadFile(file=io.BytesIO(data), filename=name)


async def test_start_batch_makes_names_unique(db, uploads, make_link):
    link = await make_link("inbox")

    started = await uploads.start_batch(batch_request(link, "report.pdf", "report.pdf", "notes.txt"))

    names = [f["fileName"] for f in started["files"]]
    assert names == ["report.pdf", "report (1).pdf", "notes.txt"]
    assert all(f["originalName"] in ("report.pdf", "notes.txt") for f in started["files"])

    statuses = (await db.scalars(sa.select(File.processing_status))).all()
    assert set(statuses) == {ProcessingStatus.PENDING}


async def test_start_batch_enforces_link_requirements(uploads, make_link):
    link = await make_link("inbox", require_email=True, max_files=2)

    with pytest.raises(InvalidInputError, match="Name is required"):
        await uploads.start_batch(batch_request(link, "a.txt", uploader_name=""))

    with pytest.raises(InvalidInputError, match="Email is required"):
        await uploads.start_batch(batch_request(link, "a.txt"))

    with pytest.raises(InvalidInputError, match="file limit"):
        await uploads.start_batch(batch_request(link, "a.txt", "b.txt", "c.txt", uploader_email="a@b.c"))

    with pytest.raises(InvalidInputError, match="No files"):
        await uploads.start_batch(batch_request(link, uploader_email="a@b.c"))


async def test_start_batch_rejects_wrong_password(uploads, make_link):
    link = await make_link("private", require_password=True, password_hash=hash_password("secret"))

    with pytest.raises(UnauthorizedError):
        await uploads.start_batch(batch_request(link, "a.txt", password="guess"))

    started = await uploads.start_batch(batch_request(link, "a.txt", password="secret"))
    assert len(started["files"]) == 1


async def test_start_batch_uses_generated_link_folder(uploads, make_link, make_folder, db):
    folder = await make_folder("Contracts")
    link = await make_link("contracts")
    folder.link_id = link.id
    await db.commit()

    started = await uploads.start_batch(batch_request(link, "nda.pdf"))

    record = await db.get(File, uuid.UUID(started["files"][0]["id"]))
    assert record.folder_id == folder.id
    assert record.workspace_id == folder.workspace_id


async def test_link_upload_flow(client, fresh, storage, owner, make_link):
    link = await make_link("inbox")

    response = await client.post("/uploads/batches", json={
        "linkId": str(link.id),
        "uploaderName": "Ada",
        "files": [{"name": "a.txt", "size": 5, "type": "text/plain"},
                  {"name": "b.txt", "size": 6, "type": "text/plain"}],
    })
    assert response.status_code == 201
    started = response.json()["data"]

    stored = []
    for declared, data in zip(started["files"], (b"first", b"second")):
        response = await client.post(
            "/uploads/link-file",
            data={
                "batchId": started["batchId"],
                "fileId": declared["id"],
                "linkId": str(link.id),
                "linkSlug": "inbox",
            },
            files={"file": (declared["fileName"], data, "text/plain")},
        )
        assert response.status_code == 200, response.text
        stored.append(response.json()["data"])

    assert await storage.read(stored[0]["path"]) == b"first"
    assert stored[0]["path"].startswith(f"links/user_owner/{link.id}/")
    assert stored[1]["fileSize"] == 6

    async with fresh() as session:
        batch = await session.get(Batch, uuid.UUID(started["batchId"]))
        assert batch.status == BatchStatus.COMPLETED
        assert batch.processed_files == 2

        saved = await session.get(Link, link.id)
        assert saved.total_files == 2
        assert saved.total_size == 11
        assert saved.total_uploads == 1
        assert saved.unread_uploads == 1

        assert (await session.get(User, owner.id)).storage_used == 11

        notifications = (await session.scalars(sa.select(Notification))).all()
        assert len(notifications) == 1
        assert notifications[0].details["fileCount"] == 2
        assert notifications[0].details["uploaderName"] == "Ada"


async def test_link_file_requires_batch_id(client, make_link):
    link = await make_link("inbox")

    response = await client.post(
        "/uploads/link-file",
        data={"fileId": str(uuid.uuid4()), "linkId": str(link.id)},
        files={"file": ("a.txt", b"hello", "text/plain")},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_INPUT"


async def test_link_file_rejects_unknown_client_ip(app, make_link):
    link = await make_link("inbox")

    async with AsyncClient(transport=ASGITransport(app=app, client=("unknown", 0)), base_url="http://test") as c:
        response = await c.post(
            "/uploads/link-file",
            data={"batchId": str(uuid.uuid4()), "fileId": str(uuid.uuid4()), "linkId": str(link.id)},
            files={"file": ("a.txt", b"hello", "text/plain")},
        )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_IP"


async def test_link_file_wrong_password(client, uploads, make_link):
    link = await make_link("private", require_password=True, password_hash=hash_password("secret"))
    started = await uploads.start_batch(batch_request(link, "a.txt", password="secret"))

    response = await client.post(
        "/uploads/link-file",
        data={
            "batchId": started["batchId"],
            "fileId": started["files"][0]["id"],
            "linkId": str(link.id),
            "linkPassword": "guess",
        },
        files={"file": ("a.txt", b"hello", "text/plain")},
    )

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


async def test_link_file_unknown_batch(client, make_link):
    link = await make_link("inbox")

    response = await client.post(
        "/uploads/link-file",
        data={"batchId": str(uuid.uuid4()), "fileId": str(uuid.uuid4()), "linkId": str(link.id)},
        files={"file": ("a.txt", b"hello", "text/plain")},
    )

    assert response.status_code == 404


async def test_storage_failure_fails_file_and_batch(db, storage, bus, fresh, make_link):
    link = await make_link("inbox")
    uploads = UploadService(db, storage, bus)
    started = await uploads.start_batch(batch_request(link, "a.txt"))
    storage.upload = AsyncMock(side_effect=StorageError("disk full"))

    form = LinkFileForm(
        batch_id=uuid.UUID(started["batchId"]),
        file_id=uuid.UUID(started["files"][0]["id"]),
        link_id=link.id,
    )
    with pytest.raises(StorageError):
        await uploads.upload_link_file(upload_of("a.txt"), form, "127.0.0.1")

    async with fresh() as session:
        record = await session.get(File, form.file_id)
        batch = await session.get(Batch, form.batch_id)
        assert record.processing_status == ProcessingStatus.FAILED
        assert batch.status == BatchStatus.FAILED
        assert batch.failed_files == 1
        assert await session.scalar(sa.select(sa.func.count()).select_from(Notification)) == 0


async def test_database_failure_removes_stored_object(db, storage, bus, make_link, monkeypatch):
    link = await make_link("inbox")
    uploads = UploadService(db, storage, bus)
    started = await uploads.start_batch(batch_request(link, "a.txt"))

    delete_spy = AsyncMock(wraps=storage.delete)
    monkeypatch.setattr(storage, "delete", delete_spy)
    monkeypatch.setattr(db, "commit", AsyncMock(side_effect=SQLAlchemyError("connection lost")))

    form = LinkFileForm(
        batch_id=uuid.UUID(started["batchId"]),
        file_id=uuid.UUID(started["files"][0]["id"]),
        link_id=link.id,
    )
    with pytest.raises(DatabaseError):
        await uploads.upload_link_file(upload_of("a.txt"), form, "127.0.0.1")

    delete_spy.assert_awaited_once()
    (paths,), _ = delete_spy.await_args
    assert len(paths) == 1
    assert paths[0].startswith("links/")
    assert await storage.list("links") == []


async def test_oversized_file_is_rejected(db, uploads, make_link, fresh):
    link = await make_link("inbox", max_file_size=10)
    started = await uploads.start_batch(batch_request(link, "a.txt"))

    form = LinkFileForm(
        batch_id=uuid.UUID(started["batchId"]),
        file_id=uuid.UUID(started["files"][0]["id"]),
        link_id=link.id,
    )
    with pytest.raises(InvalidInputError):
        await uploads.upload_link_file(upload_of("a.txt", b"x" * 11), form, "127.0.0.1")

    async with fresh() as session:
        assert (await session.get(File, form.file_id)).processing_status == ProcessingStatus.FAILED


async def test_finalize_notifies_once(db, uploads, make_link, fresh):
    link = await make_link("inbox")
    started = await uploads.start_batch(batch_request(link, "a.txt"))
    form = LinkFileForm(
        batch_id=uuid.UUID(started["batchId"]),
        file_id=uuid.UUID(started["files"][0]["id"]),
        link_id=link.id,
    )
    await uploads.upload_link_file(upload_of("a.txt"), form, "127.0.0.1")

    assert await uploads.finalize_batch(form.batch_id) is False
    assert await uploads.finalize_batch(form.batch_id, force=True) is False

    async with fresh() as session:
        assert await session.scalar(sa.select(sa.func.count()).select_from(Notification)) == 1
        assert (await session.get(Link, link.id)).total_uploads == 1


async def test_closed_batch_rejects_more_files(db, uploads, make_link):
    link = await make_link("inbox")
    started = await uploads.start_batch(batch_request(link, "a.txt", "b.txt"))
    batch_id = uuid.UUID(started["batchId"])
    await uploads.finalize_batch(batch_id, force=True)

    form = LinkFileForm(batch_id=batch_id, file_id=uuid.UUID(started["files"][1]["id"]), link_id=link.id)
    with pytest.raises(InvalidInputError, match="closed"):
        await uploads.upload_link_file(upload_of("b.txt"), form, "127.0.0.1")

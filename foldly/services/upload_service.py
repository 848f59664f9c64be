"""
Public link uploads.

An upload happens in two calls. ``start_batch`` checks the link accepts the
declared files and creates a Batch with one pending File row per file. Each
file is then sent to ``upload_link_file``, which stores the bytes and records
the result; the request that completes the batch triggers the owner
notification.

Bytes are stored before the database write. If the database write fails the
stored object is deleted again, so storage never holds an object without a
completed row pointing at it.
"""

import uuid
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from fastapi import UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from foldly.db.models.batch import Batch
from foldly.db.models.file import File
from foldly.db.models.folder import Folder
from foldly.db.models.link import Link
from foldly.db.models.user import User
from foldly.exceptions import (
    InvalidIPError,
    InvalidInputError,
    UnauthorizedError,
    NotFoundError,
    StorageError,
    DatabaseError,
)
from foldly.logger import get_logger
from foldly.services.notification_service import NotificationService
from foldly.services.realtime_service import (
    RealtimeBus,
    safe_publish,
    link_files_channel,
    user_files_channel,
    workspace_channel,
    UPDATE,
    FILE_UPDATE_EVENT,
)
from foldly.services.storage_service import StorageAdapter, link_storage_path
from foldly.utils.dates import utcnow, as_utc
from foldly.utils.files import read_file_from_upload_file, FileTooLargeError, split_extension, generate_unique_name
from foldly.utils.hashing import sha256_async
from foldly.utils.security import parse_client_ip, verify_password
from foldly.utils.types import BatchStatus, ProcessingStatus

logger = get_logger(__name__)

TERMINAL_STATUSES = (BatchStatus.COMPLETED, BatchStatus.FAILED)
DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class DeclaredFile:
    name: str
    size: int
    mime_type: str = DEFAULT_MIME_TYPE


@dataclass
class BatchRequest:
    link_id: uuid.UUID
    uploader_name: Optional[str] = None
    uploader_email: Optional[str] = None
    uploader_message: Optional[str] = None
    folder_id: Optional[uuid.UUID] = None
    password: Optional[str] = None
    files: List[DeclaredFile] = field(default_factory=list)


@dataclass
class LinkFileForm:
    batch_id: uuid.UUID
    file_id: uuid.UUID
    link_id: uuid.UUID
    folder_id: Optional[uuid.UUID] = None
    link_slug: Optional[str] = None
    link_password: Optional[str] = None


def _no_sync(stmt):
    return stmt.execution_options(synchronize_session=False)


class UploadService:
    def __init__(self, db: AsyncSession, storage: StorageAdapter, bus: Optional[RealtimeBus] = None):
        self.db = db
        self.storage = storage
        self.bus = bus

    @staticmethod
    def _check_link_open(link: Link, password: Optional[str], slug: Optional[str] = None) -> None:
        if slug is not None and slug.strip().lower() != link.slug:
            raise UnauthorizedError("Link does not match.")
        if not link.is_active:
            raise UnauthorizedError("This link is not accepting uploads.")
        if link.expires_at is not None and as_utc(link.expires_at) <= utcnow():
            raise UnauthorizedError("This link has expired.")
        if link.require_password:
            if not password or not link.password_hash or not verify_password(password, link.password_hash):
                raise UnauthorizedError("Invalid link password.")

    async def _target_folder(self, link: Link, folder_id: Optional[uuid.UUID]) -> Optional[Folder]:
        if folder_id is not None:
            folder = await self.db.scalar(
                sa.select(Folder).where(Folder.id == folder_id, Folder.user_id == link.user_id)
            )
            if folder is None:
                raise NotFoundError("Folder not found.")
            return folder

        # Generated links upload into the folder they were generated for.
        return await self.db.scalar(sa.select(Folder).where(Folder.link_id == link.id).limit(1))

    async def _taken_names(self, link: Link, folder: Optional[Folder]) -> List[str]:
        stmt = sa.select(File.file_name).where(File.processing_status != ProcessingStatus.FAILED)
        if folder is not None:
            stmt = stmt.where(File.folder_id == folder.id)
        else:
            stmt = stmt.where(File.link_id == link.id, File.folder_id.is_(None))
        return list((await self.db.scalars(stmt)).all())

    async def start_batch(self, request: BatchRequest) -> Dict[str, Any]:
        link = await self.db.get(Link, request.link_id, populate_existing=True)
        if link is None:
            raise NotFoundError("Link not found.")
        self._check_link_open(link, request.password)

        if not request.files:
            raise InvalidInputError("No files were provided.")
        if link.total_files + len(request.files) > link.max_files:
            raise InvalidInputError("This link has reached its file limit.")
        for declared in request.files:
            if declared.size < 0:
                raise InvalidInputError(f"Invalid size for '{declared.name}'.")
            if declared.size > link.max_file_size:
                raise InvalidInputError(f"File '{declared.name}' exceeds the maximum file size.")

        uploader_name = (request.uploader_name or "").strip()
        if link.require_name and not uploader_name:
            raise InvalidInputError("Name is required.")
        if link.require_email and not (request.uploader_email or "").strip():
            raise InvalidInputError("Email is required.")
        if link.require_message and not (request.uploader_message or "").strip():
            raise InvalidInputError("Message is required.")

        total_size = sum(f.size for f in request.files)
        owner = await self.db.get(User, link.user_id, populate_existing=True)
        if owner.storage_used + total_size > owner.storage_limit:
            raise InvalidInputError("The link owner's storage is full.")

        folder = await self._target_folder(link, request.folder_id)
        taken = await self._taken_names(link, folder)

        batch = Batch(
            link_id=link.id,
            user_id=link.user_id,
            folder_id=folder.id if folder else None,
            uploader_name=uploader_name or "Anonymous",
            uploader_email=request.uploader_email,
            uploader_message=request.uploader_message,
            display_name=uploader_name or None,
            status=BatchStatus.UPLOADING,
            total_files=len(request.files),
            total_size=total_size,
        )
        self.db.add(batch)
        await self.db.flush()

        records: List[File] = []
        for declared in request.files:
            original = PurePosixPath(declared.name.replace("\\", "/")).name or "file"
            name = generate_unique_name(original, taken)
            taken.append(name)
            _, extension = split_extension(name)

            records.append(File(
                user_id=link.user_id,
                link_id=link.id,
                batch_id=batch.id,
                workspace_id=folder.workspace_id if folder else None,
                folder_id=folder.id if folder else None,
                file_name=name,
                original_name=original,
                file_size=declared.size,
                mime_type=declared.mime_type or DEFAULT_MIME_TYPE,
                extension=extension.lower() or None,
                processing_status=ProcessingStatus.PENDING,
            ))

        self.db.add_all(records)
        await self.db.commit()

        logger.info("Batch %s started on link %s with %d file(s)", batch.id, link.id, len(records))
        return {
            "batchId": str(batch.id),
            "files": [
                {"id": str(r.id), "fileName": r.file_name, "originalName": r.original_name}
                for r in records
            ],
        }

    async def _mark_failed(self, file_id: uuid.UUID, batch_id: uuid.UUID) -> None:
        await self.db.execute(_no_sync(
            sa.update(File)
            .where(File.id == file_id)
            .values(processing_status=ProcessingStatus.FAILED)
        ))
        await self.db.execute(_no_sync(
            sa.update(Batch)
            .where(Batch.id == batch_id)
            .values(failed_files=Batch.failed_files + 1)
        ))
        await self.db.commit()

    async def upload_link_file(
            self,
            file: Optional[UploadFile],
            form: LinkFileForm,
            client_ip: Optional[str]
    ) -> Dict[str, Any]:
        if parse_client_ip(client_ip) is None:
            raise InvalidIPError("Could not determine the client IP address.")
        if file is None or not file.filename:
            raise InvalidInputError("No file was provided.")

        link = await self.db.get(Link, form.link_id, populate_existing=True)
        if link is None:
            raise NotFoundError("Link not found.")
        self._check_link_open(link, form.link_password, form.link_slug)

        batch = await self.db.get(Batch, form.batch_id, populate_existing=True)
        if batch is None or batch.link_id != link.id:
            raise NotFoundError("Upload batch not found.")
        if batch.is_terminal:
            raise InvalidInputError("This upload batch is already closed.")

        record = await self.db.get(File, form.file_id, populate_existing=True)
        if record is None or record.batch_id != batch.id:
            raise NotFoundError("File record not found.")
        if record.processing_status != ProcessingStatus.PENDING:
            raise InvalidInputError("This file has already been processed.")
        if form.folder_id is not None and form.folder_id != record.folder_id:
            raise InvalidInputError("Folder does not match the file record.")

        # Plain values; the ORM objects go stale once the counters move in SQL.
        file_id, batch_id, folder_id = record.id, batch.id, record.folder_id
        workspace_id, file_name = record.workspace_id, record.file_name
        owner_id = link.user_id

        try:
            data = await read_file_from_upload_file(file, link.max_file_size)
        except FileTooLargeError as e:
            await self._mark_failed(file_id, batch_id)
            await self.finalize_batch(batch_id)
            raise InvalidInputError(str(e)) from e

        size = len(data)
        used, limit = (await self.db.execute(
            sa.select(User.storage_used, User.storage_limit).where(User.id == owner_id)
        )).one()
        if used + size > limit:
            await self._mark_failed(file_id, batch_id)
            await self.finalize_batch(batch_id)
            raise InvalidInputError("The link owner's storage is full.")

        path = link_storage_path(owner_id, link.id, batch.uploader_name, file_name)
        content_type = file.content_type or record.mime_type or DEFAULT_MIME_TYPE
        try:
            await self.storage.upload(path, data, content_type)
        except StorageError:
            logger.error("Storing %s for batch %s failed", file_name, batch_id, exc_info=True)
            await self._mark_failed(file_id, batch_id)
            await self.finalize_batch(batch_id)
            raise

        checksum = await sha256_async(data)
        now = utcnow()
        try:
            await self.db.execute(_no_sync(
                sa.update(File)
                .where(File.id == file_id)
                .values(
                    storage_path=path,
                    checksum=checksum,
                    file_size=size,
                    mime_type=content_type,
                    processing_status=ProcessingStatus.COMPLETED,
                    uploaded_at=now,
                )
            ))
            await self.db.execute(_no_sync(
                sa.update(User)
                .where(User.id == owner_id)
                .values(storage_used=User.storage_used + size)
            ))
            await self.db.execute(_no_sync(
                sa.update(Link)
                .where(Link.id == link.id)
                .values(
                    total_files=Link.total_files + 1,
                    total_size=Link.total_size + size,
                    last_upload_at=now,
                )
            ))
            if folder_id is not None:
                await self.db.execute(_no_sync(
                    sa.update(Folder)
                    .where(Folder.id == folder_id)
                    .values(file_count=Folder.file_count + 1, total_size=Folder.total_size + size)
                ))
            await self.db.execute(_no_sync(
                sa.update(Batch)
                .where(Batch.id == batch_id)
                .values(processed_files=Batch.processed_files + 1)
            ))
            await self.db.commit()

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Recording %s failed, removing stored object %s", file_id, path, exc_info=True)
            await self.storage.delete([path])
            raise DatabaseError("Failed to record the uploaded file.") from e

        logger.info("Stored %s (%d bytes) for batch %s", path, size, batch_id)

        record_payload = {
            "id": str(file_id),
            "link_id": str(link.id),
            "batch_id": str(batch_id),
            "folder_id": str(folder_id) if folder_id else None,
            "workspace_id": str(workspace_id) if workspace_id else None,
            "file_name": file_name,
            "file_size": size,
            "processing_status": ProcessingStatus.COMPLETED.value,
        }
        if workspace_id is not None:
            await safe_publish(
                self.bus, workspace_channel(workspace_id), UPDATE,
                {"table": "files", "record": record_payload},
            )
        await safe_publish(self.bus, user_files_channel(owner_id), FILE_UPDATE_EVENT, {
            "type": "file_uploaded",
            "linkId": str(link.id),
            "fileId": str(file_id),
        })

        await self.finalize_batch(batch_id)

        return {"id": str(file_id), "path": path, "fileName": file_name, "fileSize": size}

    async def finalize_batch(self, batch_id: uuid.UUID, force: bool = False) -> bool:
        """Close the batch once every file has an outcome (or when ``force``).

        Only the caller whose conditional update flips the status sends the
        notification, so concurrent final uploads notify once.
        """
        row = (await self.db.execute(
            sa.select(
                Batch.link_id,
                Batch.user_id,
                Batch.status,
                Batch.total_files,
                Batch.processed_files,
                Batch.failed_files,
                Batch.uploader_name,
                Batch.uploader_email,
            ).where(Batch.id == batch_id)
        )).first()
        if row is None or row.status in TERMINAL_STATUSES:
            return False
        if row.processed_files + row.failed_files < row.total_files and not force:
            return False

        status = BatchStatus.COMPLETED if row.processed_files > 0 else BatchStatus.FAILED
        result = await self.db.execute(_no_sync(
            sa.update(Batch)
            .where(Batch.id == batch_id, Batch.status.not_in(TERMINAL_STATUSES))
            .values(status=status, upload_completed_at=utcnow())
        ))
        if result.rowcount != 1:
            await self.db.rollback()
            return False

        if force:
            await self.db.execute(_no_sync(
                sa.update(File)
                .where(
                    File.batch_id == batch_id,
                    File.processing_status.in_([ProcessingStatus.PENDING, ProcessingStatus.PROCESSING]),
                )
                .values(processing_status=ProcessingStatus.FAILED)
            ))
        if status == BatchStatus.COMPLETED:
            await self.db.execute(_no_sync(
                sa.update(Link)
                .where(Link.id == row.link_id)
                .values(total_uploads=Link.total_uploads + 1)
            ))
        await self.db.commit()

        logger.info("Batch %s finished as %s (%d ok, %d failed)",
                    batch_id, status, row.processed_files, row.failed_files)

        await safe_publish(self.bus, link_files_channel(row.link_id), UPDATE, {
            "table": "batches",
            "record": {"id": str(batch_id), "link_id": str(row.link_id), "status": status.value},
        })

        if status != BatchStatus.COMPLETED:
            return True

        link_title = await self.db.scalar(sa.select(Link.title).where(Link.id == row.link_id))
        folder_count = await self.db.scalar(
            sa.select(sa.func.count(sa.distinct(File.folder_id))).where(
                File.batch_id == batch_id,
                File.processing_status == ProcessingStatus.COMPLETED,
                File.folder_id.is_not(None),
            )
        )
        uploader = row.uploader_name or "Anonymous"
        files_label = "file" if row.processed_files == 1 else "files"

        await NotificationService(self.db, self.bus).create_upload_notification(
            user_id=row.user_id,
            link_id=row.link_id,
            batch_id=batch_id,
            title=f"New upload to {link_title}",
            description=f"{uploader} uploaded {row.processed_files} {files_label}",
            details={
                "fileCount": row.processed_files,
                "folderCount": folder_count or 0,
                "uploaderName": uploader,
                "uploaderEmail": row.uploader_email,
            },
            link_title=link_title,
        )
        return True

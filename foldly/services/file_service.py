"""
Owner-side workspace operations: files, folders and the workspace tree.

Deleting a folder touches storage and several tables, so it runs as a small
saga. Each step is appended to ``FolderDeletion.steps`` as it completes; the
database steps share one transaction, and storage objects are removed in a
single batch call before the rows go.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa
from fastapi import UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from foldly.config import config
from foldly.db.models.file import File
from foldly.db.models.folder import Folder, FolderParentMismatch
from foldly.db.models.link import Link
from foldly.db.models.user import User
from foldly.db.models.workspace import Workspace
from foldly.exceptions import NotFoundError, InvalidInputError, ConflictError, DatabaseError
from foldly.logger import get_logger
from foldly.services.realtime_service import (
    RealtimeBus, safe_publish, workspace_channel, INSERT, UPDATE, DELETE, LINK_DELETED_EVENT,
)
from foldly.services.storage_service import StorageAdapter, workspace_storage_path
from foldly.utils.files import read_file_from_upload_file, FileTooLargeError, split_extension, generate_unique_name
from foldly.utils.hashing import sha256_async
from foldly.utils.serialize import change_record
from foldly.utils.sql import decrement
from foldly.utils.tree import build_tree, TreeNode
from foldly.utils.types import ProcessingStatus

logger = get_logger(__name__)

MAX_FOLDER_NAME = 255


@dataclass
class FolderDeletion:
    folder_ids: List[uuid.UUID] = field(default_factory=list)
    file_ids: List[uuid.UUID] = field(default_factory=list)
    retired_link_ids: List[uuid.UUID] = field(default_factory=list)
    freed_bytes: int = 0
    storage_failures: int = 0
    steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deletedFolders": len(self.folder_ids),
            "deletedFiles": len(self.file_ids),
            "retiredLinks": len(self.retired_link_ids),
            "freedBytes": self.freed_bytes,
            "storageFailures": self.storage_failures,
            "steps": list(self.steps),
        }


def validate_folder_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidInputError("Folder name is required.")
    if "/" in name or "\\" in name:
        raise InvalidInputError("Folder name cannot contain slashes.")
    if len(name) > MAX_FOLDER_NAME:
        raise InvalidInputError("Folder name is too long.")
    return name


class FileService:
    def __init__(self, db: AsyncSession, storage: StorageAdapter, bus: Optional[RealtimeBus] = None):
        self.db = db
        self.storage = storage
        self.bus = bus

    async def _workspace(self, user_id: str) -> Workspace:
        workspace = await self.db.scalar(sa.select(Workspace).where(Workspace.user_id == user_id))
        if workspace is None:
            raise NotFoundError("Workspace not found.")
        return workspace

    async def _folder(self, folder_id: uuid.UUID, user_id: str) -> Folder:
        folder = await self.db.scalar(
            sa.select(Folder).where(Folder.id == folder_id, Folder.user_id == user_id)
        )
        if folder is None:
            raise NotFoundError("Folder not found.")
        return folder

    async def _file(self, file_id: uuid.UUID, user_id: str) -> File:
        record = await self.db.scalar(
            sa.select(File).where(File.id == file_id, File.user_id == user_id)
        )
        if record is None:
            raise NotFoundError("File not found.")
        return record

    # Files

    async def upload_workspace_file(
            self,
            user_id: str,
            file: Optional[UploadFile],
            folder_id: Optional[uuid.UUID] = None
    ) -> Dict[str, Any]:
        if file is None or not file.filename:
            raise InvalidInputError("No file was provided.")

        workspace = await self._workspace(user_id)
        if folder_id is not None:
            folder = await self._folder(folder_id, user_id)
            if folder.workspace_id != workspace.id:
                raise NotFoundError("Folder not found.")

        try:
            data = await read_file_from_upload_file(file, config.DEFAULT_MAX_FILE_SIZE)
        except FileTooLargeError as e:
            raise InvalidInputError(str(e)) from e

        size = len(data)
        used, limit = (await self.db.execute(
            sa.select(User.storage_used, User.storage_limit).where(User.id == user_id)
        )).one()
        if used + size > limit:
            raise InvalidInputError("Storage limit exceeded.")

        taken_stmt = sa.select(File.file_name).where(File.workspace_id == workspace.id)
        taken_stmt = (
            taken_stmt.where(File.folder_id == folder_id) if folder_id
            else taken_stmt.where(File.folder_id.is_(None))
        )
        name = generate_unique_name(file.filename, list((await self.db.scalars(taken_stmt)).all()))
        _, extension = split_extension(name)

        path = workspace_storage_path(user_id, workspace.id, folder_id, name)
        content_type = file.content_type or "application/octet-stream"
        await self.storage.upload(path, data, content_type)

        record = File(
            user_id=user_id,
            workspace_id=workspace.id,
            folder_id=folder_id,
            file_name=name,
            original_name=file.filename,
            file_size=size,
            mime_type=content_type,
            extension=extension.lower() or None,
            storage_path=path,
            checksum=await sha256_async(data),
            processing_status=ProcessingStatus.COMPLETED,
        )
        try:
            self.db.add(record)
            await self.db.flush()
            await self.db.execute(
                sa.update(User)
                .where(User.id == user_id)
                .values(storage_used=User.storage_used + size)
                .execution_options(synchronize_session=False)
            )
            if folder_id is not None:
                await self.db.execute(
                    sa.update(Folder)
                    .where(Folder.id == folder_id)
                    .values(file_count=Folder.file_count + 1, total_size=Folder.total_size + size)
                    .execution_options(synchronize_session=False)
                )
            await self.db.commit()

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Recording workspace file %s failed, removing %s", name, path, exc_info=True)
            await self.storage.delete([path])
            raise DatabaseError("Failed to record the uploaded file.") from e

        await self.db.refresh(record)
        await safe_publish(
            self.bus, workspace_channel(workspace.id), INSERT,
            {"table": "files", "record": change_record(record)},
        )
        return {"id": str(record.id), "path": path, "fileName": name, "fileSize": size}

    async def read_file(self, file_id: uuid.UUID, user_id: str) -> Tuple[File, bytes]:
        record = await self._file(file_id, user_id)
        if not record.storage_path or record.processing_status != ProcessingStatus.COMPLETED:
            raise NotFoundError("File not found.")
        return record, await self.storage.read(record.storage_path)

    async def delete_file(self, file_id: uuid.UUID, user_id: str) -> None:
        record = await self._file(file_id, user_id)
        path = record.storage_path
        completed = record.processing_status == ProcessingStatus.COMPLETED
        size = record.file_size if completed else 0
        link_id, folder_id, workspace_id = record.link_id, record.folder_id, record.workspace_id

        try:
            await self.db.delete(record)
            if size:
                await self.db.execute(
                    sa.update(User)
                    .where(User.id == user_id)
                    .values(storage_used=decrement(User.storage_used, size))
                    .execution_options(synchronize_session=False)
                )
            if completed and link_id is not None:
                await self.db.execute(
                    sa.update(Link)
                    .where(Link.id == link_id)
                    .values(
                        total_files=decrement(Link.total_files, 1),
                        total_size=decrement(Link.total_size, size),
                    )
                    .execution_options(synchronize_session=False)
                )
            if completed and folder_id is not None:
                await self.db.execute(
                    sa.update(Folder)
                    .where(Folder.id == folder_id)
                    .values(
                        file_count=decrement(Folder.file_count, 1),
                        total_size=decrement(Folder.total_size, size),
                    )
                    .execution_options(synchronize_session=False)
                )
            await self.db.commit()

        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatabaseError("Failed to delete the file.") from e

        finally:
            if path:
                await self.storage.delete([path])

        logger.info("File %s deleted by %s", file_id, user_id)
        if workspace_id is not None:
            await safe_publish(self.bus, workspace_channel(workspace_id), DELETE, {
                "table": "files",
                "record": {"id": str(file_id), "folder_id": str(folder_id) if folder_id else None},
            })

    # Folders

    async def _ensure_unique_sibling(
            self,
            workspace_id: uuid.UUID,
            parent_id: Optional[uuid.UUID],
            name: str,
            exclude: Optional[uuid.UUID] = None
    ) -> None:
        stmt = sa.select(Folder.id).where(
            Folder.workspace_id == workspace_id,
            sa.func.lower(Folder.name) == name.lower(),
        )
        stmt = stmt.where(Folder.parent_folder_id == parent_id) if parent_id else stmt.where(
            Folder.parent_folder_id.is_(None))
        if exclude is not None:
            stmt = stmt.where(Folder.id != exclude)
        if await self.db.scalar(stmt.limit(1)) is not None:
            raise ConflictError("A folder with this name already exists here.")

    async def create_folder(self, user_id: str, name: str, parent_id: Optional[uuid.UUID] = None) -> Folder:
        name = validate_folder_name(name)
        workspace = await self._workspace(user_id)
        if parent_id is not None:
            await self._folder(parent_id, user_id)

        await self._ensure_unique_sibling(workspace.id, parent_id, name)

        folder = Folder(user_id=user_id, workspace_id=workspace.id, parent_folder_id=parent_id, name=name)
        try:
            self.db.add(folder)
            await self.db.commit()
        except FolderParentMismatch as e:
            await self.db.rollback()
            raise NotFoundError("Parent folder not found.") from e

        await self.db.refresh(folder)
        await safe_publish(
            self.bus, workspace_channel(workspace.id), INSERT,
            {"table": "folders", "record": change_record(folder)},
        )
        return folder

    async def _levels(self, root_id: uuid.UUID) -> List[List[uuid.UUID]]:
        """Folder ids below and including ``root_id``, grouped by distance."""
        levels = [[root_id]]
        while True:
            children = (await self.db.scalars(
                sa.select(Folder.id).where(Folder.parent_folder_id.in_(levels[-1]))
            )).all()
            if not children:
                return levels
            levels.append(list(children))

    async def _rewrite_subtree(self, folder: Folder, new_path: str, new_depth: int) -> None:
        old_path, old_depth = folder.path, folder.depth
        descendants = (await self.db.scalars(
            sa.select(Folder).where(
                Folder.workspace_id == folder.workspace_id,
                Folder.path.startswith(old_path + "/", autoescape=True),
            )
        )).all()

        folder.path, folder.depth = new_path, new_depth
        for d in descendants:
            d.path = new_path + d.path[len(old_path):]
            d.depth = d.depth - old_depth + new_depth

    async def rename_folder(self, folder_id: uuid.UUID, user_id: str, name: str) -> Folder:
        name = validate_folder_name(name)
        folder = await self._folder(folder_id, user_id)
        if name == folder.name:
            return folder

        await self._ensure_unique_sibling(folder.workspace_id, folder.parent_folder_id, name, exclude=folder.id)

        parent_path = folder.path.rsplit("/", 1)[0]
        await self._rewrite_subtree(folder, f"{parent_path}/{name}", folder.depth)
        folder.name = name
        await self.db.commit()
        await self.db.refresh(folder)

        await safe_publish(
            self.bus, workspace_channel(folder.workspace_id), UPDATE,
            {"table": "folders", "record": change_record(folder)},
        )
        return folder

    async def move_folder(self, folder_id: uuid.UUID, user_id: str, parent_id: Optional[uuid.UUID]) -> Folder:
        folder = await self._folder(folder_id, user_id)
        if parent_id == folder.id:
            raise InvalidInputError("A folder cannot be moved into itself.")
        if parent_id == folder.parent_folder_id:
            return folder

        if parent_id is None:
            new_path, new_depth = f"/{folder.name}", 0
        else:
            parent = await self._folder(parent_id, user_id)
            if parent.workspace_id != folder.workspace_id:
                raise NotFoundError("Folder not found.")
            subtree = {fid for level in await self._levels(folder.id) for fid in level}
            if parent.id in subtree:
                raise InvalidInputError("A folder cannot be moved into one of its subfolders.")
            new_path, new_depth = f"{parent.path}/{folder.name}", parent.depth + 1

        await self._ensure_unique_sibling(folder.workspace_id, parent_id, folder.name, exclude=folder.id)

        await self._rewrite_subtree(folder, new_path, new_depth)
        folder.parent_folder_id = parent_id
        await self.db.commit()
        await self.db.refresh(folder)

        await safe_publish(
            self.bus, workspace_channel(folder.workspace_id), UPDATE,
            {"table": "folders", "record": change_record(folder)},
        )
        return folder

    async def delete_folder(self, folder_id: uuid.UUID, user_id: str) -> FolderDeletion:
        folder = await self._folder(folder_id, user_id)
        workspace_id = folder.workspace_id
        result = FolderDeletion()

        levels = await self._levels(folder.id)
        result.folder_ids = [fid for level in levels for fid in level]
        generated = (await self.db.execute(
            sa.select(Folder.id, Folder.link_id)
            .where(Folder.id.in_(result.folder_ids), Folder.link_id.is_not(None))
        )).all()
        result.retired_link_ids = [row.link_id for row in generated]
        result.steps.append("collect_folders")

        files = (await self.db.execute(
            sa.select(File.id, File.storage_path, File.file_size, File.processing_status, File.link_id)
            .where(File.folder_id.in_(result.folder_ids))
        )).all()
        result.file_ids = [f.id for f in files]
        result.steps.append("collect_files")

        paths = [f.storage_path for f in files if f.storage_path]
        if paths:
            outcomes = await self.storage.delete(paths)
            result.storage_failures = sum(1 for ok in outcomes if not ok)
            if result.storage_failures:
                logger.warning("Folder %s: %d storage object(s) could not be deleted",
                               folder_id, result.storage_failures)
        result.steps.append("delete_storage")

        completed = [f for f in files if f.processing_status == ProcessingStatus.COMPLETED]
        result.freed_bytes = sum(f.file_size for f in completed)
        per_link: Dict[uuid.UUID, Tuple[int, int]] = {}
        for f in completed:
            if f.link_id is not None:
                count, size = per_link.get(f.link_id, (0, 0))
                per_link[f.link_id] = (count + 1, size + f.file_size)

        try:
            if result.file_ids:
                await self.db.execute(sa.delete(File).where(File.id.in_(result.file_ids)))
            result.steps.append("delete_files")

            for level in reversed(levels):
                for fid in level:
                    await self.db.execute(sa.delete(Folder).where(Folder.id == fid))
            result.steps.append("delete_folders")

            # Generated links stop accepting uploads once their folder is gone.
            if result.retired_link_ids:
                await self.db.execute(
                    sa.update(Link)
                    .where(Link.id.in_(result.retired_link_ids))
                    .values(is_active=False)
                    .execution_options(synchronize_session=False)
                )
            result.steps.append("retire_links")

            if result.freed_bytes:
                await self.db.execute(
                    sa.update(User)
                    .where(User.id == user_id)
                    .values(storage_used=decrement(User.storage_used, result.freed_bytes))
                    .execution_options(synchronize_session=False)
                )
            for link_id, (count, size) in per_link.items():
                await self.db.execute(
                    sa.update(Link)
                    .where(Link.id == link_id)
                    .values(
                        total_files=decrement(Link.total_files, count),
                        total_size=decrement(Link.total_size, size),
                    )
                    .execution_options(synchronize_session=False)
                )
            result.steps.append("update_counters")

            await self.db.commit()

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Deleting folder %s failed after steps %s", folder_id, result.steps, exc_info=True)
            raise DatabaseError("Failed to delete the folder.") from e

        logger.info("Folder %s deleted: %d folder(s), %d file(s)",
                    folder_id, len(result.folder_ids), len(result.file_ids))
        await safe_publish(self.bus, workspace_channel(workspace_id), DELETE, {
            "table": "folders",
            "record": {"id": str(folder_id), "workspace_id": str(workspace_id)},
        })
        for row in generated:
            await safe_publish(self.bus, workspace_channel(workspace_id), LINK_DELETED_EVENT, {
                "linkId": str(row.link_id),
                "folderId": str(row.id),
            })
        return result

    async def tree(self, user_id: str) -> List[TreeNode]:
        workspace = await self._workspace(user_id)
        folders = (await self.db.scalars(
            sa.select(Folder).where(Folder.workspace_id == workspace.id)
        )).all()
        files = (await self.db.scalars(
            sa.select(File).where(
                File.workspace_id == workspace.id,
                File.processing_status == ProcessingStatus.COMPLETED,
            )
        )).all()
        return build_tree(folders, files)

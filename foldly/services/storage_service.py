import datetime as dt
import re
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional, Protocol

from foldly.exceptions import StorageError
from foldly.logger import get_logger
from foldly.utils.dates import utcnow
from foldly.utils.files import write_new_file, delete_files, read_file, walk_files

logger = get_logger(__name__)


@dataclass
class StorageObject:
    path: str
    size: int


class StorageAdapter(Protocol):
    async def upload(self, path: str, data: bytes, content_type: str) -> str: ...

    async def delete(self, paths: List[str]) -> List[bool]: ...

    async def list(self, prefix: str) -> List[StorageObject]: ...

    async def read(self, path: str) -> bytes: ...


class LocalStorage:
    """Object storage on the local filesystem, keyed by POSIX-style paths.

    Uploads never overwrite: writing to an existing key fails, so a retried
    or colliding upload cannot clobber another uploader's object.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        key = PurePosixPath(path)
        if key.is_absolute() or ".." in key.parts or not key.parts:
            raise StorageError(f"Invalid storage path: '{path}'.")
        return self.root.joinpath(*key.parts)

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        target = self._resolve(path)
        try:
            await write_new_file(data, target)
        except FileExistsError as e:
            raise StorageError(f"An object already exists at '{path}'.") from e
        except OSError as e:
            raise StorageError(f"Failed to store '{path}'.") from e

        logger.debug("Stored %s (%d bytes, %s)", path, len(data), content_type)
        return path

    async def delete(self, paths: List[str]) -> List[bool]:
        if not paths:
            return []

        results = [False] * len(paths)
        positions, targets = [], []
        for i, path in enumerate(paths):
            try:
                targets.append(self._resolve(path))
                positions.append(i)
            except StorageError:
                logger.warning("Skipping delete of invalid storage path %r", path)

        for i, ok in zip(positions, await delete_files(targets)):
            results[i] = ok

        failed = [p for p, ok in zip(paths, results) if not ok]
        if failed:
            logger.warning("Failed to delete %d storage object(s): %s", len(failed), failed)

        return results

    async def list(self, prefix: str) -> List[StorageObject]:
        base = self._resolve(prefix)
        found = await walk_files(base)
        return [
            StorageObject(path=p.relative_to(self.root).as_posix(), size=size)
            for p, size in found
        ]

    async def read(self, path: str) -> bytes:
        try:
            return await read_file(self._resolve(path))
        except (FileNotFoundError, PermissionError) as e:
            raise StorageError(f"Object '{path}' is not readable.") from e


def sanitize_segment(segment: str, max_length: int = 50) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9\-_\s]", "", segment)
    cleaned = re.sub(r"\s+", "-", cleaned)
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return cleaned.lower()[:max_length] or "anonymous"


def sanitize_filename(name: str) -> str:
    stem = PurePosixPath(name).stem
    suffix = PurePosixPath(name).suffix.lower()
    safe_stem = re.sub(r"[^a-zA-Z0-9._-]", "_", stem).strip("._") or "file"
    safe_suffix = re.sub(r"[^a-z0-9.]", "", suffix)
    return f"{safe_stem[:100]}{safe_suffix[:20]}"


def _timestamped(name: str, now: Optional[dt.datetime] = None) -> str:
    now = now or utcnow()
    return f"{int(now.timestamp() * 1000)}_{sanitize_filename(name)}"


def link_storage_path(
        user_id: str,
        link_id: uuid.UUID,
        uploader_name: str,
        file_name: str,
        now: Optional[dt.datetime] = None
) -> str:
    now = now or utcnow()
    return "/".join([
        "links",
        sanitize_segment(user_id, 64),
        str(link_id),
        now.strftime("%Y-%m-%d"),
        sanitize_segment(uploader_name),
        _timestamped(file_name, now),
    ])


def workspace_storage_path(
        user_id: str,
        workspace_id: uuid.UUID,
        folder_id: Optional[uuid.UUID],
        file_name: str,
        now: Optional[dt.datetime] = None
) -> str:
    base = f"workspaces/{sanitize_segment(user_id, 64)}/{workspace_id}"
    location = f"folders/{folder_id}" if folder_id else "files"
    return f"{base}/{location}/{_timestamped(file_name, now)}"


def user_storage_prefixes(user_id: str) -> List[str]:
    safe = sanitize_segment(user_id, 64)
    return [f"links/{safe}", f"workspaces/{safe}"]

import asyncio
import os
import time
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple

import aiofiles
import aiofiles.os
from fastapi import UploadFile

from foldly.config import config


class FileTooLargeError(Exception):
    pass


SEM = asyncio.Semaphore(config.MAX_CONCURRENT_IO)


async def read_file_from_upload_file(file: UploadFile, max_file_size: int) -> bytes:
    data = bytearray()
    while chunk := await file.read(1024 * 1024):
        data.extend(chunk)
        if len(data) > max_file_size:
            raise FileTooLargeError(f"File exceeds max file size: '{file.filename}'")

    return bytes(data)


async def write_new_file(data: bytes, path: Path) -> None:
    """Write ``data`` to ``path``; fails with FileExistsError instead of overwriting."""
    async with SEM:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "xb") as f:
            await f.write(data)


async def delete_file(path: Path) -> bool:
    async with SEM:
        try:
            await aiofiles.os.remove(path)
            return True
        except FileNotFoundError:
            return True
        except OSError:
            return False


async def delete_files(paths: List[Path]) -> List[bool]:
    return await asyncio.gather(*(delete_file(p) for p in paths))


async def read_file(path: Path) -> Optional[bytes]:
    async with SEM:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()


def _walk(root: Path) -> List[Tuple[Path, int]]:
    found = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full = Path(dirpath) / name
            found.append((full, full.stat().st_size))
    return found


async def walk_files(root: Path) -> List[Tuple[Path, int]]:
    if not root.exists():
        return []
    return await asyncio.to_thread(_walk, root)


def split_extension(name: str) -> Tuple[str, str]:
    suffix = PurePosixPath(name).suffix
    if not suffix or suffix == name:
        return name, ""
    return name[: -len(suffix)], suffix.lstrip(".")


def generate_unique_name(name: str, existing: List[str], max_attempts: int = 1000) -> str:
    taken = set(existing)
    if name not in taken:
        return name

    stem, extension = split_extension(name)
    for i in range(1, max_attempts + 1):
        candidate = f"{stem} ({i}).{extension}" if extension else f"{stem} ({i})"
        if candidate not in taken:
            return candidate

    suffix = time.time_ns() // 1_000_000
    return f"{stem}-{suffix}.{extension}" if extension else f"{stem}-{suffix}"

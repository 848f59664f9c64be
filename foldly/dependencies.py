"""Accessors for the per-application collaborators set up in ``main.create_app``.

Nothing here is a module-level singleton: each app owns its bus, storage and
rate limiter on ``app.state`` so tests can build isolated apps.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import HTTPConnection

from foldly.db.session import get_db
from foldly.services.file_service import FileService
from foldly.services.link_service import LinkService
from foldly.services.notification_service import NotificationService
from foldly.services.rate_limit_service import RateLimiter
from foldly.services.realtime_service import RealtimeBus
from foldly.services.storage_service import StorageAdapter
from foldly.services.upload_service import UploadService
from foldly.services.user_service import UserService


def get_bus(conn: HTTPConnection) -> RealtimeBus:
    return conn.app.state.bus


def get_storage(conn: HTTPConnection) -> StorageAdapter:
    return conn.app.state.storage


def get_rate_limiter(conn: HTTPConnection) -> RateLimiter:
    return conn.app.state.rate_limiter


def get_link_service(
        db: AsyncSession = Depends(get_db),
        bus: RealtimeBus = Depends(get_bus),
        rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> LinkService:
    return LinkService(db, bus, rate_limiter)


def get_upload_service(
        db: AsyncSession = Depends(get_db),
        storage: StorageAdapter = Depends(get_storage),
        bus: RealtimeBus = Depends(get_bus),
) -> UploadService:
    return UploadService(db, storage, bus)


def get_file_service(
        db: AsyncSession = Depends(get_db),
        storage: StorageAdapter = Depends(get_storage),
        bus: RealtimeBus = Depends(get_bus),
) -> FileService:
    return FileService(db, storage, bus)


def get_notification_service(
        db: AsyncSession = Depends(get_db),
        bus: RealtimeBus = Depends(get_bus),
) -> NotificationService:
    return NotificationService(db, bus)


def get_user_service(
        db: AsyncSession = Depends(get_db),
        storage: StorageAdapter = Depends(get_storage),
) -> UserService:
    return UserService(db, storage)

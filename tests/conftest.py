import base64
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault(
    "CLERK_WEBHOOK_SECRET",
    "whsec_" + base64.b64encode(b"foldly-test-webhook-secret-key!!").decode(),
)
os.environ.setdefault("STORAGE_PATH", "/tmp/foldly-test-storage")

import uuid
from typing import Optional, Tuple

import pytest
import sqlalchemy as sa
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

from foldly.db import Base
from foldly.db.models.file import File
from foldly.db.models.folder import Folder
from foldly.db.models.link import Link
from foldly.db.models.user import User
from foldly.db.models.workspace import Workspace
from foldly.db.session import get_db, make_engine, make_sessionmaker
from foldly.services.rate_limit_service import RateLimiter
from foldly.services.realtime_service import RealtimeBus
from foldly.services.storage_service import LocalStorage, workspace_storage_path
from foldly.utils.security import mint_access
from foldly.utils.types import ProcessingStatus
from main import create_app


@pytest.fixture
async def engine():
    engine = make_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "storage")


@pytest.fixture
def bus():
    return RealtimeBus()


@pytest.fixture
def rate_limiter():
    return RateLimiter(limit=100, window_seconds=60, block_seconds=60)


async def add_user(db: AsyncSession, user_id: str, username: Optional[str]) -> User:
    user = User(id=user_id, email=f"{user_id}@example.com", username=username)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def owner(db):
    return await add_user(db, "user_owner", "owner")


@pytest.fixture
def make_user(db):
    async def make(user_id: str, username: Optional[str]) -> Tuple[User, Workspace]:
        user = await add_user(db, user_id, username)
        ws = await db.scalar(sa.select(Workspace).where(Workspace.user_id == user.id))
        return user, ws

    return make


@pytest.fixture
async def workspace(db, owner):
    return await db.scalar(sa.select(Workspace).where(Workspace.user_id == owner.id))


@pytest.fixture
def make_link(db, owner, workspace):
    async def make(slug: str = "inbox", user: Optional[User] = None, ws: Optional[Workspace] = None, **kwargs) -> Link:
        kwargs.setdefault("title", slug.replace("-", " ").title())
        link = Link(
            user_id=(user or owner).id,
            workspace_id=(ws or workspace).id,
            slug=slug,
            **kwargs,
        )
        db.add(link)
        await db.commit()
        return link

    return make


@pytest.fixture
def make_folder(db, owner, workspace):
    async def make(name: str, parent: Optional[Folder] = None) -> Folder:
        folder = Folder(
            user_id=owner.id,
            workspace_id=workspace.id,
            parent_folder_id=parent.id if parent else None,
            name=name,
        )
        db.add(folder)
        await db.commit()
        return folder

    return make


@pytest.fixture
def store_file(db, owner, workspace, storage):
    """A completed workspace file whose bytes are in storage."""

    async def store(name: str, data: bytes = b"content", folder: Optional[Folder] = None) -> File:
        path = workspace_storage_path(owner.id, workspace.id, folder.id if folder else None, f"{uuid.uuid4().hex}-{name}")
        await storage.upload(path, data, "text/plain")

        record = File(
            user_id=owner.id,
            workspace_id=workspace.id,
            folder_id=folder.id if folder else None,
            file_name=name,
            original_name=name,
            file_size=len(data),
            mime_type="text/plain",
            storage_path=path,
            processing_status=ProcessingStatus.COMPLETED,
        )
        db.add(record)
        await db.execute(
            sa.update(User).where(User.id == owner.id).values(storage_used=User.storage_used + len(data))
        )
        if folder is not None:
            await db.execute(
                sa.update(Folder)
                .where(Folder.id == folder.id)
                .values(file_count=Folder.file_count + 1, total_size=Folder.total_size + len(data))
            )
        await db.commit()
        return record

    return store


@pytest.fixture
def app(session_factory, storage, bus, rate_limiter, owner):
    app = create_app(storage=storage, bus=bus, rate_limiter=rate_limiter)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers(owner):
    return {"Authorization": f"Bearer {mint_access(owner.id)}"}


@pytest.fixture
def fresh(session_factory):
    """Open a new session for assertions, bypassing any stale identity map."""
    return session_factory

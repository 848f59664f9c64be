import re
import secrets
import uuid
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from foldly.db.models.folder import Folder
from foldly.db.models.link import Link
from foldly.db.models.user import User
from foldly.db.models.workspace import Workspace
from foldly.exceptions import LinkAccessError, ConflictError, NotFoundError, InvalidInputError, RateLimitedError
from foldly.logger import get_logger
from foldly.services.rate_limit_service import RateLimiter, link_creation_key
from foldly.services.realtime_service import (
    RealtimeBus,
    safe_publish,
    workspace_channel,
    INSERT,
    UPDATE,
    LINK_CREATED_EVENT,
    LINK_DELETED_EVENT,
)
from foldly.utils.dates import utcnow, as_utc
from foldly.utils.security import hash_password, verify_password
from foldly.utils.serialize import change_record, api_record
from foldly.utils.types import LinkType

logger = get_logger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9-]{1,100}$")
DEFAULT_OWNER_NAME = "User"


@dataclass
class LinkAccess:
    link_id: str
    slug: str
    topic: Optional[str]
    link_name: str
    is_public: bool
    workspace_id: str
    owner_username: str
    requires_password: bool
    requires_email: bool
    requires_name: bool
    requires_message: bool
    custom_message: Optional[str]
    max_file_size: int
    max_files: int
    remaining_uploads: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LinkInput:
    slug: Optional[str] = None
    title: Optional[str] = None
    topic: Optional[str] = None
    description: Optional[str] = None
    custom_message: Optional[str] = None
    require_email: Optional[bool] = None
    require_name: Optional[bool] = None
    require_message: Optional[bool] = None
    password: Optional[str] = None
    is_public: Optional[bool] = None
    is_active: Optional[bool] = None
    max_files: Optional[int] = None
    max_file_size: Optional[int] = None
    expires_at: Optional[Any] = None


def normalize_slug(raw: str) -> str:
    slug = (raw or "").strip().lower()
    if not SLUG_PATTERN.match(slug):
        raise InvalidInputError("Slug may only contain lowercase letters, numbers and hyphens.")
    return slug


def normalize_topic(raw: Optional[str]) -> Optional[str]:
    if raw is None or not raw.strip():
        return None
    return normalize_slug(raw)


class LinkService:
    def __init__(
            self,
            db: AsyncSession,
            bus: Optional[RealtimeBus] = None,
            rate_limiter: Optional[RateLimiter] = None
    ):
        self.db = db
        self.bus = bus
        self.rate_limiter = rate_limiter

    async def validate_link_access(self, segments: Sequence[str]) -> LinkAccess:
        """Resolve ``/{username}/{slug}[/{topic}]`` to a link visitors may see.

        Password and per-upload checks happen when files are submitted.
        """
        segments = [s for s in segments if s]
        if len(segments) < 2:
            raise LinkAccessError("Invalid link format", "INVALID_FORMAT")

        username, slug = segments[0], segments[1].lower()
        topic = segments[2].lower() if len(segments) > 2 else None

        stmt = (
            sa.select(Link, User.username)
            .join(User, Link.user_id == User.id)
            .where(Link.slug == slug)
            .order_by(Link.created_at)
        )
        stmt = stmt.where(Link.topic == topic) if topic else stmt.where(Link.topic.is_(None))

        rows = (await self.db.execute(stmt)).all()
        if not rows:
            raise LinkAccessError("Link not found", "NOT_FOUND")

        link, owner_username = next(
            (row for row in rows if row[1] and row[1].lower() == username.lower()),
            rows[0],
        )

        if not link.is_active:
            raise LinkAccessError("This link is currently inactive", "INACTIVE")
        if link.expires_at is not None and as_utc(link.expires_at) <= utcnow():
            raise LinkAccessError("This link has expired", "EXPIRED")

        return LinkAccess(
            link_id=str(link.id),
            slug=link.slug,
            topic=link.topic,
            link_name=link.title,
            is_public=link.is_public,
            workspace_id=str(link.workspace_id),
            owner_username=owner_username or DEFAULT_OWNER_NAME,
            requires_password=link.require_password,
            requires_email=link.require_email,
            requires_name=link.require_name,
            requires_message=link.require_message,
            custom_message=link.custom_message,
            max_file_size=link.max_file_size,
            max_files=link.max_files,
            remaining_uploads=max(0, link.max_files - link.total_files),
        )

    async def verify_password(self, link_id: uuid.UUID, password: str) -> bool:
        link = await self.db.get(Link, link_id)
        if link is None:
            raise NotFoundError("Link not found.")
        if not link.require_password:
            return True
        if not link.password_hash or not password:
            return False
        return verify_password(password, link.password_hash)

    async def _owned(self, link_id: uuid.UUID, user_id: str) -> Link:
        link = await self.db.scalar(
            sa.select(Link).where(Link.id == link_id, Link.user_id == user_id)
        )
        if link is None:
            raise NotFoundError("Link not found.")
        return link

    async def _workspace(self, user_id: str) -> Workspace:
        workspace = await self.db.scalar(sa.select(Workspace).where(Workspace.user_id == user_id))
        if workspace is None:
            raise NotFoundError("Workspace not found.")
        return workspace

    async def _slug_taken(
            self,
            workspace_id: uuid.UUID,
            slug: str,
            topic: Optional[str],
            exclude: Optional[uuid.UUID] = None
    ) -> bool:
        stmt = sa.select(Link.id).where(Link.workspace_id == workspace_id, Link.slug == slug)
        stmt = stmt.where(Link.topic == topic) if topic else stmt.where(Link.topic.is_(None))
        if exclude is not None:
            stmt = stmt.where(Link.id != exclude)
        return await self.db.scalar(stmt.limit(1)) is not None

    def _check_rate_limit(self, user_id: str) -> None:
        if self.rate_limiter is None:
            return
        result = self.rate_limiter.check(link_creation_key(user_id))
        if not result.allowed:
            raise RateLimitedError("Too many links created. Please try again later.", result.reset_at)

    async def _commit_link(self) -> None:
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError("This slug is already in use") from e

    async def create_link(self, user_id: str, data: LinkInput, link_type: LinkType = LinkType.CUSTOM) -> Link:
        self._check_rate_limit(user_id)

        slug = normalize_slug(data.slug or "")
        topic = normalize_topic(data.topic)
        if not data.title or not data.title.strip():
            raise InvalidInputError("Title is required.")
        if data.password is not None and not data.password:
            raise InvalidInputError("Password cannot be empty.")

        workspace = await self._workspace(user_id)
        if await self._slug_taken(workspace.id, slug, topic):
            raise ConflictError("This slug is already in use")

        link = Link(
            user_id=user_id,
            workspace_id=workspace.id,
            slug=slug,
            topic=topic,
            link_type=link_type,
            title=data.title.strip(),
            description=data.description,
            custom_message=data.custom_message,
            require_email=bool(data.require_email),
            require_name=True if data.require_name is None else data.require_name,
            require_message=bool(data.require_message),
            require_password=data.password is not None,
            password_hash=hash_password(data.password) if data.password else None,
            is_public=True if data.is_public is None else data.is_public,
            is_active=True if data.is_active is None else data.is_active,
            expires_at=data.expires_at,
        )
        if data.max_files is not None:
            link.max_files = data.max_files
        if data.max_file_size is not None:
            link.max_file_size = data.max_file_size

        self.db.add(link)
        await self._commit_link()
        await self.db.refresh(link)

        logger.info("Link %s (%s) created by %s", link.id, link.slug, user_id)
        await safe_publish(
            self.bus, workspace_channel(link.workspace_id), INSERT,
            {"table": "links", "record": change_record(link, exclude=("password_hash",))},
        )
        return link

    async def update_link(self, link_id: uuid.UUID, user_id: str, data: LinkInput) -> Link:
        link = await self._owned(link_id, user_id)

        if data.slug is not None or data.topic is not None:
            slug = normalize_slug(data.slug) if data.slug is not None else link.slug
            topic = normalize_topic(data.topic) if data.topic is not None else link.topic
            if await self._slug_taken(link.workspace_id, slug, topic, exclude=link.id):
                raise ConflictError("This slug is already in use")
            link.slug, link.topic = slug, topic

        if data.title is not None:
            if not data.title.strip():
                raise InvalidInputError("Title cannot be empty.")
            link.title = data.title.strip()

        for attr in (
                "description", "custom_message", "require_email", "require_name", "require_message",
                "is_public", "is_active", "max_files", "max_file_size", "expires_at",
        ):
            value = getattr(data, attr)
            if value is not None:
                setattr(link, attr, value)

        if data.password is not None:
            # Empty string clears the password.
            link.require_password = bool(data.password)
            link.password_hash = hash_password(data.password) if data.password else None

        await self._commit_link()
        await self.db.refresh(link)

        await safe_publish(
            self.bus, workspace_channel(link.workspace_id), UPDATE,
            {"table": "links", "record": change_record(link, exclude=("password_hash",))},
        )
        return link

    async def delete_link(self, link_id: uuid.UUID, user_id: str) -> Link:
        """Retire a link. Rows are kept so uploaded files and counters survive;
        the link stops resolving and any folder it was generated for lets go."""
        link = await self._owned(link_id, user_id)
        workspace_id = link.workspace_id

        folder_ids = (await self.db.scalars(
            sa.select(Folder.id).where(Folder.link_id == link.id)
        )).all()
        await self.db.execute(
            sa.update(Folder)
            .where(Folder.link_id == link.id)
            .values(link_id=None)
            .execution_options(synchronize_session=False)
        )
        link.is_active = False
        await self.db.commit()
        await self.db.refresh(link)

        logger.info("Link %s retired by %s", link_id, user_id)
        await safe_publish(
            self.bus, workspace_channel(workspace_id), UPDATE,
            {"table": "links", "record": change_record(link, exclude=("password_hash",))},
        )
        for folder_id in folder_ids:
            await safe_publish(self.bus, workspace_channel(workspace_id), LINK_DELETED_EVENT, {
                "linkId": str(link_id),
                "folderId": str(folder_id),
            })
        return link

    async def list_links(self, user_id: str) -> List[Dict[str, Any]]:
        links = (await self.db.scalars(
            sa.select(Link).where(Link.user_id == user_id).order_by(Link.created_at.desc())
        )).all()
        return [api_record(link, exclude=("password_hash",)) for link in links]

    async def generate_link_for_folder(self, folder_id: uuid.UUID, user_id: str) -> Link:
        folder = await self.db.scalar(
            sa.select(Folder).where(Folder.id == folder_id, Folder.user_id == user_id)
        )
        if folder is None:
            raise NotFoundError("Folder not found.")
        if folder.link_id is not None:
            raise ConflictError("This folder already has a link.")

        self._check_rate_limit(user_id)

        slug = secrets.token_hex(5)
        while await self._slug_taken(folder.workspace_id, slug, None):
            slug = secrets.token_hex(5)

        link = Link(
            user_id=user_id,
            workspace_id=folder.workspace_id,
            slug=slug,
            link_type=LinkType.GENERATED,
            title=folder.name,
        )
        self.db.add(link)
        await self.db.flush()
        folder.link_id = link.id

        await self._commit_link()
        await self.db.refresh(link)

        logger.info("Generated link %s for folder %s", link.id, folder.id)
        await safe_publish(self.bus, workspace_channel(folder.workspace_id), LINK_CREATED_EVENT, {
            "linkId": str(link.id),
            "folderId": str(folder.id),
        })
        return link

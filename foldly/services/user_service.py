import asyncio
from typing import Any, Dict, Optional

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from foldly.db.models.file import File
from foldly.db.models.user import User
from foldly.exceptions import InvalidInputError, DatabaseError
from foldly.logger import get_logger
from foldly.services.storage_service import StorageAdapter

logger = get_logger(__name__)

MAX_SYNC_ATTEMPTS = 3
RETRY_DELAY_SEC = 0.2


def profile_from_clerk(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map an identity-provider user payload onto User columns."""
    user_id = data.get("id")
    if not user_id:
        raise InvalidInputError("User payload has no id.")

    emails = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    email = next((e.get("email_address") for e in emails if e.get("id") == primary_id), None)
    if email is None and emails:
        email = emails[0].get("email_address")
    if not email:
        raise InvalidInputError("User payload has no email address.")

    return {
        "id": user_id,
        "email": email,
        "username": data.get("username"),
        "first_name": data.get("first_name"),
        "last_name": data.get("last_name"),
        "avatar_url": data.get("image_url"),
    }


class UserService:
    def __init__(self, db: AsyncSession, storage: Optional[StorageAdapter] = None):
        self.db = db
        self.storage = storage

    async def _upsert(self, profile: Dict[str, Any]) -> User:
        user = await self.db.get(User, profile["id"])
        if user is None:
            user = User(**profile)
            self.db.add(user)
        else:
            for key, value in profile.items():
                if key != "id":
                    setattr(user, key, value)

        await self.db.commit()
        await self.db.refresh(user)
        return user

    async def sync_user(self, data: Dict[str, Any], attempts: int = MAX_SYNC_ATTEMPTS) -> User:
        """Create or update the local user, retrying transient database failures."""
        profile = profile_from_clerk(data)

        for attempt in range(1, attempts + 1):
            try:
                return await self._upsert(profile)
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.warning("Syncing user %s failed (attempt %d/%d)", profile["id"], attempt, attempts,
                               exc_info=True)
                if attempt == attempts:
                    raise DatabaseError(f"Failed to sync user {profile['id']}.") from e
                await asyncio.sleep(RETRY_DELAY_SEC * attempt)

    async def delete_user(self, user_id: str) -> int:
        """Delete stored objects for every file the user owns, then the user.

        Workspace, links, folders, files and notifications go with the user row
        through the foreign key cascades. Returns the number of objects removed.
        """
        paths = list((await self.db.scalars(
            sa.select(File.storage_path).where(File.user_id == user_id, File.storage_path.is_not(None))
        )).all())

        removed = 0
        if paths and self.storage is not None:
            removed = sum(1 for ok in await self.storage.delete(paths) if ok)

        result = await self.db.execute(sa.delete(User).where(User.id == user_id))
        await self.db.commit()

        if result.rowcount:
            logger.info("User %s deleted with %d stored object(s)", user_id, removed)
        else:
            logger.info("User %s was not present locally", user_id)
        return removed

from fastapi import HTTPException, status, Depends
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from foldly.config import config
from foldly.db.models.user import User
from foldly.db.session import get_db

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


class AuthService:
    """Session verification. Tokens are issued by the identity provider; we
    only check signature, scope and that the subject exists locally."""

    @staticmethod
    def decode_subject(token: str) -> str:
        try:
            payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
        except JWTError:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.")

        user_id = payload.get("sub")
        if not user_id or payload.get("scope") != "access":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.")

        return user_id

    @classmethod
    async def verify_token(cls, token: str, db: AsyncSession) -> User:
        user_id = cls.decode_subject(token)

        user = await db.scalar(select(User).where(User.id == user_id))
        if not user:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found.")

        return user

    @classmethod
    async def get_current_user(
        cls,
        token: str | None = Depends(oauth2_scheme),
        db: AsyncSession = Depends(get_db),
    ) -> User:
        if not token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated.")
        return await cls.verify_token(token, db)

from sqlalchemy import Column, String, DateTime, BigInteger, Text, Enum, func

from foldly.config import config
from foldly.db.base import Base
from foldly.utils.types import SubscriptionTier


class User(Base):
    __tablename__ = "users"

    # Identity provider user id (e.g. "user_2abc...")
    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    username = Column(String(100), nullable=True, unique=True, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    avatar_url = Column(Text, nullable=True)

    subscription_tier = Column(
        Enum(SubscriptionTier, name="subscription_tier", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SubscriptionTier.FREE,
    )
    storage_used = Column(BigInteger, nullable=False, default=0)
    storage_limit = Column(BigInteger, nullable=False, default=lambda: config.DEFAULT_STORAGE_LIMIT)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

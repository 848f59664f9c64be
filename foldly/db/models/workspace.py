import uuid

import sqlalchemy as sa

from foldly.db.base import Base


class Workspace(Base):
    __tablename__ = "workspaces"

    id = sa.Column(sa.UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = sa.Column(
        sa.String(64),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True
    )

    name = sa.Column(sa.String(255), nullable=False, default="My Files")

    created_at = sa.Column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)

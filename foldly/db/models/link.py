import uuid

import sqlalchemy as sa

from foldly.config import config
from foldly.db.base import Base
from foldly.utils.types import LinkType


class Link(Base):
    __tablename__ = "links"
    __table_args__ = (
        sa.UniqueConstraint("workspace_id", "slug", "topic", name="uq_links_workspace_slug_topic"),
        # NULL topics never collide in the constraint above.
        sa.Index(
            "uq_links_workspace_slug_no_topic", "workspace_id", "slug",
            unique=True,
            postgresql_where=sa.text("topic IS NULL"),
            sqlite_where=sa.text("topic IS NULL"),
        ),
    )

    id = sa.Column(sa.UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = sa.Column(
        sa.String(64),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    workspace_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    slug = sa.Column(sa.String(100), nullable=False, index=True)
    topic = sa.Column(sa.String(100), nullable=True)
    link_type = sa.Column(
        sa.Enum(LinkType, name="link_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=LinkType.BASE,
    )

    title = sa.Column(sa.String(255), nullable=False)
    description = sa.Column(sa.Text, nullable=True)
    custom_message = sa.Column(sa.Text, nullable=True)

    require_email = sa.Column(sa.Boolean, nullable=False, default=False)
    require_name = sa.Column(sa.Boolean, nullable=False, default=True)
    require_message = sa.Column(sa.Boolean, nullable=False, default=False)
    require_password = sa.Column(sa.Boolean, nullable=False, default=False)
    password_hash = sa.Column(sa.Text, nullable=True)
    is_public = sa.Column(sa.Boolean, nullable=False, default=True)
    is_active = sa.Column(sa.Boolean, nullable=False, default=True, index=True)

    max_files = sa.Column(sa.Integer, nullable=False, default=lambda: config.DEFAULT_MAX_FILES)
    max_file_size = sa.Column(sa.BigInteger, nullable=False, default=lambda: config.DEFAULT_MAX_FILE_SIZE)
    expires_at = sa.Column(sa.DateTime(timezone=True), nullable=True)

    total_uploads = sa.Column(sa.Integer, nullable=False, default=0)
    total_files = sa.Column(sa.Integer, nullable=False, default=0)
    total_size = sa.Column(sa.BigInteger, nullable=False, default=0)
    unread_uploads = sa.Column(sa.Integer, nullable=False, default=0)
    last_upload_at = sa.Column(sa.DateTime(timezone=True), nullable=True)
    last_notification_at = sa.Column(sa.DateTime(timezone=True), nullable=True)

    created_at = sa.Column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    updated_at = sa.Column(sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False)

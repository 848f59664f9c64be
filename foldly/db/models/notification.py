import uuid

import sqlalchemy as sa

from foldly.db.base import Base
from foldly.utils.dates import utcnow
from foldly.utils.types import NotificationType


class Notification(Base):
    __tablename__ = "notifications"

    id = sa.Column(sa.UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    user_id = sa.Column(
        sa.String(64),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    link_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("links.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    batch_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("batches.id", ondelete="SET NULL"),
        nullable=True
    )

    type = sa.Column(
        sa.Enum(NotificationType, name="notification_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=NotificationType.UPLOAD,
    )
    title = sa.Column(sa.String(255), nullable=False)
    description = sa.Column(sa.Text, nullable=True)
    details = sa.Column(sa.JSON, nullable=True)

    is_read = sa.Column(sa.Boolean, nullable=False, default=False, index=True)
    read_at = sa.Column(sa.DateTime(timezone=True), nullable=True)

    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow, nullable=False, index=True)

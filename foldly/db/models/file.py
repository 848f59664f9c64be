import uuid

import sqlalchemy as sa

from foldly.db.base import Base
from foldly.utils.dates import utcnow
from foldly.utils.types import ProcessingStatus


class File(Base):
    __tablename__ = "files"

    id = sa.Column(sa.UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    user_id = sa.Column(
        sa.String(64),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    # Link uploads carry link_id + batch_id, owner uploads carry workspace_id.
    link_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("links.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    batch_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("batches.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    workspace_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    folder_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("folders.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    file_name = sa.Column(sa.String(255), nullable=False)
    original_name = sa.Column(sa.String(255), nullable=False)
    file_size = sa.Column(sa.BigInteger, nullable=False)
    mime_type = sa.Column(sa.String(100), nullable=False)
    extension = sa.Column(sa.String(20), nullable=True)

    storage_path = sa.Column(sa.Text, nullable=True)
    checksum = sa.Column(sa.String(64), nullable=True)
    processing_status = sa.Column(
        sa.Enum(ProcessingStatus, name="file_processing_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ProcessingStatus.PENDING,
        index=True,
    )

    uploaded_at = sa.Column(sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False)
    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False)
    updated_at = sa.Column(sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False)

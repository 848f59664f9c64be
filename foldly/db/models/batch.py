import uuid

import sqlalchemy as sa

from foldly.db.base import Base
from foldly.utils.dates import utcnow
from foldly.utils.types import BatchStatus


class Batch(Base):
    __tablename__ = "batches"

    id = sa.Column(sa.UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    link_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("links.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id = sa.Column(
        sa.String(64),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    folder_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("folders.id", ondelete="SET NULL"),
        nullable=True
    )

    uploader_name = sa.Column(sa.String(255), nullable=False)
    uploader_email = sa.Column(sa.String(255), nullable=True)
    uploader_message = sa.Column(sa.Text, nullable=True)
    display_name = sa.Column(sa.String(255), nullable=True)

    status = sa.Column(
        sa.Enum(BatchStatus, name="batch_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=BatchStatus.UPLOADING,
        index=True,
    )
    total_files = sa.Column(sa.Integer, nullable=False, default=0)
    processed_files = sa.Column(sa.Integer, nullable=False, default=0)
    failed_files = sa.Column(sa.Integer, nullable=False, default=0)
    total_size = sa.Column(sa.BigInteger, nullable=False, default=0)

    upload_completed_at = sa.Column(sa.DateTime(timezone=True), nullable=True)

    created_at = sa.Column(sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False)
    updated_at = sa.Column(sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in (BatchStatus.COMPLETED, BatchStatus.FAILED)

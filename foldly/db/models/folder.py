import uuid

import sqlalchemy as sa
from sqlalchemy import event, Connection
from sqlalchemy.orm import Mapper

from foldly.db.base import Base


class Folder(Base):
    __tablename__ = "folders"

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
    parent_folder_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("folders.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    link_id = sa.Column(
        sa.UUID(as_uuid=True),
        sa.ForeignKey("links.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    name = sa.Column(sa.String(255), nullable=False)
    # Materialized; never set by callers.
    path = sa.Column(sa.Text, nullable=False, default="")
    depth = sa.Column(sa.Integer, nullable=False, default=0)

    file_count = sa.Column(sa.Integer, nullable=False, default=0)
    total_size = sa.Column(sa.BigInteger, nullable=False, default=0)

    created_at = sa.Column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    updated_at = sa.Column(sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False)


class FolderParentMismatch(Exception):
    pass


@event.listens_for(Folder, "before_insert")
def compute_folder_path(_mapper: Mapper, connection: Connection, target: Folder):
    if target.parent_folder_id is None:
        target.path = f"/{target.name}"
        target.depth = 0
        return

    parent = connection.execute(
        sa.select(Folder.path, Folder.depth, Folder.workspace_id).where(Folder.id == target.parent_folder_id)
    ).first()
    if parent is None or parent.workspace_id != target.workspace_id:
        raise FolderParentMismatch("Parent folder does not exist in this workspace.")

    target.path = f"{parent.path}/{target.name}"
    target.depth = parent.depth + 1

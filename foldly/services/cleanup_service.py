"""
Periodic maintenance for the upload pipeline, run by ``scripts/cleanup_storage.py``.

* partial uploads: pending file rows that never received bytes are failed
  so their batches can finish;
* stale batches: batches still uploading after ``BATCH_TIMEOUT_MIN`` are
  closed;
* orphaned objects: stored objects under a user's prefixes that no file row
  points at are removed.
"""

import datetime as dt
import re
from pathlib import PurePosixPath
from typing import List, Optional, Set

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from foldly.config import config
from foldly.db.models.batch import Batch
from foldly.db.models.file import File
from foldly.db.models.user import User
from foldly.logger import get_logger
from foldly.services.realtime_service import RealtimeBus
from foldly.services.storage_service import StorageAdapter, user_storage_prefixes
from foldly.services.upload_service import UploadService
from foldly.utils.dates import utcnow
from foldly.utils.types import BatchStatus, ProcessingStatus

logger = get_logger(__name__)

_TIMESTAMP_PREFIX = re.compile(r"^(\d{10,})_")


def object_timestamp(path: str) -> Optional[dt.datetime]:
    """Creation time encoded in a stored object's name, if any."""
    match = _TIMESTAMP_PREFIX.match(PurePosixPath(path).name)
    if match is None:
        return None
    return dt.datetime.fromtimestamp(int(match.group(1)) / 1000, tz=dt.timezone.utc)


class CleanupService:
    def __init__(self, db: AsyncSession, storage: StorageAdapter, bus: Optional[RealtimeBus] = None):
        self.db = db
        self.storage = storage
        self.bus = bus

    async def cleanup_partial_uploads(self, older_than_min: int = config.PARTIAL_UPLOAD_TIMEOUT_MIN) -> int:
        cutoff = utcnow() - dt.timedelta(minutes=older_than_min)
        rows = (await self.db.execute(
            sa.select(File.id, File.batch_id).where(
                File.processing_status == ProcessingStatus.PENDING,
                File.checksum.is_(None),
                File.created_at < cutoff,
            )
        )).all()
        if not rows:
            return 0

        await self.db.execute(
            sa.update(File)
            .where(File.id.in_([r.id for r in rows]))
            .values(processing_status=ProcessingStatus.FAILED)
            .execution_options(synchronize_session=False)
        )

        per_batch = {}
        for row in rows:
            if row.batch_id is not None:
                per_batch[row.batch_id] = per_batch.get(row.batch_id, 0) + 1
        for batch_id, count in per_batch.items():
            await self.db.execute(
                sa.update(Batch)
                .where(Batch.id == batch_id)
                .values(failed_files=Batch.failed_files + count)
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()

        uploads = UploadService(self.db, self.storage, self.bus)
        for batch_id in per_batch:
            await uploads.finalize_batch(batch_id)

        logger.info("Failed %d partial upload(s) across %d batch(es)", len(rows), len(per_batch))
        return len(rows)

    async def expire_stale_batches(self, older_than_min: int = config.BATCH_TIMEOUT_MIN) -> int:
        cutoff = utcnow() - dt.timedelta(minutes=older_than_min)
        batch_ids = (await self.db.scalars(
            sa.select(Batch.id).where(
                Batch.status.in_([BatchStatus.UPLOADING, BatchStatus.PROCESSING]),
                Batch.created_at < cutoff,
            )
        )).all()

        uploads = UploadService(self.db, self.storage, self.bus)
        expired = 0
        for batch_id in batch_ids:
            if await uploads.finalize_batch(batch_id, force=True):
                expired += 1

        if expired:
            logger.info("Closed %d stale batch(es)", expired)
        return expired

    async def cleanup_orphaned_files(
            self,
            user_id: str,
            dry_run: bool = False,
            grace_min: int = config.PARTIAL_UPLOAD_TIMEOUT_MIN
    ) -> List[str]:
        known: Set[str] = set((await self.db.scalars(
            sa.select(File.storage_path).where(File.user_id == user_id, File.storage_path.is_not(None))
        )).all())

        # Objects written moments ago may belong to an upload still being recorded.
        recent = utcnow() - dt.timedelta(minutes=grace_min)
        orphans = []
        for prefix in user_storage_prefixes(user_id):
            for obj in await self.storage.list(prefix):
                if obj.path in known:
                    continue
                created = object_timestamp(obj.path)
                if created is not None and created > recent:
                    continue
                orphans.append(obj.path)

        if orphans and not dry_run:
            await self.storage.delete(orphans)
        if orphans:
            logger.info("%s %d orphaned object(s) for %s",
                        "Found" if dry_run else "Removed", len(orphans), user_id)
        return orphans

    async def user_ids(self) -> List[str]:
        return list((await self.db.scalars(sa.select(User.id))).all())

    async def run(self, dry_run: bool = False, user_id: Optional[str] = None) -> dict:
        summary = {"partialUploads": 0, "staleBatches": 0, "orphanedObjects": 0}
        if not dry_run:
            summary["partialUploads"] = await self.cleanup_partial_uploads()
            summary["staleBatches"] = await self.expire_stale_batches()

        for uid in ([user_id] if user_id else await self.user_ids()):
            summary["orphanedObjects"] += len(await self.cleanup_orphaned_files(uid, dry_run=dry_run))
        return summary

import argparse
import asyncio
from typing import Optional

from foldly.config import config
from foldly.db.session import SessionLocal, engine
from foldly.logger import setup_logging, get_logger
from foldly.services.cleanup_service import CleanupService
from foldly.services.storage_service import LocalStorage

logger = get_logger("scripts.cleanup_storage")


async def cleanup_storage(dry_run: bool, user_id: Optional[str] = None) -> dict:
    print("[cleanup] start")
    print(f"[cleanup] storage_path={config.STORAGE_PATH} dry_run={dry_run}")
    if user_id:
        print("[cleanup] limited to a single user")

    storage = LocalStorage(config.STORAGE_PATH)
    try:
        async with SessionLocal() as db:
            summary = await CleanupService(db, storage).run(dry_run=dry_run, user_id=user_id)

    except Exception:
        logger.exception("Cleanup aborted")
        raise

    finally:
        await engine.dispose()

    print("[cleanup] done")
    print(
        f"[cleanup] totals partial_uploads={summary['partialUploads']} "
        f"stale_batches={summary['staleBatches']} orphaned_objects={summary['orphanedObjects']}"
    )
    return summary


if __name__ == '__main__':
    parser = argparse.ArgumentParser(
        description="Fail abandoned uploads, close stale batches and remove stored "
                    "objects that no file record points at."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report orphaned objects; do not change the database or storage."
    )
    parser.add_argument(
        "--user",
        default=None,
        help="Restrict orphan detection to one user id."
    )
    args = parser.parse_args()

    setup_logging()
    asyncio.run(cleanup_storage(args.dry_run, args.user))

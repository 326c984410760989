"""Background worker checking the denormalized owner copies.

Schedule items and vaccination records carry a copy of their child's owner
(``userId``) so whole-collection scans can filter without a join. This worker:
1. Compares every copy with the owning Child record
2. Reports records whose child no longer exists (left by interrupted deletes)
3. Optionally repairs both: copies are reset from the child, orphans removed
"""
import asyncio
import logging
import os
from datetime import datetime

from services.vaxtrack.db import SessionLocal
from services.vaxtrack.store import RecordStore, SqlRecordStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CHECKED_COLLECTIONS = ("schedules", "vaccinations")
CONSISTENCY_CHECK_INTERVAL_SECONDS = int(os.getenv("CONSISTENCY_CHECK_INTERVAL_SECONDS", "3600"))


async def run_consistency_check(store: RecordStore, *, repair: bool = False) -> dict:
    """Scan schedules and vaccinations against their children.

    Returns:
        Statistics plus the paths of mismatched and orphaned records
    """
    owners = {c["id"]: c.get("userId") for c in await store.list_path("children")}

    checked = 0
    mismatched = []
    orphaned = []
    for collection in CHECKED_COLLECTIONS:
        for doc in await store.scan(collection):
            checked += 1
            path = f"{collection}/{doc.get('childId')}/{doc.get('id')}"
            if doc.get("childId") not in owners:
                orphaned.append(path)
                logger.warning(f"Orphaned record {path}: child does not exist")
            elif doc.get("userId") != owners[doc["childId"]]:
                mismatched.append(path)
                logger.error(f"Owner mismatch on {path}: record={doc.get('userId')} child={owners[doc['childId']]}")

    if repair:
        for path in mismatched:
            child_id = path.split("/")[1]
            await store.update(path, {"userId": owners[child_id]})
        for path in orphaned:
            await store.delete(path)
        if mismatched or orphaned:
            logger.info(f"Repaired {len(mismatched)} owner copies, removed {len(orphaned)} orphans")

    logger.info(f"Consistency check complete: {checked} checked, {len(mismatched)} mismatched, {len(orphaned)} orphaned")
    return {
        "checked": checked,
        "mismatched": mismatched,
        "orphaned": orphaned,
        "repaired": repair,
        "timestamp": datetime.utcnow().isoformat(),
    }


async def run_periodic_consistency_check(interval_seconds: int = CONSISTENCY_CHECK_INTERVAL_SECONDS, *, repair: bool = False):
    """Run the consistency check forever, one fresh session per pass."""
    logger.info(f"Starting consistency worker (interval: {interval_seconds}s)")

    while True:
        db = SessionLocal()
        try:
            result = await run_consistency_check(SqlRecordStore(db), repair=repair)
            logger.info(f"Consistency result: {result['checked']} checked")
        except Exception as e:
            logger.error(f"Consistency check failed: {e}")
        finally:
            db.close()

        await asyncio.sleep(interval_seconds)


if __name__ == "__main__":
    asyncio.run(run_periodic_consistency_check(repair=os.getenv("CONSISTENCY_REPAIR") == "1"))

"""
Recompute and persist the CMV of collection rows.

Used by the collection API (after add/edit and on explicit recompute) and by
the stale-CMV refresh job. The final write carries the full CMV field set in
one update; if it fails the row keeps whatever status it had before.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.cmv import CmvComputation, build_pending_cmv_update, calculate_card_cmv_with_status, is_cmv_stale
from src.db.collection import CollectionRepository
from src.handlers.comps_search import ListingSource
from src.utils.errors import CmvPersistenceError
from src.utils.logger import cmv_logger


async def refresh_item_cmv(
    repo: CollectionRepository,
    source: ListingSource,
    item: Dict[str, Any],
    mark_pending: bool = False,
) -> CmvComputation:
    """
    Compute one row's CMV and write the result.

    Raises:
        CmvPersistenceError: the pending or final write failed
    """
    user_id, item_id = item["user_id"], item["id"]
    if mark_pending:
        repo.update_cmv(user_id, item_id, build_pending_cmv_update())

    computation = await calculate_card_cmv_with_status(item, source)
    repo.update_cmv(user_id, item_id, computation.payload)
    return computation


async def compute_cmv_in_background(
    repo: CollectionRepository, source: ListingSource, item: Dict[str, Any]
):
    """Fire-and-forget wrapper; a failed write is logged and the row is picked up by the refresh job."""
    try:
        await refresh_item_cmv(repo, source, item)
    except CmvPersistenceError as e:
        cmv_logger.error(f"❌ Background CMV write failed for {item.get('id')}: {e}")


async def refresh_stale_cmvs(
    repo: CollectionRepository,
    source: ListingSource,
    batch_size: int = 25,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Recompute up to ``batch_size`` stale rows, oldest first."""
    now = now or datetime.now(timezone.utc)
    candidates = repo.list_for_refresh(limit=batch_size * 4)
    stale: List[Dict[str, Any]] = [row for row in candidates if is_cmv_stale(row, now)][:batch_size]

    counts = {"checked": len(candidates), "refreshed": 0, "failed": 0}
    for row in stale:
        try:
            computation = await refresh_item_cmv(repo, source, row)
        except CmvPersistenceError as e:
            cmv_logger.error(f"❌ CMV refresh write failed for {row.get('id')}: {e}")
            counts["failed"] += 1
            continue
        if computation.error_code:
            counts["failed"] += 1
        else:
            counts["refreshed"] += 1

    cmv_logger.info(
        f"🔄 Stale CMV refresh: checked={counts['checked']} refreshed={counts['refreshed']} failed={counts['failed']}"
    )
    return counts

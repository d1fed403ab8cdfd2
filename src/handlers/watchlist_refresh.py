"""
Periodic repricing of watchlist items.

Each pass takes the items not priced within ``WATCHLIST_PRICE_TTL``, reduces
their sold comps to a CMV and stores it as the item's current value, so the
below-target flag follows the market instead of the value typed in at add time.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from src.db.watchlist import WatchlistRepository
from src.handlers.comps_search import ListingSource, search_comps
from src.models.card import CompsQuery, CompStats
from src.utils.errors import CmvPersistenceError, UpstreamSourceError
from src.utils.logger import search_logger

WATCHLIST_PRICE_TTL = timedelta(hours=24)
MAX_PRICE_HISTORY = 30


def build_watchlist_query(item: Dict[str, Any]) -> CompsQuery:
    year = item.get("year")
    grade = item.get("grade")
    if grade and str(grade).strip().lower() in ("raw", "ungraded"):
        grade = None
    return CompsQuery(
        player=str(item.get("player_name") or ""),
        year=str(year) if year else None,
        set_name=item.get("set_name") or None,
        grade=grade or None,
        parallel=item.get("parallel_type") or None,
        card_number=item.get("card_number") or None,
    )


def append_price_history(
    history: Optional[List[Dict[str, Any]]], price: float, now: datetime
) -> List[Dict[str, Any]]:
    """Add today's price and keep the newest ``MAX_PRICE_HISTORY`` entries."""
    entries = [entry for entry in (history or []) if isinstance(entry, dict)]
    entries.append({"price": price, "date": now.date().isoformat()})
    return entries[-MAX_PRICE_HISTORY:]


def build_watchlist_price_update(
    item: Dict[str, Any], stats: CompStats, now: datetime
) -> Dict[str, Any]:
    """
    Payload for one repriced item.

    With no usable comps only ``last_checked`` moves; the previous price and
    history stay as they were.
    """
    checked = now.isoformat()
    if not stats.count or stats.cmv is None:
        return {"last_checked": checked}
    return {
        "last_price": stats.cmv,
        "estimated_cmv": stats.cmv,
        "last_checked": checked,
        "price_history": append_price_history(item.get("price_history"), stats.cmv, now),
    }


async def refresh_watchlist_prices(
    repo: WatchlistRepository,
    source: ListingSource,
    batch_size: int = 50,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Reprice up to ``batch_size`` due items. Stops early when the listing source is unavailable."""
    now = now or datetime.now(timezone.utc)
    items = repo.list_for_price_check(now - WATCHLIST_PRICE_TTL, limit=batch_size)

    counts = {"processed": 0, "updated": 0, "unchanged": 0, "failed": 0}
    for item in items:
        counts["processed"] += 1
        try:
            result = await search_comps(source, build_watchlist_query(item), store=None)
            payload = build_watchlist_price_update(item, result.stats, now)
            repo.update_price(item["id"], payload)
        except UpstreamSourceError as e:
            search_logger.error(f"❌ Listing source unavailable, stopping watchlist refresh: {e}")
            counts["failed"] += 1
            break
        except CmvPersistenceError as e:
            search_logger.error(f"❌ Watchlist price write failed for {item.get('id')}: {e}")
            counts["failed"] += 1
            continue

        if "last_price" in payload:
            counts["updated"] += 1
        else:
            counts["unchanged"] += 1

    search_logger.info(
        f"🔄 Watchlist price refresh: processed={counts['processed']} updated={counts['updated']} "
        f"unchanged={counts['unchanged']} failed={counts['failed']}"
    )
    return counts

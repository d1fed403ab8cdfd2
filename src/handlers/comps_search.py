"""
Comps search: listing source -> hard filters -> title ranking -> price stats.

Listing sources are anything with an async ``fetch_sold(query)`` returning
``Listing`` objects; the HTTP and Supabase sources below are the two used in
production, tests pass in-memory ones.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from src.match_engine import ListingFilterParams, filter_listings
from src.models.card import CompsQuery, CompStats, Listing
from src.utils.cache import COMPS_TTL_SECONDS, TTLStore, comps_cache
from src.utils.httpx import LISTING_SOURCE_URL, get_default_headers, httpx_get_json
from src.utils.logger import log_search_result, search_logger
from src.utils.stats import DEFAULT_WINDOW_DAYS, calculate_stats, filter_by_grade, filter_recent_comps
from src.utils.supabase import supabase_get_sold_listings


class ListingSource(Protocol):
    name: str

    async def fetch_sold(self, query: CompsQuery) -> List[Listing]: ...


class HttpListingSource:
    """Sold listings from the external listing service (JSON over HTTP)."""

    name = "http"

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, transport=None):
        self.base_url = (base_url or LISTING_SOURCE_URL or "").rstrip("/")
        self.api_key = api_key
        self.transport = transport

    async def fetch_sold(self, query: CompsQuery) -> List[Listing]:
        if not self.base_url:
            search_logger.warning("⚠️ LISTING_SOURCE_URL not configured; no listings fetched")
            return []
        params = {"q": query.to_text(), "sold": "1", "limit": query.limit}
        data = await httpx_get_json(
            f"{self.base_url}/listings",
            params=params,
            headers=get_default_headers(self.api_key),
            transport=self.transport,
        )
        rows = data.get("items", []) if isinstance(data, dict) else data or []
        return [Listing.from_row(row) for row in rows if isinstance(row, dict) and row.get("title")]


class SupabaseListingSource:
    """Sold listings already stored in the database, matched by player name."""

    name = "supabase"

    async def fetch_sold(self, query: CompsQuery) -> List[Listing]:
        filters: Dict[str, Any] = {"title": {"ilike": f"%{query.player}%"}}
        rows = supabase_get_sold_listings(filters, limit=query.limit)
        return [Listing.from_row(row) for row in rows if row.get("title")]


@dataclass
class CompsSearchResult:
    query: CompsQuery
    listings: List[Listing] = field(default_factory=list)
    stats: CompStats = field(default_factory=CompStats)
    filter_level: str = "strict"
    fetched: int = 0
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query.to_text(),
            "comps": [item.to_dict() for item in self.listings],
            "stats": self.stats.to_dict(),
            "filterLevel": self.filter_level,
            "fetched": self.fetched,
            "source": self.source,
        }


async def search_comps(
    source: ListingSource,
    query: CompsQuery,
    window_days: Optional[int] = DEFAULT_WINDOW_DAYS,
    store: Optional[TTLStore] = comps_cache,
) -> CompsSearchResult:
    """Fetch, filter and reduce comps for one card query. Results are cached briefly."""
    cache_key = f"comps:{source.name}:{query.cache_key()}:{window_days}"
    if store is not None:
        cached = store.get(cache_key)
        if cached is not None:
            return cached

    started = time.perf_counter()
    fetched = await source.fetch_sold(query)
    candidates = filter_recent_comps(fetched, window_days) if window_days else list(fetched)

    params = ListingFilterParams(
        set_name=query.set_name,
        parallel=query.parallel,
        grade=query.grade,
        card_number=query.card_number,
    )
    if query.grade:
        # relaxed filter levels stop checking grade; stats stay within one grade bucket
        candidates = filter_by_grade(candidates, query.grade)
    matched, level = filter_listings(candidates, params)
    result = CompsSearchResult(
        query=query,
        listings=matched,
        stats=calculate_stats(matched),
        filter_level=level,
        fetched=len(fetched),
        source=source.name,
    )

    log_search_result(search_logger, "comps", query.to_text(), len(matched), len(fetched))
    search_logger.debug(f"comps search took {int((time.perf_counter() - started) * 1000)} ms")

    if store is not None:
        store.set(cache_key, result, COMPS_TTL_SECONDS)
    return result

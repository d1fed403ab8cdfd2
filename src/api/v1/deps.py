from typing import Any, Callable, Dict, List, Optional

from fastapi import Header, HTTPException

from src.db.collection import CollectionRepository
from src.db.watchlist import WatchlistRepository
from src.handlers.comps_search import HttpListingSource, ListingSource, SupabaseListingSource
from src.models.card import SearchFilters
from src.utils.card_search import catalog_narrowing_clause
from src.utils.httpx import LISTING_SOURCE_URL
from src.utils.supabase import (
    supabase_get_catalog_cards,
    supabase_get_recent_searches,
    supabase_record_search,
)

CATALOG_SCAN_LIMIT = 1000


# Dependency injection
def get_optional_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """User id forwarded by the gateway after authentication."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_collection_repo() -> CollectionRepository:
    return CollectionRepository()


def get_watchlist_repo() -> WatchlistRepository:
    return WatchlistRepository()


def get_listing_source() -> ListingSource:
    """External listing service when configured, otherwise listings stored in Supabase."""
    if LISTING_SOURCE_URL:
        return HttpListingSource()
    return SupabaseListingSource()


def get_catalog_loader() -> Callable[[SearchFilters], List[Dict[str, Any]]]:
    def load(filters: SearchFilters) -> List[Dict[str, Any]]:
        return supabase_get_catalog_cards(
            {"or": catalog_narrowing_clause(filters)}, limit=CATALOG_SCAN_LIMIT
        )

    return load


def get_recent_searches_loader() -> Callable[[str], List[Dict[str, Any]]]:
    return supabase_get_recent_searches


def get_search_recorder() -> Callable[[str, str, str], Any]:
    return supabase_record_search

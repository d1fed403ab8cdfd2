from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query

from src.api.v1.deps import get_listing_source, get_user_id, get_watchlist_repo
from src.db.watchlist import WatchlistRepository
from src.handlers.comps_search import ListingSource
from src.match_engine import tier_listings
from src.models.api import DeleteResponse, WatchlistItemRequest
from src.models.card import CompsQuery, SearchMode
from src.utils.collection_input import coerce_card_number
from src.utils.logger import api_logger, log_api_request, log_search_result, search_logger
from src.utils.query_parser import parse_query
from src.utils.safe_handler import safe_handler

router = APIRouter()


def _clean_fields(request: WatchlistItemRequest) -> dict:
    fields = request.model_dump(exclude_unset=True)
    if "card_number" in fields:
        fields["card_number"] = coerce_card_number(fields["card_number"])
    return fields


@router.get("", summary="List watchlist items")
@safe_handler(default_detail="Failed to load watchlist")
def list_watchlist(
    user_id: str = Depends(get_user_id),
    repo: WatchlistRepository = Depends(get_watchlist_repo),
):
    log_api_request(api_logger, "GET", "/watchlist", {"user_id": user_id})
    items = repo.list_items(user_id)
    return {
        "items": items,
        "below_target_count": sum(1 for item in items if item["below_target"]),
    }


@router.get("/search", summary="Find listings for a free-text card query")
@safe_handler(default_detail="Watchlist search failed")
async def search_watchlist_listings(
    q: str = Query(..., min_length=1, description="e.g. '2023 prizm wembanyama silver psa 10'"),
    mode: SearchMode = Query(SearchMode.watchlist, description="Tier cutoffs to use"),
    source: ListingSource = Depends(get_listing_source),
):
    """Parse the query, fetch candidates and bucket them into exact / likely / close."""
    log_api_request(api_logger, "GET", "/watchlist/search", {"q": q, "mode": mode.value})
    intent = parse_query(q)
    query = CompsQuery(player=intent.player or intent.normalized, year=intent.year)
    listings = await source.fetch_sold(query)
    tiers = tier_listings(intent, listings, mode=mode)
    log_search_result(search_logger, "watchlist", q, tiers.total - tiers.hidden_count, len(listings))
    return {"intent": asdict(intent), "tiers": tiers.to_dict()}


@router.get("/{item_id}", summary="Get one watchlist item")
@safe_handler(default_detail="Failed to load watchlist item")
def get_watchlist_item(
    item_id: str,
    user_id: str = Depends(get_user_id),
    repo: WatchlistRepository = Depends(get_watchlist_repo),
):
    item = repo.get_item(user_id, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Watchlist item not found")
    return item


@router.post("", status_code=201, summary="Watch a card")
@safe_handler(default_detail="Failed to add watchlist item")
def add_watchlist_item(
    request: WatchlistItemRequest,
    user_id: str = Depends(get_user_id),
    repo: WatchlistRepository = Depends(get_watchlist_repo),
):
    log_api_request(api_logger, "POST", "/watchlist", {"user_id": user_id})
    if not request.player_name or not request.player_name.strip():
        raise HTTPException(status_code=400, detail={"error": "Player name is required", "missing": ["player_name"]})
    return repo.insert_item(user_id, _clean_fields(request))


@router.patch("/{item_id}", summary="Edit a watchlist item")
@safe_handler(default_detail="Failed to update watchlist item")
def update_watchlist_item(
    item_id: str,
    request: WatchlistItemRequest,
    user_id: str = Depends(get_user_id),
    repo: WatchlistRepository = Depends(get_watchlist_repo),
):
    log_api_request(api_logger, "PATCH", f"/watchlist/{item_id}", {"user_id": user_id})
    updated = repo.update_item(user_id, item_id, _clean_fields(request))
    if not updated:
        raise HTTPException(status_code=404, detail="Watchlist item not found")
    return updated


@router.delete("/{item_id}", response_model=DeleteResponse, summary="Stop watching a card")
@safe_handler(default_detail="Failed to delete watchlist item")
def delete_watchlist_item(
    item_id: str,
    user_id: str = Depends(get_user_id),
    repo: WatchlistRepository = Depends(get_watchlist_repo),
):
    log_api_request(api_logger, "DELETE", f"/watchlist/{item_id}", {"user_id": user_id})
    if not repo.delete_item(user_id, item_id):
        raise HTTPException(status_code=404, detail="Watchlist item not found")
    return DeleteResponse(id=item_id, deleted=True)

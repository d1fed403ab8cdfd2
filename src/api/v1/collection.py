from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException

from src.api.v1.deps import get_collection_repo, get_listing_source, get_user_id
from src.cmv import build_pending_cmv_update
from src.db.collection import CollectionRepository
from src.handlers.cmv_refresh import compute_cmv_in_background, refresh_item_cmv
from src.handlers.comps_search import ListingSource
from src.models.api import CmvRecomputeResponse, CollectionUpdateRequest, DeleteResponse
from src.models.card import CmvStatus
from src.utils.cmv_state import get_collection_cmv_ui_state
from src.utils.collection_input import (
    CollectionInputError,
    build_insert_payload,
    coerce_card_number,
    normalize_collection_input,
)
from src.utils.errors import CmvPersistenceError
from src.utils.logger import api_logger, log_api_request
from src.utils.safe_handler import safe_handler
from src.utils.values import (
    compute_collection_summary,
    compute_losers,
    compute_performers,
    get_display_value,
    get_value_source,
)

router = APIRouter()

# changing any of these invalidates the stored CMV
PRICING_FIELDS = ("player_name", "year", "set_name", "parallel_type", "card_number", "grade")


def _with_cmv_state(item: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return {
        **item,
        "cmv_ui_state": get_collection_cmv_ui_state(item, now).value,
        "display_value": get_display_value(item),
        "value_source": get_value_source(item),
    }


def _get_owned_item(repo: CollectionRepository, user_id: str, item_id: str) -> Dict[str, Any]:
    item = repo.get_item(user_id, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Collection item not found")
    return item


@router.get("", summary="List collection items with CMV state")
@safe_handler(default_detail="Failed to load collection")
def list_collection(
    user_id: str = Depends(get_user_id),
    repo: CollectionRepository = Depends(get_collection_repo),
):
    log_api_request(api_logger, "GET", "/collection", {"user_id": user_id})
    now = datetime.now(timezone.utc)
    items = repo.list_items(user_id)
    return {
        "items": [_with_cmv_state(item, now) for item in items],
        "summary": compute_collection_summary(items).to_dict(),
    }


@router.get("/summary", summary="Portfolio totals and top movers")
@safe_handler(default_detail="Failed to summarize collection")
def collection_summary(
    user_id: str = Depends(get_user_id),
    repo: CollectionRepository = Depends(get_collection_repo),
):
    log_api_request(api_logger, "GET", "/collection/summary", {"user_id": user_id})
    items = repo.list_items(user_id)
    return {
        "summary": compute_collection_summary(items).to_dict(),
        "top_performers": [m.to_dict() for m in compute_performers(items)],
        "losers": [m.to_dict() for m in compute_losers(items)],
    }


@router.get("/{item_id}", summary="Get one collection item")
@safe_handler(default_detail="Failed to load collection item")
def get_collection_item(
    item_id: str,
    user_id: str = Depends(get_user_id),
    repo: CollectionRepository = Depends(get_collection_repo),
):
    item = _get_owned_item(repo, user_id, item_id)
    return _with_cmv_state(item, datetime.now(timezone.utc))


@router.post("", status_code=201, summary="Add a card to the collection")
@safe_handler(default_detail="Failed to add collection item")
async def add_collection_item(
    background_tasks: BackgroundTasks,
    body: Any = Body(..., description="Card fields; camelCase and snake_case aliases accepted"),
    user_id: str = Depends(get_user_id),
    repo: CollectionRepository = Depends(get_collection_repo),
    source: ListingSource = Depends(get_listing_source),
):
    """
    Store the card immediately. Without a client-supplied CMV the row starts
    ``pending`` and the CMV is computed after the response is sent.
    """
    log_api_request(api_logger, "POST", "/collection", {"user_id": user_id})
    try:
        record = normalize_collection_input(body)
    except CollectionInputError as e:
        api_logger.warning(f"❌ Invalid collection body: {e}")
        raise HTTPException(status_code=400, detail={"error": e.message, **e.details})

    item = repo.insert_item(build_insert_payload(user_id, record))
    if item.get("cmv_status") == CmvStatus.pending.value:
        background_tasks.add_task(compute_cmv_in_background, repo, source, item)
    return _with_cmv_state(item, datetime.now(timezone.utc))


@router.patch("/{item_id}", summary="Edit a collection item")
@safe_handler(default_detail="Failed to update collection item")
async def update_collection_item(
    item_id: str,
    request: CollectionUpdateRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
    repo: CollectionRepository = Depends(get_collection_repo),
    source: ListingSource = Depends(get_listing_source),
):
    log_api_request(api_logger, "PATCH", f"/collection/{item_id}", {"user_id": user_id})
    existing = _get_owned_item(repo, user_id, item_id)

    changes = request.model_dump(exclude_unset=True)
    if "card_number" in changes:
        changes["card_number"] = coerce_card_number(changes["card_number"])
    if not changes:
        return _with_cmv_state(existing, datetime.now(timezone.utc))

    repricing = any(
        key in changes and changes[key] != existing.get(key) for key in PRICING_FIELDS
    )
    if repricing:
        changes.update(build_pending_cmv_update())

    updated = repo.update_item(user_id, item_id, changes)
    if not updated:
        raise HTTPException(status_code=404, detail="Collection item not found")
    if repricing:
        background_tasks.add_task(compute_cmv_in_background, repo, source, updated)
    return _with_cmv_state(updated, datetime.now(timezone.utc))


@router.delete("/{item_id}", response_model=DeleteResponse, summary="Remove a collection item")
@safe_handler(default_detail="Failed to delete collection item")
def delete_collection_item(
    item_id: str,
    user_id: str = Depends(get_user_id),
    repo: CollectionRepository = Depends(get_collection_repo),
):
    log_api_request(api_logger, "DELETE", f"/collection/{item_id}", {"user_id": user_id})
    if not repo.delete_item(user_id, item_id):
        raise HTTPException(status_code=404, detail="Collection item not found")
    return DeleteResponse(id=item_id, deleted=True)


@router.post(
    "/{item_id}/recompute-cmv",
    response_model=CmvRecomputeResponse,
    summary="Recompute one card's CMV now",
)
@safe_handler(default_detail="CMV recompute failed")
async def recompute_cmv(
    item_id: str,
    user_id: str = Depends(get_user_id),
    repo: CollectionRepository = Depends(get_collection_repo),
    source: ListingSource = Depends(get_listing_source),
):
    """Mark the row pending, compute, then write the final status in one update."""
    log_api_request(api_logger, "POST", f"/collection/{item_id}/recompute-cmv", {"user_id": user_id})
    item = _get_owned_item(repo, user_id, item_id)
    try:
        computation = await refresh_item_cmv(repo, source, item, mark_pending=True)
    except CmvPersistenceError as e:
        api_logger.error(f"❌ CMV recompute for {item_id} not persisted: {e}")
        raise HTTPException(status_code=500, detail="Failed to persist CMV")

    payload = computation.payload
    return CmvRecomputeResponse(
        id=item_id,
        cmv_status=payload["cmv_status"],
        cmv_value=payload["cmv_value"],
        cmv_confidence=payload["cmv_confidence"],
        source=computation.meta.source,
        duration_ms=computation.duration_ms,
    )

from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query

from src.api.v1.deps import (
    get_catalog_loader,
    get_listing_source,
    get_optional_user_id,
    get_search_recorder,
)
from src.handlers.comps_search import ListingSource, search_comps
from src.models.api import IdentityNormalizeRequest, WorthGradingRequest
from src.models.card import CompsQuery, SearchFilters
from src.utils.card_search import parse_card_search_payload, run_card_search
from src.utils.grading import worth_grading_from_grade_cmvs
from src.utils.identity import normalize
from src.utils.logger import api_logger, log_api_request, log_search_result, search_logger
from src.utils.safe_handler import safe_handler
from src.utils.stats import build_grade_cmvs

router = APIRouter()


def _record_search(recorder: Callable, user_id: Optional[str], query: str, kind: str):
    """Recent searches feed the assistant context; a failed write never fails the search."""
    if not user_id or not query:
        return
    try:
        recorder(user_id, query, kind)
    except Exception as e:
        search_logger.warning(f"⚠️ Failed to record recent search for {user_id}: {e}")


# ===============================================================
# COMPS
# ===============================================================


@router.get("/comps", summary="Sold comps and price stats for one card")
@safe_handler(default_detail="Comps search failed")
async def get_comps(
    player: str = Query(..., min_length=1, description="Player name"),
    year: Optional[str] = Query(None, description="Card year"),
    set_name: Optional[str] = Query(None, alias="set", description="Set name, e.g. 'Prizm'"),
    grade: Optional[str] = Query(None, description="Grade, e.g. 'PSA 10' (omit for all)"),
    parallel: Optional[str] = Query(None, description="Parallel, e.g. 'Silver'"),
    card_number: Optional[str] = Query(None, description="Card number"),
    window_days: int = Query(90, ge=1, le=365, description="Only comps sold in this window"),
    source: ListingSource = Depends(get_listing_source),
    user_id: Optional[str] = Depends(get_optional_user_id),
    recorder: Callable = Depends(get_search_recorder),
):
    """Fetch sold listings, keep the ones that match the card and reduce them to a CMV."""
    log_api_request(
        api_logger,
        "GET",
        "/comps",
        {"player": player, "year": year, "set": set_name, "grade": grade, "card_number": card_number},
    )
    query = CompsQuery(
        player=player.strip(),
        year=year,
        set_name=set_name,
        grade=grade,
        parallel=parallel,
        card_number=card_number,
    )
    result = await search_comps(source, query, window_days=window_days)
    _record_search(recorder, user_id, query.to_text(), "comps")
    return result.to_dict()


# ===============================================================
# CATALOG SEARCH
# ===============================================================


@router.post("/cards/search", summary="Catalog search with required and optional filters")
@safe_handler(default_detail="Card search failed")
async def search_cards(
    payload: Any = Body(..., description="{playerId, setSlug, year?, parallel?, grader?, grade?, cardNumber?, relaxOptional?, limit?}"),
    load_catalog: Callable[[SearchFilters], List[Dict[str, Any]]] = Depends(get_catalog_loader),
):
    """
    Required filters (``playerId``, ``setSlug``) are always enforced. When
    optional filters match nothing, ``canRelax`` says whether retrying with
    ``relaxOptional: true`` would find cards.
    """
    log_api_request(api_logger, "POST", "/cards/search", payload if isinstance(payload, dict) else None)
    filters = parse_card_search_payload(payload)
    rows = load_catalog(filters)
    result = run_card_search(rows, filters)
    log_search_result(search_logger, "catalog", f"{filters.player_id} {filters.set_slug}", result.count, len(rows))
    return result.to_dict()


# ===============================================================
# GRADING
# ===============================================================


@router.post("/grading/worth", summary="Is this raw card worth grading?")
@safe_handler(default_detail="Grading estimate failed")
async def worth_grading(
    request: WorthGradingRequest,
    source: ListingSource = Depends(get_listing_source),
):
    log_api_request(api_logger, "POST", "/grading/worth", {"player": request.player, "set": request.set_name})
    query = CompsQuery(
        player=request.player,
        year=request.year,
        set_name=request.set_name,
        parallel=request.parallel,
        card_number=request.card_number,
    )
    comps = await search_comps(source, query)
    grade_cmvs = build_grade_cmvs(comps.listings, cache_key=query.cache_key())
    result = worth_grading_from_grade_cmvs(
        grade_cmvs,
        request.probabilities,
        estimator_confidence=request.estimator_confidence,
        fees=request.fees,
    )
    return {
        **result.to_dict(),
        "gradeCmvs": {key: value.to_dict() for key, value in grade_cmvs.items()},
    }


# ===============================================================
# IDENTITY
# ===============================================================


@router.post("/identity/normalize", summary="Canonicalize identification output")
@safe_handler(default_detail="Identity normalization failed")
def normalize_identity_endpoint(request: IdentityNormalizeRequest):
    log_api_request(api_logger, "POST", "/identity/normalize")
    return normalize(request.signals, known_year=request.known_year).to_dict()

from fastapi import APIRouter, Depends, HTTPException

from src.api.v1.deps import get_collection_repo, get_listing_source, get_user_id
from src.cmv import (
    CMV_LOOKBACK_DAYS,
    ERROR_NO_COMPS,
    build_comps_query,
    build_failed_cmv_update,
    build_ready_cmv_update,
    is_production,
)
from src.db.collection import CollectionRepository
from src.handlers.comps_search import ListingSource, search_comps
from src.models.card import CmvConfidence
from src.utils.cmv_wiring import (
    CmvWiringDeps,
    WiringComps,
    WiringPersistInput,
    build_card_key,
    run_cmv_wiring_check,
)
from src.utils.logger import api_logger, log_api_request
from src.utils.safe_handler import safe_handler

router = APIRouter()


def require_non_production():
    if is_production():
        raise HTTPException(status_code=404, detail="Not found")


@router.post(
    "/cmv-wiring/{card_id}",
    summary="Compute, persist and read back one card's CMV",
    dependencies=[Depends(require_non_production)],
)
@safe_handler(default_detail="CMV wiring check failed")
async def cmv_wiring_check(
    card_id: str,
    user_id: str = Depends(get_user_id),
    repo: CollectionRepository = Depends(get_collection_repo),
    source: ListingSource = Depends(get_listing_source),
):
    log_api_request(api_logger, "POST", f"/dev/cmv-wiring/{card_id}", {"user_id": user_id})
    card = repo.get_item(user_id, card_id)
    if not card:
        raise HTTPException(status_code=404, detail="Collection item not found")

    async def fetch_comps() -> WiringComps:
        result = await search_comps(
            source, build_comps_query(card), window_days=CMV_LOOKBACK_DAYS, store=None
        )
        return WiringComps(
            comps_count=result.stats.count,
            cmv_mid=result.stats.cmv,
            cmv_low=result.stats.low,
            cmv_high=result.stats.high,
        )

    async def persist_cmv(data: WiringPersistInput):
        if data.cmv_mid is not None:
            payload = build_ready_cmv_update(
                data.cmv_mid, CmvConfidence.medium.value, timestamp=data.updated_at
            )
        else:
            payload = build_failed_cmv_update(ERROR_NO_COMPS, data.updated_at)
        return repo.update_cmv(user_id, card_id, payload)

    async def fetch_collection_items():
        return repo.list_items(user_id)

    async def fetch_dashboard_items():
        return repo.list_items(user_id)

    report = await run_cmv_wiring_check(
        card_id,
        build_card_key(card),
        CmvWiringDeps(
            fetch_comps=fetch_comps,
            persist_cmv=persist_cmv,
            fetch_collection_items=fetch_collection_items,
            fetch_dashboard_items=fetch_dashboard_items,
        ),
    )
    return report.to_dict()

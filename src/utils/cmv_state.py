"""UI-facing CMV state of a single collection row."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from src.models.card import CmvStatus, CmvUiState, parse_sold_at
from src.utils.values import get_est_cmv

NEW_CARD_CMV_WINDOW = timedelta(seconds=120)
CMV_PENDING_STALE = timedelta(seconds=15)


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return now if now.tzinfo else now.replace(tzinfo=timezone.utc)


def _base_timestamp(item: Dict[str, Any]) -> Optional[datetime]:
    for key in ("cmv_updated_at", "created_at", "cmv_last_updated"):
        if item.get(key):
            return parse_sold_at(item[key])
    return None


def get_collection_cmv_ui_state(
    item: Dict[str, Any], now: Optional[datetime] = None
) -> CmvUiState:
    """
    Classify a row from its own status flag, CMV presence and timestamps only.

    Rows written before ``cmv_status`` existed count as pending for two minutes
    after creation, then as unavailable.
    """
    now = _now(now)
    if get_est_cmv(item) is not None:
        return CmvUiState.ready

    status = item.get("cmv_status")
    if status == CmvStatus.pending.value:
        started = _base_timestamp(item)
        if started is not None and now - started >= CMV_PENDING_STALE:
            return CmvUiState.pending_stale
        return CmvUiState.pending

    if status == CmvStatus.failed.value:
        return CmvUiState.failed

    created_at = parse_sold_at(item.get("created_at"))
    if created_at is not None and now - created_at < NEW_CARD_CMV_WINDOW:
        return CmvUiState.pending

    return CmvUiState.unavailable


def is_new_card_cmv_pending(item: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    return get_collection_cmv_ui_state(item, now) in (
        CmvUiState.pending,
        CmvUiState.pending_stale,
    )

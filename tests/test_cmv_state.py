from datetime import datetime, timedelta, timezone

import pytest

from src.models.card import CmvUiState
from src.utils.cmv_state import get_collection_cmv_ui_state, is_new_card_cmv_pending

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def ago(**kwargs):
    return (NOW - timedelta(**kwargs)).isoformat()


@pytest.mark.parametrize(
    "item,expected",
    [
        ({"est_cmv": 25, "cmv_status": "pending"}, CmvUiState.ready),
        ({"est_cmv": 0}, CmvUiState.ready),
        ({"cmv_status": "pending", "cmv_updated_at": ago(seconds=5)}, CmvUiState.pending),
        ({"cmv_status": "pending", "cmv_updated_at": ago(seconds=20)}, CmvUiState.pending_stale),
        ({"cmv_status": "pending", "created_at": ago(minutes=10)}, CmvUiState.pending_stale),
        ({"cmv_status": "pending"}, CmvUiState.pending),
        ({"cmv_status": "failed", "created_at": ago(seconds=5)}, CmvUiState.failed),
        ({"created_at": ago(seconds=30)}, CmvUiState.pending),
        ({"created_at": ago(seconds=130)}, CmvUiState.unavailable),
        ({"created_at": ago(minutes=5)}, CmvUiState.unavailable),
        ({}, CmvUiState.unavailable),
    ],
)
def test_ui_state(item, expected):
    assert get_collection_cmv_ui_state(item, now=NOW) == expected


def test_naive_now_is_treated_as_utc():
    item = {"cmv_status": "pending", "cmv_updated_at": ago(seconds=5)}
    assert get_collection_cmv_ui_state(item, now=NOW.replace(tzinfo=None)) == CmvUiState.pending


def test_is_new_card_cmv_pending():
    assert is_new_card_cmv_pending({"created_at": ago(seconds=30)}, now=NOW) is True
    assert is_new_card_cmv_pending({"cmv_status": "pending", "cmv_updated_at": ago(minutes=1)}, now=NOW) is True
    assert is_new_card_cmv_pending({"est_cmv": 10}, now=NOW) is False
    assert is_new_card_cmv_pending({"cmv_status": "failed"}, now=NOW) is False

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.cmv import (
    ERROR_COMPUTE,
    ERROR_NO_COMPS,
    ERROR_TIMEOUT,
    adjust_price_for_grade,
    build_comps_query,
    build_failed_cmv_update,
    build_pending_cmv_update,
    build_ready_cmv_update,
    calculate_card_cmv_detailed,
    calculate_card_cmv_with_status,
    get_adjacent_grades,
    is_cmv_stale,
    rarity_adjustment,
    to_cmv_payload_from_result,
    weighted_median,
)
from src.models.card import Listing

CARD = {
    "id": "c1",
    "player_name": "Joe Burrow",
    "year": 2020,
    "set_name": "Prizm",
    "grade": "PSA 10",
}


def recent(title, price, image=None):
    sold_at = datetime.now(timezone.utc) - timedelta(days=3)
    return Listing(title=title, price=price, sold_at=sold_at, image=image)


class FakeSource:
    """Returns canned sold listings keyed by the requested grade."""

    name = "fake"

    def __init__(self, by_grade):
        self.by_grade = by_grade
        self.queries = []

    async def fetch_sold(self, query):
        self.queries.append(query)
        return list(self.by_grade.get(query.grade, []))


class SlowSource:
    name = "slow"

    async def fetch_sold(self, query):
        await asyncio.sleep(1)
        return []


class BrokenSource:
    name = "broken"

    async def fetch_sold(self, query):
        raise RuntimeError("boom")


@pytest.fixture(autouse=True)
def development_env(monkeypatch):
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.delenv("APP_ENV", raising=False)


# ---------- Payload builders ----------


def test_pending_payload():
    payload = build_pending_cmv_update("2026-10-01T00:00:00+00:00")
    assert payload["cmv_status"] == "pending"
    assert payload["cmv_confidence"] == "unavailable"
    assert payload["estimated_cmv"] is None
    assert payload["cmv_updated_at"] == payload["cmv_last_updated"] == "2026-10-01T00:00:00+00:00"


def test_ready_payload_mirrors_value():
    payload = build_ready_cmv_update(42.0, "high", timestamp="t")
    assert payload["estimated_cmv"] == payload["est_cmv"] == payload["cmv_value"] == 42.0
    assert payload["cmv_status"] == "ready"
    assert payload["cmv_error"] is None


def test_ready_payload_rejects_unknown_confidence():
    with pytest.raises(ValueError):
        build_ready_cmv_update(42.0, "certain")


def test_failed_payload_hides_error_in_production(monkeypatch):
    assert build_failed_cmv_update(ERROR_TIMEOUT)["cmv_error"] == "timeout"
    monkeypatch.setenv("ENV", "production")
    payload = build_failed_cmv_update(ERROR_TIMEOUT)
    assert payload["cmv_error"] is None
    assert payload["cmv_status"] == "failed"


@pytest.mark.parametrize(
    "result,status,error",
    [
        ({"estimated_cmv": 25.5}, "ready", None),
        ({"est_cmv": 10, "cmv_confidence": "high"}, "ready", None),
        ({"estimated_cmv": 0}, "failed", ERROR_NO_COMPS),
        ({"estimated_cmv": "12"}, "failed", ERROR_NO_COMPS),
        ({"estimated_cmv": None}, "failed", ERROR_NO_COMPS),
    ],
)
def test_to_cmv_payload_from_result(result, status, error):
    payload, error_code = to_cmv_payload_from_result(result)
    assert payload["cmv_status"] == status
    assert error_code == error


def test_ready_payload_defaults_to_low_confidence():
    payload, _ = to_cmv_payload_from_result({"estimated_cmv": 25.5})
    assert payload["cmv_confidence"] == "low"


# ---------- Staleness ----------

NOW = datetime(2026, 10, 1, tzinfo=timezone.utc)


def ago(**kwargs):
    return (NOW - timedelta(**kwargs)).isoformat()


@pytest.mark.parametrize(
    "item,expected",
    [
        ({"cmv_status": "ready", "cmv_value": 10, "cmv_updated_at": ago(days=1)}, False),
        ({"cmv_status": "ready", "cmv_value": 10, "cmv_updated_at": ago(days=8)}, True),
        ({"cmv_status": "ready", "cmv_value": 10}, True),
        ({"cmv_status": "failed", "cmv_updated_at": ago(minutes=1)}, False),
        ({"cmv_status": "failed", "cmv_updated_at": ago(minutes=10)}, True),
        ({"cmv_status": "pending", "cmv_updated_at": ago(seconds=1)}, True),
        ({"cmv_status": "pending", "est_cmv": 5, "cmv_updated_at": ago(seconds=1)}, True),
        ({"est_cmv": 5, "cmv_confidence": "unavailable", "cmv_last_updated": ago(minutes=10)}, True),
        ({"est_cmv": 5, "cmv_confidence": "medium", "cmv_last_updated": ago(days=1)}, False),
        ({"est_cmv": 5}, True),
        ({}, True),
    ],
)
def test_is_cmv_stale(item, expected):
    assert is_cmv_stale(item, now=NOW) is expected


# ---------- Cascade helpers ----------


def test_adjacent_grades():
    assert get_adjacent_grades("PSA 9") == ["PSA 8", "PSA 10"]
    assert get_adjacent_grades("BGS 9.5") == ["BGS 8.5", "BGS 9", "BGS 10"]
    assert get_adjacent_grades("raw") == []
    assert get_adjacent_grades(None) == []


def test_adjust_price_for_grade():
    adjusted, weight = adjust_price_for_grade(100, 9, 10)
    assert adjusted == pytest.approx(110)
    assert weight == pytest.approx(0.5)


def test_weighted_median():
    assert weighted_median([1, 2, 3], [1, 1, 1]) == 2
    assert weighted_median([1, 100], [3, 1]) == 1
    assert weighted_median([], []) is None
    assert weighted_median([1], [0]) is None


@pytest.mark.parametrize(
    "notes,expected",
    [("1/1 superfractor", 2.0), ("Gold /10", 1.5), ("Serial /25", 1.3), ("/199", 1.05), ("/500", 1.0), (None, 1.0)],
)
def test_rarity_adjustment(notes, expected):
    assert rarity_adjustment(notes) == expected


def test_build_comps_query_reads_notes():
    card = {
        "player_name": "Joe Burrow",
        "year": 2020,
        "grade": "Raw",
        "notes": "Parallel: Silver /99 | Insert: Kaboom",
    }
    query = build_comps_query(card)
    assert query.grade is None
    assert query.year == "2020"
    assert query.parallel == "Silver"
    assert query.keywords == ["Kaboom"]

    assert build_comps_query(CARD, grade="PSA 9").grade == "PSA 9"


# ---------- Cascade ----------


def test_exact_comps_give_high_confidence():
    source = FakeSource(
        {
            "PSA 10": [
                recent("2020 Prizm Joe Burrow PSA 10", 100, image="img"),
                recent("2020 Prizm Joe Burrow PSA 10", 120),
                recent("2020 Prizm Joe Burrow PSA 10", 140),
            ]
        }
    )
    result, meta = asyncio.run(calculate_card_cmv_detailed(CARD, source))
    assert result["estimated_cmv"] == 120.0
    assert result["cmv_confidence"] == "high"
    assert meta.source == "exact"
    assert meta.exact_comps_count == 3
    assert meta.best_image_url == "img"


def test_adjacent_grades_give_medium_confidence():
    source = FakeSource({"PSA 9": [recent("2020 Prizm Joe Burrow PSA 9", 100) for _ in range(3)]})
    result, meta = asyncio.run(calculate_card_cmv_detailed(CARD, source))
    assert result["estimated_cmv"] == 110.0
    assert result["cmv_confidence"] == "medium"
    assert meta.source == "adjacent"
    assert meta.adjacent_comps_count == 3


def test_raw_proxy_applies_rarity():
    card = {**CARD, "notes": "Serial /25"}
    source = FakeSource(
        {
            None: [
                recent("2020 Prizm Joe Burrow", 50),
                recent("2020 Prizm Joe Burrow", 60),
                recent("2020 Prizm Joe Burrow", 70),
            ]
        }
    )
    result, meta = asyncio.run(calculate_card_cmv_detailed(card, source))
    assert result["estimated_cmv"] == 78.0
    assert result["cmv_confidence"] == "low"
    assert meta.source == "proxy"


def test_thin_exact_comps_fall_back_to_low_confidence():
    source = FakeSource(
        {"PSA 10": [recent("2020 Prizm Joe Burrow PSA 10", 100), recent("2020 Prizm Joe Burrow PSA 10", 200)]}
    )
    result, meta = asyncio.run(calculate_card_cmv_detailed(CARD, source))
    assert result["estimated_cmv"] == 150.0
    assert result["cmv_confidence"] == "low"
    assert meta.source == "exact"


def test_no_comps_anywhere():
    result, meta = asyncio.run(calculate_card_cmv_detailed(CARD, FakeSource({})))
    assert result["estimated_cmv"] is None
    assert result["cmv_confidence"] == "unavailable"
    assert meta.source == "none"


def test_with_status_ready():
    source = FakeSource({"PSA 10": [recent("2020 Prizm Joe Burrow PSA 10", p) for p in (100, 120, 140)]})
    computation = asyncio.run(calculate_card_cmv_with_status(CARD, source))
    assert computation.payload["cmv_status"] == "ready"
    assert computation.payload["cmv_value"] == 120.0
    assert computation.error_code is None


def test_with_status_no_comps():
    computation = asyncio.run(calculate_card_cmv_with_status(CARD, FakeSource({})))
    assert computation.payload["cmv_status"] == "failed"
    assert computation.payload["cmv_error"] == ERROR_NO_COMPS
    assert computation.error_code == ERROR_NO_COMPS


def test_with_status_timeout():
    computation = asyncio.run(calculate_card_cmv_with_status(CARD, SlowSource(), timeout=0.01))
    assert computation.payload["cmv_status"] == "failed"
    assert computation.error_code == ERROR_TIMEOUT


def test_with_status_compute_error():
    computation = asyncio.run(calculate_card_cmv_with_status(CARD, BrokenSource()))
    assert computation.payload["cmv_status"] == "failed"
    assert computation.error_code == ERROR_COMPUTE

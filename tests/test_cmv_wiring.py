import asyncio

from src.utils.cmv_wiring import (
    CmvWiringDeps,
    WiringComps,
    build_card_key,
    has_null_to_zero_bug,
    numbers_match,
    run_cmv_wiring_check,
)
from src.utils.values import CollectionSummary

UPDATED_AT = "2026-10-01T00:00:00+00:00"


def make_deps(items, comps, dashboard_override=None):
    async def fetch_comps():
        return comps

    async def persist_cmv(data):
        for item in items:
            if item["id"] == "c1":
                item["est_cmv"] = data.cmv_mid
                item["cmv_updated_at"] = data.updated_at
                return dict(item)
        return None

    async def fetch_collection_items():
        return [dict(item) for item in items]

    async def fetch_dashboard_items():
        if dashboard_override is not None:
            return dashboard_override
        return [dict(item) for item in items]

    return CmvWiringDeps(
        fetch_comps=fetch_comps,
        persist_cmv=persist_cmv,
        fetch_collection_items=fetch_collection_items,
        fetch_dashboard_items=fetch_dashboard_items,
        now=lambda: UPDATED_AT,
    )


def test_build_card_key():
    card = {"player_name": " Joe Burrow ", "year": 2020, "set_name": "", "grade": "PSA 10"}
    assert build_card_key(card) == "joe burrow|2020|psa 10"


def test_numbers_match():
    assert numbers_match(None, None)
    assert not numbers_match(None, 0)
    assert numbers_match(10.001, 10.0)
    assert not numbers_match(10.5, 10.0)


def test_has_null_to_zero_bug():
    assert has_null_to_zero_bug(CollectionSummary(cards_with_cmv=0, total_cmv_value=0.0))
    assert has_null_to_zero_bug(CollectionSummary(cards_with_cmv=2, total_cmv_value=None))
    assert not has_null_to_zero_bug(CollectionSummary(cards_with_cmv=0, total_cmv_value=None))


def test_consistent_pipeline_passes_every_check():
    items = [
        {"id": "c1", "player_name": "Joe Burrow", "purchase_price": 50},
        {"id": "c2", "est_cmv": 30, "purchase_price": 20},
    ]
    deps = make_deps(items, WiringComps(comps_count=5, cmv_mid=120.0, cmv_low=100.0, cmv_high=140.0))

    report = asyncio.run(run_cmv_wiring_check("c1", "joe burrow", deps))

    assert report.checks == {
        "compsFetched": True,
        "cmvComputed": True,
        "cmvPersisted": True,
        "collectionReturnsCmv": True,
        "dashboardTotalsMatchCollection": True,
        "nullToZeroBugPresent": False,
    }
    data = report.to_dict()
    assert data["updatedAt"] == UPDATED_AT
    assert data["collectionItem"]["est_cmv"] == 120.0
    assert data["collectionSummary"]["totalDisplayValue"] == 150.0


def test_no_comps_keeps_totals_null():
    items = [{"id": "c1", "player_name": "Joe Burrow"}]
    report = asyncio.run(run_cmv_wiring_check("c1", "joe burrow", make_deps(items, WiringComps(0, None))))

    assert report.checks["compsFetched"] is False
    assert report.checks["cmvComputed"] is False
    assert report.checks["cmvPersisted"] is True
    assert report.checks["nullToZeroBugPresent"] is False
    assert report.collection_summary.total_cmv_value is None


def test_diverging_dashboard_is_flagged():
    items = [{"id": "c1", "purchase_price": 50}]
    dashboard = [{"id": "c1", "est_cmv": 0, "purchase_price": 50}]
    report = asyncio.run(
        run_cmv_wiring_check("c1", "c1", make_deps(items, WiringComps(3, 80.0), dashboard_override=dashboard))
    )
    assert report.checks["collectionReturnsCmv"] is True
    assert report.checks["dashboardTotalsMatchCollection"] is False

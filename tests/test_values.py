import pytest

from src.utils.values import (
    compute_collection_summary,
    compute_losers,
    compute_performers,
    get_display_value,
    get_est_cmv,
    get_unrealized_pl,
    get_value_source,
    is_below_target,
)


@pytest.mark.parametrize(
    "item,expected",
    [
        ({"est_cmv": 10, "estimated_cmv": 20}, 10.0),
        ({"estimated_cmv": "12.5"}, 12.5),
        ({"est_cmv": None, "cmv": 7}, 7.0),
        ({"est_cmv": True}, None),
        ({"est_cmv": float("nan")}, None),
        ({"est_cmv": ""}, None),
        ({"est_cmv": 0}, 0.0),
        ({}, None),
    ],
)
def test_get_est_cmv(item, expected):
    assert get_est_cmv(item) == expected


def test_display_value_precedence():
    assert get_display_value({"est_cmv": 90, "purchase_price": 50}) == 90
    assert get_display_value({"purchase_price": 50}) == 50
    assert get_display_value({}) is None
    assert get_value_source({"est_cmv": 0}) == "cmv"
    assert get_value_source({"purchase_price": 50}) == "cost_basis"
    assert get_value_source({}) == "none"


def test_unrealized_pl_needs_both():
    assert get_unrealized_pl({"est_cmv": 90, "purchase_price": 50}) == 40
    assert get_unrealized_pl({"est_cmv": 90}) is None


def test_summary_mixed_collection():
    items = [
        {"est_cmv": 100, "purchase_price": 60},
        {"purchase_price": 40},
        {},
    ]
    summary = compute_collection_summary(items)

    assert summary.card_count == 3
    assert summary.total_display_value == 140
    assert summary.total_cmv_value == 100
    assert summary.total_cost_basis == 100
    assert summary.total_unrealized_pl == 40
    assert summary.total_unrealized_pl_pct == pytest.approx(40 / 60)
    assert (summary.cards_with_cmv, summary.cards_with_cost_basis, summary.cards_with_both) == (1, 2, 1)


def test_summary_without_any_cmv_keeps_none():
    summary = compute_collection_summary([{"purchase_price": 40}, {"purchase_price": 10}])
    data = summary.to_dict()
    assert data["totalCmvValue"] is None
    assert data["totalUnrealizedPL"] is None
    assert data["totalUnrealizedPLPct"] is None
    assert data["totalDisplayValue"] == 50


def test_zero_cmv_is_measured():
    summary = compute_collection_summary([{"est_cmv": 0, "purchase_price": 0}])
    assert summary.total_cmv_value == 0
    assert summary.total_unrealized_pl == 0
    # zero cost basis gives no percentage
    assert summary.total_unrealized_pl_pct is None


def test_empty_collection():
    data = compute_collection_summary([]).to_dict()
    assert data["cardCount"] == 0
    assert data["totalDisplayValue"] == 0
    assert data["totalCmvValue"] is None


def test_performers_and_losers():
    items = [
        {"id": "a", "est_cmv": 200, "purchase_price": 100},
        {"id": "b", "est_cmv": 50, "purchase_price": 100},
        {"id": "c", "est_cmv": 120, "purchase_price": 100},
        {"id": "d", "purchase_price": 100},
    ]
    top = compute_performers(items, limit=4)
    assert [m.item["id"] for m in top] == ["a", "c", "b", "d"]
    assert top[0].to_dict()["pctChange"] == 1.0
    assert top[-1].to_dict()["dollarChange"] is None

    losers = compute_losers(items)
    assert [m.item["id"] for m in losers] == ["b"]


@pytest.mark.parametrize(
    "item,expected",
    [
        ({"target_price": 100, "estimated_cmv": 90}, True),
        ({"target_price": 100, "estimated_cmv": 100}, True),
        ({"target_price": 100, "estimated_cmv": 110}, False),
        ({"target_price": 100, "estimated_cmv": 0}, False),
        ({"target_price": 100}, False),
        ({"estimated_cmv": 50}, False),
    ],
)
def test_is_below_target(item, expected):
    assert is_below_target(item) is expected

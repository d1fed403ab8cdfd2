from datetime import datetime, timedelta, timezone

import pytest

from src.models.card import CmvMethod, Listing
from src.utils.cache import InMemoryTTLStore
from src.utils.stats import (
    build_grade_cmv,
    build_grade_cmvs,
    calculate_stats,
    filter_by_grade,
    filter_outliers,
    filter_recent_comps,
    normalize_grade,
    trimmed_mean,
    valid_prices,
)

NOW = datetime(2026, 10, 1, tzinfo=timezone.utc)


def sold(title, price, days_ago=1):
    return Listing(title=title, price=price, sold_at=NOW - timedelta(days=days_ago))


def test_no_prices_means_no_value():
    result = build_grade_cmv([])
    assert result.price is None
    assert result.n == 0
    assert result.method == CmvMethod.none


def test_unpriced_listings_are_ignored():
    result = build_grade_cmv([Listing(title="a"), Listing(title="b", price=float("nan"))])
    assert result.price is None
    assert result.n == 0


def test_zero_is_a_real_price():
    result = build_grade_cmv([sold("a", 0), sold("b", 0), sold("c", 0)])
    assert result.price == 0.0
    assert result.n == 3


@pytest.mark.parametrize(
    "prices,expected,method",
    [
        ([10, 20, 100], 20.0, CmvMethod.median),
        ([10, 20, 30, 40], 25.0, CmvMethod.median),
        ([10, 30], 20.0, CmvMethod.trimmed_mean),
        ([42.5], 42.5, CmvMethod.trimmed_mean),
    ],
)
def test_method_selection(prices, expected, method):
    result = build_grade_cmv([sold(str(i), p) for i, p in enumerate(prices)])
    assert result.price == expected
    assert result.method == method
    assert result.n == len(prices)


def test_last_sold_at_is_latest_sale():
    result = build_grade_cmv([sold("a", 10, days_ago=5), sold("b", 12, days_ago=2)])
    assert result.last_sold_at == NOW - timedelta(days=2)


def test_trimmed_mean_drops_both_ends():
    # 10 values at 15% trims one from each end
    values = [1, 10, 10, 10, 10, 10, 10, 10, 10, 1000]
    assert trimmed_mean(values) == 10.0


def test_valid_prices():
    assert valid_prices([1, "2.5", None, "x", -3, float("inf"), True, 0]) == [1.0, 2.5, 0.0]


def test_filter_outliers():
    assert filter_outliers([10.0, 2000.0]) == [10.0, 2000.0]
    assert 1000.0 not in filter_outliers([10.0] * 10 + [1000.0])
    assert filter_outliers([0.1, 10.0, 11.0, 12.0]) == [10.0, 11.0, 12.0]


def test_calculate_stats():
    stats = calculate_stats([sold("a", 10), sold("b", 20), sold("c", 30), Listing(title="d")])
    assert stats.to_dict() == {"cmv": 20.0, "avg": 20.0, "low": 10.0, "high": 30.0, "count": 3}


def test_calculate_stats_empty():
    assert calculate_stats([]).to_dict() == {
        "cmv": None,
        "avg": None,
        "low": None,
        "high": None,
        "count": 0,
    }


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("psa10", "PSA 10"),
        ("PSA  9", "PSA 9"),
        ("bgs 9.5", "BGS 9.5"),
        ("9", "PSA 9"),
        ("ungraded", "RAW"),
        ("Raw", "RAW"),
        ("", None),
        (None, None),
    ],
)
def test_normalize_grade(raw, expected):
    assert normalize_grade(raw) == expected


def test_filter_by_grade_buckets():
    psa10 = sold("Burrow Prizm PSA 10", 500)
    psa9 = sold("Burrow Prizm PSA 9", 200)
    raw = sold("Burrow Prizm", 50)
    listings = [psa10, psa9, raw]

    assert filter_by_grade(listings, "psa10") == [psa10]
    assert filter_by_grade(listings, "raw") == [raw]
    assert filter_by_grade(listings, None) == listings


def test_filter_by_grade_reads_structured_grade_fields():
    titled = sold("Burrow Prizm PSA 10", 500)
    structured = Listing(title="Burrow Prizm", price=510, grader="PSA", grade="10")
    bgs = Listing(title="Burrow Prizm", price=300, grader="BGS", grade="9.5")
    raw = sold("Burrow Prizm", 45)
    listings = [titled, structured, bgs, raw]

    assert filter_by_grade(listings, "PSA 10") == [titled, structured]
    assert filter_by_grade(listings, "BGS 9.5") == [bgs]
    assert filter_by_grade(listings, "raw") == [raw]


def test_filter_recent_comps_drops_old_and_undated():
    recent = sold("a", 10, days_ago=10)
    old = sold("b", 10, days_ago=120)
    undated = Listing(title="c", price=10)
    assert filter_recent_comps([recent, old, undated], 90, now=NOW) == [recent]


def test_build_grade_cmvs_buckets_and_cache():
    store = InMemoryTTLStore()
    listings = [
        sold("Burrow PSA 10", 500),
        sold("Burrow PSA 10", 520),
        sold("Burrow PSA 10", 480),
        sold("Burrow raw", 60),
        sold("Burrow PSA 9", 200, days_ago=200),
    ]

    result = build_grade_cmvs(listings, cache_key="burrow", store=store, now=NOW)
    assert result["psa10"].price == 500.0
    assert result["raw"].price == 60.0
    # outside the window
    assert result["psa9"].price is None
    assert set(result) == {"raw", "psa10", "psa9", "psa8", "bgs95", "bgs9", "bgs85"}

    cached = build_grade_cmvs([], cache_key="burrow", store=store, now=NOW)
    assert cached is result

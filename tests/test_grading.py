import pytest

from src.models.card import Confidence, GradeCmv, GradingRating
from src.utils.grading import (
    compute_worth_grading,
    is_raw_listing,
    normalize_probabilities,
    pick_fallback,
    worth_grading_from_grade_cmvs,
)

PSA_PROBS = {"10": 0.3, "9": 0.5, "8": 0.15, "7_or_lower": 0.05}
BGS_PROBS = {"9.5": 0.2, "9": 0.5, "8.5": 0.2, "8_or_lower": 0.1}
PROBS = {"psa": PSA_PROBS, "bgs": BGS_PROBS}

RAW = GradeCmv(price=50, n=10)
PSA = {
    "psa10": GradeCmv(price=400, n=8),
    "psa9": GradeCmv(price=150, n=12),
    "psa8": GradeCmv(price=80, n=6),
}
BGS = {
    "bgs95": GradeCmv(price=300, n=5),
    "bgs9": GradeCmv(price=120, n=5),
    "bgs85": GradeCmv(price=70, n=5),
}


@pytest.mark.parametrize(
    "title,expected",
    [
        ("2020 Prizm Burrow PSA 10", False),
        ("2020 Prizm Burrow", True),
        ("2020 Prizm Burrow graded", False),
        ("2020 Prizm Burrow raw not graded", True),
        (None, True),
    ],
)
def test_is_raw_listing(title, expected):
    assert is_raw_listing(title) is expected


def test_normalize_probabilities():
    assert normalize_probabilities({"10": 2, "9": 2}) == {"10": 0.5, "9": 0.5}
    assert normalize_probabilities({"10": 0, "9": -1}) == {"10": 0.0, "9": 0.0}


def test_pick_fallback_prefers_nearest_grade_then_raw():
    grades = {"psa10": GradeCmv(), "psa9": GradeCmv(price=150), "psa8": GradeCmv(price=80)}
    assert pick_fallback("psa9", grades, RAW) == (150, False)
    assert pick_fallback("psa10", grades, RAW) == (150, True)
    assert pick_fallback("psa10", {"psa10": GradeCmv()}, RAW) == (50, True)


def test_strong_case_picks_best_grader():
    result = compute_worth_grading(RAW, PSA, BGS, PROBS)

    assert result.best_grader == "psa"
    assert result.expected_value == pytest.approx(209.5)
    assert result.net_gain == pytest.approx(119.5)
    assert result.roi == pytest.approx(1.3278)
    assert result.rating == GradingRating.strong_yes
    assert result.confidence == Confidence.medium

    psa, bgs = result.options
    assert bgs.net_gain == pytest.approx(34.0)
    assert psa.max_n == 12


def test_thin_raw_comps_cap_rating_at_maybe():
    thin_raw = GradeCmv(price=50, n=2)
    result = compute_worth_grading(thin_raw, PSA, BGS, PROBS, Confidence.high)
    assert result.confidence == Confidence.low
    assert result.rating == GradingRating.maybe
    assert "Only 2 raw sale(s) found." in result.explanation


def test_fallback_downgrades_high_confidence():
    psa = {**PSA, "psa10": GradeCmv(price=None, n=0)}
    result = compute_worth_grading(RAW, psa, BGS, PROBS, Confidence.high)

    assert result.best_grader == "psa"
    assert result.expected_value == pytest.approx(134.5)
    assert result.confidence == Confidence.medium
    assert result.rating == GradingRating.yes
    assert any("nearest grade" in line for line in result.explanation)


def test_no_raw_value():
    result = compute_worth_grading(GradeCmv(), PSA, BGS, PROBS)
    assert result.rating == GradingRating.no
    assert result.confidence == Confidence.low
    assert result.best_grader == "none"
    assert result.net_gain is None


def test_fee_override():
    result = compute_worth_grading(RAW, PSA, BGS, PROBS, fees={"psa": 100})
    assert result.options[0].fee == 100.0
    assert result.options[0].net_gain == pytest.approx(59.5)


def test_worth_grading_from_grade_cmvs_splits_buckets():
    grade_cmvs = {"raw": RAW, **PSA, **BGS}
    result = worth_grading_from_grade_cmvs(grade_cmvs, PROBS)
    assert result.to_dict()["rating"] == "strong_yes"
    assert result.raw_price == 50

"""
Worth-grading calculator.

Given a raw CMV, per-grade CMVs for PSA and BGS, and a grade-probability
estimate, work out the expected graded value and whether sending the card in
pays for the fee.
"""

import re
from typing import Dict, List, Optional, Tuple

from src.models.card import (
    Confidence,
    GradeCmv,
    GradingOption,
    GradingRating,
    WorthGradingResult,
)
from src.utils.stats import GRADE_PATTERN

DEFAULT_GRADE_FEES = {"psa": 40.0, "bgs": 55.0}

# probability bucket -> grade price key; the "or lower" bucket is valued at raw
PSA_BUCKETS = [("10", "psa10"), ("9", "psa9"), ("8", "psa8"), ("7_or_lower", None)]
BGS_BUCKETS = [("9.5", "bgs95"), ("9", "bgs9"), ("8.5", "bgs85"), ("8_or_lower", None)]

GRADE_NUMBERS = {
    "psa10": 10.0,
    "psa9": 9.0,
    "psa8": 8.0,
    "bgs95": 9.5,
    "bgs9": 9.0,
    "bgs85": 8.5,
}

MIN_RAW_COMPS = 5
MIN_GRADED_COMPS = 3

RAW_MARKER = re.compile(r"\b(raw|ungraded)\b", re.IGNORECASE)


def is_raw_listing(title: Optional[str]) -> bool:
    """A listing is raw unless its title carries a grader + grade."""
    text = title or ""
    if GRADE_PATTERN.search(text):
        return False
    return bool(RAW_MARKER.search(text)) or "graded" not in text.lower()


def normalize_probabilities(probs: Dict[str, float]) -> Dict[str, float]:
    """Scale a bucket distribution to sum to 1. An all-zero input is returned as zeros."""
    cleaned = {k: max(0.0, float(v or 0)) for k, v in probs.items()}
    total = sum(cleaned.values())
    divisor = total if total > 0 else 1.0
    return {k: v / divisor for k, v in cleaned.items()}


def pick_fallback(
    key: str, grades: Dict[str, GradeCmv], raw: GradeCmv
) -> Tuple[Optional[float], bool]:
    """
    Price for one grade bucket.

    Direct price if present, else the nearest grade (by numeric distance) that
    has one, else the raw price. The flag is True whenever a substitute was used.
    """
    direct = grades.get(key)
    if direct is not None and direct.price is not None:
        return direct.price, False

    target = GRADE_NUMBERS.get(key)
    if target is not None:
        candidates = sorted(
            (k for k in grades if k in GRADE_NUMBERS and k != key),
            key=lambda k: abs(GRADE_NUMBERS[k] - target),
        )
        for candidate in candidates:
            if grades[candidate].price is not None:
                return grades[candidate].price, True

    return raw.price, True


def _expected_value(
    buckets: List[Tuple[str, Optional[str]]],
    grades: Dict[str, GradeCmv],
    probs: Dict[str, float],
    raw: GradeCmv,
) -> Tuple[float, bool, int]:
    ev = 0.0
    used_fallback = False
    max_n = 0
    for bucket, key in buckets:
        p = probs.get(bucket, 0.0)
        if key is None:
            ev += p * float(raw.price or 0)
            continue
        price, fallback = pick_fallback(key, grades, raw)
        used_fallback = used_fallback or fallback
        ev += p * float(price or 0)
        if key in grades:
            max_n = max(max_n, grades[key].n)
    return ev, used_fallback, max_n


def _option(
    grader: str,
    buckets: List[Tuple[str, Optional[str]]],
    grades: Dict[str, GradeCmv],
    probs: Dict[str, float],
    raw: GradeCmv,
    fee: float,
) -> GradingOption:
    ev, used_fallback, max_n = _expected_value(buckets, grades, probs, raw)
    raw_price = float(raw.price or 0)
    net = ev - raw_price - fee
    denominator = raw_price + fee
    roi = net / denominator if denominator > 0 else 0.0
    return GradingOption(
        grader=grader,
        fee=fee,
        expected_value=round(ev, 2),
        net_gain=round(net, 2),
        roi=round(roi, 4),
        used_fallback=used_fallback,
        max_n=max_n,
    )


def _rate(net: float, roi: float) -> GradingRating:
    if net >= 60 and roi >= 0.25:
        return GradingRating.strong_yes
    if net >= 30 and roi >= 0.15:
        return GradingRating.yes
    if net >= 10 or roi >= 0.08:
        return GradingRating.maybe
    return GradingRating.no


def compute_worth_grading(
    raw: GradeCmv,
    psa: Dict[str, GradeCmv],
    bgs: Dict[str, GradeCmv],
    probabilities: Dict[str, Dict[str, float]],
    estimator_confidence: Confidence = Confidence.medium,
    fees: Optional[Dict[str, float]] = None,
) -> WorthGradingResult:
    """
    Expected-value comparison of grading with PSA vs BGS.

    ``probabilities`` is ``{"psa": {"10", "9", "8", "7_or_lower"}, "bgs": {"9.5",
    "9", "8.5", "8_or_lower"}}``; each side is normalized before use.
    """
    fees = {**DEFAULT_GRADE_FEES, **(fees or {})}

    if raw.price is None:
        return WorthGradingResult(
            raw_price=None,
            expected_value=None,
            net_gain=None,
            roi=None,
            rating=GradingRating.no,
            confidence=Confidence.low,
            best_grader="none",
            explanation=["No raw market value, so grading upside cannot be measured."],
        )

    psa_probs = normalize_probabilities(probabilities.get("psa", {}))
    bgs_probs = normalize_probabilities(probabilities.get("bgs", {}))

    psa_option = _option("psa", PSA_BUCKETS, psa, psa_probs, raw, float(fees["psa"]))
    bgs_option = _option("bgs", BGS_BUCKETS, bgs, bgs_probs, raw, float(fees["bgs"]))
    best = psa_option if psa_option.net_gain >= bgs_option.net_gain else bgs_option

    confidence = Confidence(estimator_confidence)
    if raw.n < MIN_RAW_COMPS or best.max_n < MIN_GRADED_COMPS:
        confidence = Confidence.low
    elif best.used_fallback and confidence == Confidence.high:
        confidence = Confidence.medium

    rating = _rate(best.net_gain, best.roi)
    if confidence == Confidence.low and rating != GradingRating.no:
        rating = GradingRating.maybe

    explanation = [
        f"Raw value ${raw.price:.2f}; {best.grader.upper()} expected value "
        f"${best.expected_value:.2f} after a ${best.fee:.0f} fee nets ${best.net_gain:.2f} "
        f"({best.roi * 100:.0f}% ROI).",
    ]
    if best.used_fallback:
        explanation.append("Some grade prices were missing and filled from the nearest grade.")
    if raw.n < MIN_RAW_COMPS:
        explanation.append(f"Only {raw.n} raw sale(s) found.")
    if best.max_n < MIN_GRADED_COMPS:
        explanation.append("Few graded sales found for this card.")

    return WorthGradingResult(
        raw_price=raw.price,
        expected_value=best.expected_value,
        net_gain=best.net_gain,
        roi=best.roi,
        rating=rating,
        confidence=confidence,
        best_grader=best.grader,
        options=[psa_option, bgs_option],
        explanation=explanation,
    )


def worth_grading_from_grade_cmvs(
    grade_cmvs: Dict[str, GradeCmv],
    probabilities: Dict[str, Dict[str, float]],
    estimator_confidence: Confidence = Confidence.medium,
    fees: Optional[Dict[str, float]] = None,
) -> WorthGradingResult:
    """Split a ``build_grade_cmvs`` map into raw/PSA/BGS and run the calculator."""
    raw = grade_cmvs.get("raw") or GradeCmv()
    psa = {k: v for k, v in grade_cmvs.items() if k.startswith("psa")}
    bgs = {k: v for k, v in grade_cmvs.items() if k.startswith("bgs")}
    return compute_worth_grading(raw, psa, bgs, probabilities, estimator_confidence, fees)

"""Price reduction: matched sold listings -> a single robust market value.

    >= 3 prices  -> median
    1-2 prices   -> trimmed mean
    0 prices     -> no value (None), never 0
"""

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import numpy as np

from src.models.card import CmvMethod, CompStats, GradeCmv, Listing
from src.utils.cache import GRADE_CMV_TTL_SECONDS, TTLStore, grade_cmv_cache

TRIM_RATIO = 0.15
DEFAULT_WINDOW_DAYS = 90
OUTLIER_MIN_PRICE = 0.5
OUTLIER_MAX_PRICE = 50000

GRADE_PATTERN = re.compile(r"\b(PSA|BGS|SGC|CGC)\s*(\d+(?:\.\d+)?)\b", re.IGNORECASE)

GRADE_KEYS = {
    "raw": "RAW",
    "psa10": "PSA 10",
    "psa9": "PSA 9",
    "psa8": "PSA 8",
    "bgs95": "BGS 9.5",
    "bgs9": "BGS 9",
    "bgs85": "BGS 8.5",
}


def round_cents(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return round(float(value), 2)


def valid_prices(values: Iterable[Optional[float]]) -> List[float]:
    """Finite, non-negative prices. 0 is a real price; None and NaN are not."""
    prices = []
    for value in values:
        if value is None or isinstance(value, bool):
            continue
        try:
            price = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(price) and price >= 0:
            prices.append(price)
    return prices


def median(values: List[float]) -> Optional[float]:
    if not values:
        return None
    return float(np.median(np.asarray(values, dtype=float)))


def trimmed_mean(values: List[float], trim: float = TRIM_RATIO) -> Optional[float]:
    """Mean after dropping floor(n * trim) values from each end."""
    if not values:
        return None
    ordered = sorted(values)
    k = int(math.floor(len(ordered) * trim))
    kept = ordered[k : len(ordered) - k] if len(ordered) - 2 * k > 0 else ordered
    return float(np.mean(kept))


def filter_outliers(prices: List[float]) -> List[float]:
    """With 3+ prices: drop obvious junk, then anything beyond 2 standard deviations."""
    if len(prices) < 3:
        return list(prices)
    filtered = [p for p in prices if OUTLIER_MIN_PRICE <= p <= OUTLIER_MAX_PRICE]
    if len(filtered) < 3:
        return filtered
    arr = np.asarray(filtered, dtype=float)
    mean = arr.mean()
    std = arr.std()
    lower, upper = mean - 2 * std, mean + 2 * std
    return [p for p in filtered if lower <= p <= upper]


# ============================================================================
# GRADE + RECENCY BUCKETING
# ============================================================================


def normalize_grade(grade: Optional[str]) -> Optional[str]:
    """'psa10' -> 'PSA 10', '9' -> 'PSA 9', 'ungraded' -> 'RAW'."""
    if grade is None:
        return None
    upper = re.sub(r"\s+", " ", str(grade).upper()).strip()
    if not upper:
        return None
    if upper in ("RAW", "UNGRADED"):
        return "RAW"
    match = re.fullmatch(r"(PSA|BGS|SGC|CGC)\s*(\d+(?:\.\d+)?)", upper)
    if match:
        return f"{match.group(1)} {match.group(2)}"
    if re.fullmatch(r"\d+(?:\.\d+)?", upper):
        return f"PSA {upper}"
    return upper


def extract_grade(title: Optional[str]) -> Optional[str]:
    match = GRADE_PATTERN.search(title or "")
    if not match:
        return None
    return f"{match.group(1).upper()} {match.group(2)}"


def is_raw_title(title: Optional[str]) -> bool:
    text = title or ""
    return not GRADE_PATTERN.search(text) and "graded" not in text.lower()


def listing_grade(listing: Listing) -> Optional[str]:
    """Grade from the title, else from the source's structured grader/grade fields."""
    from_title = extract_grade(listing.title)
    if from_title or not listing.grade:
        return from_title
    return normalize_grade(f"{listing.grader or ''} {listing.grade}")


def filter_by_grade(listings: List[Listing], grade: Optional[str]) -> List[Listing]:
    target = normalize_grade(grade)
    if not target:
        return list(listings)
    if target == "RAW":
        return [
            item
            for item in listings
            if is_raw_title(item.title) and listing_grade(item) in (None, "RAW")
        ]
    return [item for item in listings if listing_grade(item) == target]


def filter_recent_comps(
    listings: List[Listing],
    window_days: int = DEFAULT_WINDOW_DAYS,
    now: Optional[datetime] = None,
) -> List[Listing]:
    """Keep comps sold inside the window. Undated comps are dropped."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    cutoff = now - timedelta(days=window_days)
    return [item for item in listings if item.sold_at is not None and item.sold_at >= cutoff]


# ============================================================================
# REDUCERS
# ============================================================================


def build_grade_cmv(
    listings: List[Listing],
    grade: Optional[str] = None,
    window_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> GradeCmv:
    """Reduce listings (optionally narrowed to a grade bucket and window) to one value."""
    if grade is not None:
        listings = filter_by_grade(listings, grade)
    if window_days is not None:
        listings = filter_recent_comps(listings, window_days, now)

    priced = [item for item in listings if valid_prices([item.price])]
    prices = [float(item.price) for item in priced]
    if not prices:
        return GradeCmv(price=None, n=0, method=CmvMethod.none)

    if len(prices) >= 3:
        value, method = median(prices), CmvMethod.median
    else:
        value, method = trimmed_mean(prices), CmvMethod.trimmed_mean

    sold_dates = [item.sold_at for item in priced if item.sold_at is not None]
    return GradeCmv(
        price=round_cents(value),
        n=len(prices),
        method=method,
        last_sold_at=max(sold_dates) if sold_dates else None,
    )


def calculate_stats(comps: List[Listing]) -> CompStats:
    """Point estimate plus avg/low/high/count over the full matched set."""
    prices = valid_prices(item.price for item in comps)
    if not prices:
        return CompStats()
    return CompStats(
        cmv=build_grade_cmv(comps).price,
        avg=round_cents(float(np.mean(prices))),
        low=round_cents(min(prices)),
        high=round_cents(max(prices)),
        count=len(prices),
    )


def build_grade_cmvs(
    listings: List[Listing],
    cache_key: Optional[str] = None,
    store: TTLStore = grade_cmv_cache,
    window_days: int = DEFAULT_WINDOW_DAYS,
    now: Optional[datetime] = None,
) -> Dict[str, GradeCmv]:
    """Per-grade values for every tracked grade bucket, cached for a day under ``cache_key``."""
    if cache_key:
        cached = store.get(f"grade_cmv:{cache_key}")
        if cached is not None:
            return cached

    recent = filter_recent_comps(listings, window_days, now)
    result = {key: build_grade_cmv(recent, grade) for key, grade in GRADE_KEYS.items()}

    if cache_key:
        store.set(f"grade_cmv:{cache_key}", result, GRADE_CMV_TTL_SECONDS)
    return result

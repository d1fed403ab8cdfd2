"""
Card CMV computation and the persisted CMV payloads.

The cascade, first hit wins:
    exact comps (3+)         -> median                      high
    adjacent grades (3+)     -> weighted median, adjusted   medium
    raw/ungraded proxy (3+)  -> median x rarity multiplier  low
    exact comps (1-2)        -> median                      low
    nothing                  -> no value                    unavailable

Every write to a collection row goes through one of the ``build_*_cmv_update``
builders so value, status, confidence and timestamps always move together.
"""

import asyncio
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from src.handlers.comps_search import ListingSource, search_comps
from src.models.card import CmvConfidence, CmvStatus, CompsQuery, Listing, parse_sold_at
from src.utils.logger import cmv_logger, log_cmv_compute
from src.utils.stats import filter_by_grade, median, round_cents, valid_prices

CMV_LOOKBACK_DAYS = 90
CMV_STALE = timedelta(days=7)
CMV_FAILED_RETRY = timedelta(minutes=5)
CMV_COMPUTE_TIMEOUT_SECONDS = 12.0

ERROR_TIMEOUT = "timeout"
ERROR_NO_COMPS = "no_comps"
ERROR_COMPUTE = "compute_error"

MIN_COMPS = 3

GRADING_OPTIONS = [
    "PSA 10", "PSA 9", "PSA 8", "PSA 7", "PSA 6", "PSA 5",
    "BGS 10", "BGS 9.5", "BGS 9", "BGS 8.5", "BGS 8", "BGS 7.5",
    "SGC 10", "SGC 9.5", "SGC 9", "SGC 8.5", "SGC 8",
    "CGC 10", "CGC 9.5", "CGC 9", "CGC 8.5", "CGC 8",
]

GRADE_INFO_PATTERN = re.compile(r"^(PSA|BGS|SGC|CGC)\s+([\d.]+)", re.IGNORECASE)

# (max print run, multiplier), checked in order
RARITY_STEPS = [(10, 1.5), (25, 1.3), (50, 1.2), (99, 1.1), (199, 1.05)]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_production() -> bool:
    return (os.getenv("ENV") or os.getenv("APP_ENV") or "development").lower() == "production"


def _stored_error(error_code: str) -> Optional[str]:
    """Error codes are kept on the row for debugging, never in production."""
    return None if is_production() else error_code


# ============================================================================
# PAYLOAD BUILDERS
# ============================================================================


def build_pending_cmv_update(timestamp: Optional[str] = None) -> Dict[str, Any]:
    timestamp = timestamp or _now_iso()
    return {
        "estimated_cmv": None,
        "est_cmv": None,
        "cmv_value": None,
        "cmv_confidence": CmvConfidence.unavailable.value,
        "cmv_status": CmvStatus.pending.value,
        "cmv_error": None,
        "cmv_last_updated": timestamp,
        "cmv_updated_at": timestamp,
    }


def build_failed_cmv_update(error_code: str, timestamp: Optional[str] = None) -> Dict[str, Any]:
    timestamp = timestamp or _now_iso()
    return {
        "estimated_cmv": None,
        "est_cmv": None,
        "cmv_value": None,
        "cmv_confidence": CmvConfidence.unavailable.value,
        "cmv_status": CmvStatus.failed.value,
        "cmv_error": _stored_error(error_code),
        "cmv_last_updated": timestamp,
        "cmv_updated_at": timestamp,
    }


def build_ready_cmv_update(
    value: float,
    confidence: str,
    last_updated: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    timestamp = timestamp or _now_iso()
    return {
        "estimated_cmv": value,
        "est_cmv": value,
        "cmv_value": value,
        "cmv_confidence": CmvConfidence(confidence).value,
        "cmv_status": CmvStatus.ready.value,
        "cmv_error": None,
        "cmv_last_updated": last_updated or timestamp,
        "cmv_updated_at": timestamp,
    }


def _positive(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    prices = valid_prices([value])
    return prices[0] if prices and prices[0] > 0 else None


def to_cmv_payload_from_result(
    result: Dict[str, Any], timestamp: Optional[str] = None
) -> Tuple[Dict[str, Any], Optional[str]]:
    """A positive value becomes a ready payload; anything else is failed(no_comps)."""
    raw = result.get("estimated_cmv")
    value = _positive(raw if raw is not None else result.get("est_cmv"))
    if value is not None:
        payload = build_ready_cmv_update(
            value,
            result.get("cmv_confidence") or CmvConfidence.low.value,
            result.get("cmv_last_updated"),
            timestamp,
        )
        return payload, None
    return build_failed_cmv_update(ERROR_NO_COMPS, timestamp), ERROR_NO_COMPS


# ============================================================================
# STALENESS
# ============================================================================


def _has_cmv_value(item: Dict[str, Any]) -> bool:
    return any(_positive(item.get(key)) is not None for key in ("cmv_value", "estimated_cmv", "est_cmv"))


def _age(item: Dict[str, Any], now: datetime) -> Optional[timedelta]:
    raw = item.get("cmv_updated_at") or item.get("cmv_last_updated")
    updated = parse_sold_at(raw) if raw else None
    return now - updated if updated else None


def is_cmv_stale(item: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """Whether the background refresher should recompute this row."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    status = item.get("cmv_status")
    has_value = _has_cmv_value(item)
    age = _age(item, now)

    if status == CmvStatus.ready.value and has_value:
        return age is None or age > CMV_STALE
    if not has_value:
        if status == CmvStatus.failed.value:
            return age is None or age > CMV_FAILED_RETRY
        return True
    if status == CmvStatus.pending.value:
        return True
    if status == CmvStatus.failed.value:
        return age is None or age > CMV_FAILED_RETRY
    if age is None:
        return True
    if item.get("cmv_confidence") == CmvConfidence.unavailable.value:
        return age > CMV_FAILED_RETRY
    return age > CMV_STALE


# ============================================================================
# CASCADE
# ============================================================================


@dataclass
class CmvComputeMeta:
    source: str = "none"
    exact_comps_count: int = 0
    adjacent_comps_count: int = 0
    proxy_comps_count: int = 0
    best_image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "exactCompsCount": self.exact_comps_count,
            "adjacentCompsCount": self.adjacent_comps_count,
            "proxyCompsCount": self.proxy_comps_count,
            "bestImageUrl": self.best_image_url,
        }


@dataclass
class CmvComputation:
    payload: Dict[str, Any]
    meta: CmvComputeMeta = field(default_factory=CmvComputeMeta)
    duration_ms: int = 0
    error_code: Optional[str] = None


def parse_grade_info(grade: Optional[str]) -> Optional[Tuple[str, float]]:
    if not grade or "raw" in grade.lower():
        return None
    match = GRADE_INFO_PATTERN.match(grade.strip())
    if not match:
        return None
    try:
        return match.group(1).upper(), float(match.group(2))
    except ValueError:
        return None


def get_adjacent_grades(grade: Optional[str]) -> List[str]:
    """Same-company grades within one point of ``grade``, lowest first."""
    info = parse_grade_info(grade)
    if not info:
        return []
    company, value = info
    options = []
    for option in GRADING_OPTIONS:
        parsed = parse_grade_info(option)
        if parsed and parsed[0] == company:
            options.append((parsed[1], option))
    options.sort()
    return [
        option
        for number, option in options
        if option.upper() != grade.strip().upper() and abs(number - value) <= 1
    ]


def adjust_price_for_grade(price: float, comp_value: float, target_value: float) -> Tuple[float, float]:
    """Price scaled 10% per grade step toward the target, and a weight shrinking with distance."""
    diff = target_value - comp_value
    adjusted = max(price * (1 + diff * 0.1), 0.0)
    weight = 1 / (1 + abs(diff))
    return adjusted, weight


def weighted_median(values: List[float], weights: List[float]) -> Optional[float]:
    if not values or len(values) != len(weights):
        return None
    pairs = sorted(zip(values, weights))
    total = sum(weights)
    if total <= 0:
        return None
    cumulative = 0.0
    for value, weight in pairs:
        cumulative += weight
        if cumulative >= total / 2:
            return value
    return pairs[-1][0]


def rarity_adjustment(notes: Optional[str]) -> float:
    if not notes:
        return 1.0
    lower = notes.lower()
    if "1/1" in lower:
        return 2.0
    serial = re.search(r"/(\d{1,4})", lower)
    if not serial:
        return 1.0
    print_run = int(serial.group(1))
    for limit, multiplier in RARITY_STEPS:
        if print_run <= limit:
            return multiplier
    return 1.0


def parallel_from_notes(notes: Optional[str]) -> Optional[str]:
    match = re.search(r"Parallel:\s*([^|]+)", notes or "", re.IGNORECASE)
    if not match:
        return None
    cleaned = re.sub(r"/\d{1,4}", "", match.group(1)).strip()
    return cleaned or None


def insert_from_notes(notes: Optional[str]) -> Optional[str]:
    match = re.search(r"Insert:\s*([^|]+)", notes or "", re.IGNORECASE) or re.search(
        r"\[INSERT:([^\]]+)\]", notes or "", re.IGNORECASE
    )
    if not match:
        return None
    return match.group(1).strip() or None


def build_comps_query(card: Dict[str, Any], grade: Any = "__card__") -> CompsQuery:
    """Comps query for a collection row; ``grade`` overrides the row's own grade."""
    raw_grade = card.get("grade") if grade == "__card__" else grade
    if raw_grade and re.search(r"raw|ungraded", str(raw_grade), re.IGNORECASE):
        raw_grade = None
    insert = insert_from_notes(card.get("notes"))
    year = card.get("year")
    return CompsQuery(
        player=str(card.get("player_name") or ""),
        year=str(year) if year else None,
        set_name=card.get("set_name") or None,
        grade=raw_grade or None,
        parallel=card.get("parallel_type") or parallel_from_notes(card.get("notes")),
        card_number=card.get("card_number") or None,
        keywords=[insert] if insert else [],
    )


async def _fetch(source: ListingSource, query: CompsQuery) -> List[Listing]:
    """Matched comps in the lookback window, narrowed to the query's grade bucket (raw if none)."""
    result = await search_comps(source, query, window_days=CMV_LOOKBACK_DAYS, store=None)
    return filter_by_grade(result.listings, query.grade or "raw")


def _priced(listings: List[Listing]) -> List[float]:
    return valid_prices(item.price for item in listings)


def _result(value: Optional[float], confidence: CmvConfidence, last_updated: str) -> Dict[str, Any]:
    value = round_cents(value)
    return {
        "estimated_cmv": value,
        "est_cmv": value,
        "cmv_confidence": confidence.value,
        "cmv_last_updated": last_updated,
    }


async def calculate_card_cmv_detailed(
    card: Dict[str, Any], source: ListingSource
) -> Tuple[Dict[str, Any], CmvComputeMeta]:
    last_updated = _now_iso()
    meta = CmvComputeMeta()

    exact = await _fetch(source, build_comps_query(card))
    exact_prices = _priced(exact)
    meta.exact_comps_count = len(exact_prices)
    meta.best_image_url = next((item.image for item in exact if item.image), None)
    exact_median = median(exact_prices)
    if exact_median is not None and len(exact_prices) >= MIN_COMPS:
        meta.source = "exact"
        return _result(exact_median, CmvConfidence.high, last_updated), meta

    target = parse_grade_info(card.get("grade"))
    if target:
        values: List[float] = []
        weights: List[float] = []
        for grade in get_adjacent_grades(card.get("grade")):
            info = parse_grade_info(grade)
            comps = await _fetch(source, build_comps_query(card, grade=grade))
            prices = _priced(comps)
            meta.adjacent_comps_count += len(prices)
            for price in prices:
                adjusted, weight = adjust_price_for_grade(price, info[1], target[1])
                values.append(adjusted)
                weights.append(weight)
        if len(values) >= MIN_COMPS:
            weighted = weighted_median(values, weights)
            if weighted is not None:
                meta.source = "adjacent"
                return _result(weighted, CmvConfidence.medium, last_updated), meta

    proxy_prices = _priced(await _fetch(source, build_comps_query(card, grade=None)))
    meta.proxy_comps_count = len(proxy_prices)
    if len(proxy_prices) >= MIN_COMPS:
        proxy_median = median(proxy_prices)
        meta.source = "proxy"
        value = proxy_median * rarity_adjustment(card.get("notes"))
        return _result(value, CmvConfidence.low, last_updated), meta

    if exact_median is not None:
        meta.source = "exact"
        return _result(exact_median, CmvConfidence.low, last_updated), meta

    return _result(None, CmvConfidence.unavailable, last_updated), meta


async def calculate_card_cmv(card: Dict[str, Any], source: ListingSource) -> Dict[str, Any]:
    result, _ = await calculate_card_cmv_detailed(card, source)
    return result


async def calculate_card_cmv_with_status(
    card: Dict[str, Any],
    source: ListingSource,
    timeout: float = CMV_COMPUTE_TIMEOUT_SECONDS,
) -> CmvComputation:
    """
    Run the cascade under a deadline and turn the outcome into a persisted payload.

    Never raises: a timeout becomes failed(timeout), any other exception
    failed(compute_error), and no usable value failed(no_comps).
    """
    started = time.perf_counter()
    meta = CmvComputeMeta()
    try:
        result, meta = await asyncio.wait_for(calculate_card_cmv_detailed(card, source), timeout)
        payload, error_code = to_cmv_payload_from_result(result)
    except asyncio.TimeoutError:
        error_code = ERROR_TIMEOUT
        payload = build_failed_cmv_update(error_code)
        cmv_logger.warning(f"⏱️ CMV compute timed out after {timeout}s")
    except Exception as e:
        error_code = ERROR_COMPUTE
        payload = build_failed_cmv_update(error_code)
        cmv_logger.exception(f"❌ CMV compute error: {e}")

    duration_ms = int((time.perf_counter() - started) * 1000)
    log_cmv_compute(
        cmv_logger,
        card.get("id"),
        payload["cmv_status"],
        payload["cmv_value"],
        duration_ms,
        meta.source,
    )
    return CmvComputation(payload=payload, meta=meta, duration_ms=duration_ms, error_code=error_code)

"""
Portfolio value helpers for collection rows.

A row's CMV may live under several column names depending on which writer
produced it; everything here reads it through ``get_est_cmv``. Totals keep
"unmeasurable" (None) distinct from "zero".
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

CMV_FIELDS = ("est_cmv", "estimated_cmv", "est_value", "cmv")


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def get_est_cmv(item: Dict[str, Any]) -> Optional[float]:
    for key in CMV_FIELDS:
        value = _number(item.get(key))
        if value is not None:
            return value
    return None


def get_cost_basis(item: Dict[str, Any]) -> Optional[float]:
    return _number(item.get("purchase_price"))


def get_display_value(item: Dict[str, Any]) -> Optional[float]:
    """CMV when known, else cost basis, else None."""
    est = get_est_cmv(item)
    if est is not None:
        return est
    return get_cost_basis(item)


def get_value_source(item: Dict[str, Any]) -> str:
    if get_est_cmv(item) is not None:
        return "cmv"
    if get_cost_basis(item) is not None:
        return "cost_basis"
    return "none"


def get_unrealized_pl(item: Dict[str, Any]) -> Optional[float]:
    est, cost = get_est_cmv(item), get_cost_basis(item)
    if est is None or cost is None:
        return None
    return est - cost


def get_target_price(item: Dict[str, Any]) -> Optional[float]:
    return _number(item.get("target_price"))


def is_below_target(item: Dict[str, Any]) -> bool:
    """A watched card is below target when its current value is at or under the target price."""
    target, value = get_target_price(item), get_est_cmv(item)
    if target is None or value is None:
        return False
    return 0 < value <= target


@dataclass
class CollectionSummary:
    card_count: int = 0
    total_display_value: float = 0.0
    total_cmv_value: Optional[float] = None
    total_cost_basis: float = 0.0
    total_unrealized_pl: Optional[float] = None
    total_unrealized_pl_pct: Optional[float] = None
    cards_with_cmv: int = 0
    cards_with_cost_basis: int = 0
    cards_with_both: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cardCount": self.card_count,
            "totalDisplayValue": round(self.total_display_value, 2),
            "totalCmvValue": _round(self.total_cmv_value),
            "totalCostBasis": round(self.total_cost_basis, 2),
            "totalUnrealizedPL": _round(self.total_unrealized_pl),
            "totalUnrealizedPLPct": (
                round(self.total_unrealized_pl_pct, 4)
                if self.total_unrealized_pl_pct is not None
                else None
            ),
            "cardsWithCmv": self.cards_with_cmv,
            "cardsWithCostBasis": self.cards_with_cost_basis,
            "cardsWithBoth": self.cards_with_both,
        }


def _round(value: Optional[float]) -> Optional[float]:
    return round(value, 2) if value is not None else None


def compute_collection_summary(items: List[Dict[str, Any]]) -> CollectionSummary:
    """
    Roll a collection up into totals.

    Display value counts every card that has a CMV or a cost basis. P/L only
    counts cards with both; if none have both, P/L and P/L% are None, never 0.
    """
    summary = CollectionSummary(card_count=len(items))
    cmv_total = 0.0
    pl_total = 0.0
    pl_cost_basis = 0.0

    for item in items:
        est = get_est_cmv(item)
        cost = get_cost_basis(item)

        display = get_display_value(item)
        if display is not None:
            summary.total_display_value += display

        if cost is not None:
            summary.total_cost_basis += cost
            summary.cards_with_cost_basis += 1

        if est is not None:
            cmv_total += est
            summary.cards_with_cmv += 1

        if est is not None and cost is not None:
            pl_total += est - cost
            pl_cost_basis += cost
            summary.cards_with_both += 1

    if summary.cards_with_cmv:
        summary.total_cmv_value = cmv_total
    if summary.cards_with_both:
        summary.total_unrealized_pl = pl_total
        if pl_cost_basis > 0:
            summary.total_unrealized_pl_pct = pl_total / pl_cost_basis
    return summary


@dataclass
class PerformerMetrics:
    item: Dict[str, Any]
    est_cmv: Optional[float] = None
    cost_basis: Optional[float] = None
    dollar_change: Optional[float] = None
    pct_change: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.item.get("id"),
            "player_name": self.item.get("player_name"),
            "estCmv": self.est_cmv,
            "costBasis": self.cost_basis,
            "dollarChange": _round(self.dollar_change),
            "pctChange": round(self.pct_change, 4) if self.pct_change is not None else None,
        }


def _split_performers(items: List[Dict[str, Any]]):
    with_both, without = [], []
    for item in items:
        est, cost = get_est_cmv(item), get_cost_basis(item)
        if est is not None and cost is not None and cost > 0:
            change = est - cost
            with_both.append(PerformerMetrics(item, est, cost, change, change / cost))
        else:
            without.append(PerformerMetrics(item, est, cost))
    return with_both, without


def compute_performers(items: List[Dict[str, Any]], limit: int = 5) -> List[PerformerMetrics]:
    """Top gainers by P/L percent (then dollar change), padded with unmeasurable rows."""
    with_both, without = _split_performers(items)
    with_both.sort(key=lambda m: (m.pct_change, m.dollar_change), reverse=True)
    top = with_both[:limit]
    if len(top) < limit:
        top.extend(without[: limit - len(top)])
    return top


def compute_losers(items: List[Dict[str, Any]], limit: int = 5) -> List[PerformerMetrics]:
    """Biggest decliners; only rows with a measurable loss."""
    with_both, _ = _split_performers(items)
    losers = [m for m in with_both if m.dollar_change < 0]
    losers.sort(key=lambda m: (m.pct_change, m.dollar_change))
    return losers[:limit]

"""
Snapshot of a user's data handed to the market assistant.

The assistant may only talk about what is in this snapshot, so it is built
from the same value helpers the collection and dashboard views use.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.utils.values import (
    compute_collection_summary,
    get_cost_basis,
    get_display_value,
    get_est_cmv,
    get_target_price,
    is_below_target,
)

MAX_TOP = 10
MAX_RECENT = 10
MAX_WATCHLIST_BELOW = 10
MAX_RECENT_SEARCHES = 10


def _display_name(item: Dict[str, Any], keys) -> str:
    return " ".join(str(item[k]) for k in keys if item.get(k))


def _collection_card(item: Dict[str, Any]) -> Dict[str, Any]:
    est_value = get_est_cmv(item)
    return {
        "id": item.get("id"),
        "display_name": _display_name(item, ("year", "player_name", "set_name", "grade")),
        "year": item.get("year"),
        "set_name": item.get("set_name"),
        "parallel": item.get("parallel_type"),
        "grade": item.get("grade"),
        "est_value": est_value,
        "cost_basis": get_cost_basis(item),
        "has_cmv": est_value is not None and est_value > 0,
        "cmv_confidence": item.get("cmv_confidence"),
        "notes": item.get("notes"),
        "last_updated": item.get("created_at"),
    }


def _below_target_entry(item: Dict[str, Any]) -> Dict[str, Any]:
    est_value, target = get_est_cmv(item), get_target_price(item)
    return {
        "id": item.get("id"),
        "display_name": _display_name(
            item, ("year", "player_name", "set_name", "grade", "parallel_type")
        ),
        "target_price": target,
        "est_value": est_value,
        "delta": round(est_value - target, 2),
    }


def build_user_ai_context(
    user_id: str,
    collection: List[Dict[str, Any]],
    watchlist: List[Dict[str, Any]],
    recent_searches: Optional[List[Dict[str, Any]]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now_iso = (now or datetime.now(timezone.utc)).isoformat()
    summary = compute_collection_summary(collection)

    top = sorted(collection, key=lambda i: get_display_value(i) or 0.0, reverse=True)
    recent = sorted(collection, key=lambda i: i.get("created_at") or "", reverse=True)

    below = [w for w in watchlist if is_below_target(w)]
    below.sort(key=lambda w: get_est_cmv(w))

    return {
        "user": {"id": user_id},
        "collection_summary": {
            "total_cards": summary.card_count,
            "total_value": round(summary.total_display_value, 2),
            "cost_basis": round(summary.total_cost_basis, 2),
            "unrealized_pl": (
                round(summary.total_unrealized_pl, 2)
                if summary.total_unrealized_pl is not None
                else None
            ),
        },
        "collection_top": [_collection_card(i) for i in top[:MAX_TOP]],
        "collection_recent": [_collection_card(i) for i in recent[:MAX_RECENT]],
        "watchlist_summary": {
            "total_cards": len(watchlist),
            "total_value_if_purchased": round(
                sum(get_est_cmv(w) or 0.0 for w in watchlist), 2
            ),
            "below_target_count": len(below),
        },
        "watchlist_below_target": [_below_target_entry(w) for w in below[:MAX_WATCHLIST_BELOW]],
        "recent_searches": [
            {
                "query": row.get("query"),
                "kind": row.get("kind"),
                "created_at": row.get("created_at") or now_iso,
            }
            for row in (recent_searches or [])[:MAX_RECENT_SEARCHES]
        ],
        "app_time": now_iso,
    }


ANALYST_RULES = """\
You are a sports card market analyst.

HARD RULES:
- Only reference cards, players, sets, grades or watchlist items that appear in the USER CONTEXT JSON.
- Never invent or guess cards the user owns or watches.
- If a card is not in the USER CONTEXT, say you don't see it and suggest searching comps or adding it.
- If the user's collection is empty (collection_summary.total_cards == 0), say their collection is empty and suggest adding a first card.
- If the watchlist is empty (watchlist_summary.total_cards == 0), say they have no watchlist items yet.
- When data is missing, ask a short clarifying question or propose the next action.

STYLE:
- Keep answers to 3-5 sentences, direct and actionable.
- Use ranges and directional language for market talk; avoid fake precision."""


def build_analyst_prompt(context: Dict[str, Any], question: str) -> List[Dict[str, str]]:
    """Chat messages: system prompt with rules and the JSON snapshot, then the user's question."""
    system = (
        f"{ANALYST_RULES}\n\n"
        f"USER CONTEXT (SOURCE OF TRUTH - JSON):\n{json.dumps(context, indent=2, default=str)}"
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": question},
    ]

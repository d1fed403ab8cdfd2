"""
Single normalization step for "add to collection" bodies.

Clients send the same logical field under several names (``player_name``,
``playerName``, ``player``, ``name``...). ``normalize_collection_input`` folds
them into one canonical record; nothing past this module looks at aliases.
"""

import math
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.cmv import build_pending_cmv_update, build_ready_cmv_update
from src.models.card import CmvConfidence
from src.utils.errors import CardAppError

FIELD_ALIASES = {
    "player_name": ("player_name", "playerName", "player", "name"),
    "year": ("year",),
    "set_name": ("set_name", "setName", "set"),
    "parallel_type": ("parallel_type", "parallelType", "parallel"),
    "card_number": ("card_number", "cardNumber"),
    "grade": ("grade", "condition"),
    "purchase_price": ("purchase_price", "purchasePrice"),
    "purchase_date": ("purchase_date", "purchaseDate"),
    "estimated_cmv": ("estimated_cmv", "estimatedCmv", "est_cmv", "estCmv"),
    "image_url": ("image_url", "imageUrl"),
    "notes": ("notes",),
    "insert": ("insert", "insertName"),
}


class CollectionInputError(CardAppError):
    """Add-to-collection body is unusable."""


@dataclass
class CollectionInput:
    player_name: str
    year: Optional[str] = None
    set_name: Optional[str] = None
    parallel_type: Optional[str] = None
    card_number: Optional[str] = None
    grade: Optional[str] = None
    purchase_price: Optional[float] = None
    purchase_date: Optional[str] = None
    estimated_cmv: Optional[float] = None
    image_url: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _first(body: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = body.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def coerce_money(value: Any) -> Optional[float]:
    """'$1,250.00' -> 1250.0. Non-finite and unparseable values become None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        cleaned = re.sub(r"[$,]", "", str(value)).strip()
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def coerce_positive_money(value: Any) -> Optional[float]:
    number = coerce_money(value)
    return number if number is not None and number > 0 else None


def coerce_card_number(value: Any) -> Optional[str]:
    """Card numbers are stored as a non-negative integer string ('#042' -> '42')."""
    text = _text(value)
    if text is None:
        return None
    digits = re.sub(r"^(#|no\.?)\s*", "", text, flags=re.IGNORECASE).strip()
    if not re.fullmatch(r"\d+", digits):
        return None
    return str(int(digits))


def _combined_notes(notes: Optional[str], insert: Optional[str], players: Any) -> Optional[str]:
    parts: List[str] = []
    if notes:
        parts.append(notes)
    if insert:
        parts.append(f"[INSERT:{insert}]")
    if isinstance(players, list) and len(players) > 1:
        parts.append(f"[PLAYERS:{', '.join(str(p) for p in players)}]")
    return " | ".join(parts) if parts else None


def normalize_collection_input(body: Any) -> CollectionInput:
    """
    Fold an add-to-collection body into a ``CollectionInput``.

    Raises:
        CollectionInputError: body is not an object or has no player name.
    """
    if not isinstance(body, dict):
        raise CollectionInputError("Request body must be a JSON object")

    values = {name: _first(body, keys) for name, keys in FIELD_ALIASES.items()}
    player = _text(values["player_name"])
    if player is None:
        players = body.get("players")
        if isinstance(players, list) and players:
            player = _text(players[0])
    if player is None:
        raise CollectionInputError("Player name is required", {"missing": ["player_name"]})

    return CollectionInput(
        player_name=player,
        year=_text(values["year"]),
        set_name=_text(values["set_name"]),
        parallel_type=_text(values["parallel_type"]),
        card_number=coerce_card_number(values["card_number"]),
        grade=_text(values["grade"]),
        purchase_price=coerce_money(values["purchase_price"]),
        purchase_date=_text(values["purchase_date"]),
        estimated_cmv=coerce_positive_money(values["estimated_cmv"]),
        image_url=_text(values["image_url"]),
        notes=_combined_notes(
            _text(values["notes"]), _text(values["insert"]), body.get("players")
        ),
    )


def build_insert_payload(
    user_id: str, record: CollectionInput, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Row to insert. An incoming CMV is trusted at medium confidence; otherwise compute is pending."""
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    payload = record.to_dict()
    cmv = payload.pop("estimated_cmv")
    payload["user_id"] = user_id

    if cmv is not None:
        payload.update(build_ready_cmv_update(cmv, CmvConfidence.medium.value, timestamp=timestamp))
    else:
        payload.update(build_pending_cmv_update(timestamp))
    return payload

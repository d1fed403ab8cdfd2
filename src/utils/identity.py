"""Card identity normalization.

Turns raw identification signals (model-extracted attributes, optional OCR text,
a year the user already confirmed) into a canonical ``CardIdentity``. Every call
starts from an empty identity; nothing is carried over between calls.
"""

import json
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from src.models.card import CONFIDENCE_ORDER, CardIdentity, CardStock, Confidence
from src.utils.logger import identity_logger

# ============================================================================
# KNOWLEDGE BASE
# ============================================================================

# Checked in order: chromium first so "Donruss Optic" or "Topps Chrome" resolve to chromium.
CHROMIUM_KEYWORDS = ["chrome", "refractor", "finest", "prizm", "optic", "select", "mosaic"]
PAPER_KEYWORDS = ["donruss", "score", "topps", "bowman", "fleer", "upper deck"]

# Parallel names that only exist on chromium stock
CHROMIUM_ONLY_PARALLEL_TOKENS = ["prizm", "prism", "refractor", "chrome"]

BRAND_KEYWORDS = [
    "panini",
    "topps",
    "upper deck",
    "donruss",
    "bowman",
    "fleer",
    "score",
    "leaf",
    "skybox",
]

SET_KEYWORDS = [
    "donruss optic",
    "bowman chrome",
    "topps chrome",
    "national treasures",
    "stadium club",
    "prizm",
    "mosaic",
    "select",
    "optic",
    "contenders",
    "chrome",
    "finest",
    "immaculate",
    "flawless",
    "heritage",
]

# folded key -> canonical display name
PLAYER_ALIASES = {
    "cooper flagg": "Cooper Flagg",
    "victor wembanyama": "Victor Wembanyama",
    "wemby": "Victor Wembanyama",
    "caitlin clark": "Caitlin Clark",
    "jayden daniels": "Jayden Daniels",
    "cj stroud": "C.J. Stroud",
    "anthony edwards": "Anthony Edwards",
    "ant edwards": "Anthony Edwards",
    "shohei ohtani": "Shohei Ohtani",
}

YEAR_REGEX = re.compile(r"\b(?:19|20)\d{2}\b")

PARSE_ERROR = "parse_error"
PARALLEL_INVALID = "parallel_invalid"
YEAR_AMBIGUOUS = "year_ambiguous"
YEAR_NEEDS_CONFIRMATION = "year_needs_confirmation"
YEAR_CONFLICT = "year_conflict"
YEAR_OUT_OF_RANGE = "year_out_of_range"

KEY_FIELDS = ("player", "year", "set_name", "brand")


# ============================================================================
# SMALL HELPERS
# ============================================================================


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None


def _pick(signals: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = signals.get(key)
        if value is not None and value != "":
            return value
    return None


def clamp_confidence(value: Any) -> Confidence:
    if isinstance(value, Confidence):
        return value
    try:
        return Confidence(str(value).lower())
    except ValueError:
        return Confidence.low


def min_confidence(*values: Confidence) -> Confidence:
    return min(values, key=CONFIDENCE_ORDER.index)


def max_confidence(*values: Confidence) -> Confidence:
    return max(values, key=CONFIDENCE_ORDER.index)


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _fold_name(value: str) -> str:
    folded = re.sub(r"[^a-z\s]", "", value.lower())
    return re.sub(r"\s+", " ", folded).strip()


def _title_keyword(keyword: str) -> str:
    return " ".join(part[:1].upper() + part[1:] for part in keyword.split(" "))


# ============================================================================
# JSON FROM MODEL OUTPUT
# ============================================================================


def parse_first_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the first balanced {...} object in ``text``, or None when there is none or it is invalid."""
    if not text:
        return None
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        char = text[i]
        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                try:
                    parsed = json.loads(text[start : i + 1])
                except json.JSONDecodeError as e:
                    identity_logger.warning(f"Model JSON could not be decoded: {e}")
                    return None
                return parsed if isinstance(parsed, dict) else None
    return None


# ============================================================================
# FIELD CANONICALIZATION
# ============================================================================


def empty_card_identity(warnings: Optional[List[str]] = None) -> CardIdentity:
    return CardIdentity(
        card_stock=CardStock.unknown,
        confidence=Confidence.low,
        field_confidence={"year": Confidence.low, "player": Confidence.low},
        warnings=list(warnings or []),
    )


def canonicalize_player(raw: Optional[str]) -> Tuple[Optional[str], Confidence]:
    """Known aliases resolve to their display name with high confidence; others pass through at low."""
    name = _clean(raw)
    if not name:
        return None, Confidence.low
    canonical = PLAYER_ALIASES.get(_fold_name(name))
    if canonical:
        return canonical, Confidence.high
    return name, Confidence.low


def match_player_from_ocr(ocr_text: Optional[str]) -> Optional[str]:
    folded = _fold_name(ocr_text or "")
    if not folded:
        return None
    for alias, canonical in PLAYER_ALIASES.items():
        if re.search(rf"\b{re.escape(alias)}\b", folded):
            return canonical
    return None


def normalize_card_number(value: Any) -> Optional[str]:
    text = _clean(value)
    if not text:
        return None
    text = re.sub(r"^(?:no\.?|#)\s*", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\s+", "", text).lstrip("#")
    return text or None


def extract_keyword(text: Optional[str], keywords: List[str]) -> Optional[str]:
    normalized = re.sub(r"[^a-z0-9]+", " ", (text or "").lower()).strip()
    padded = f" {normalized} "
    for keyword in keywords:
        if f" {keyword} " in padded:
            return _title_keyword(keyword)
    return None


def infer_brand_from_set(set_name: Optional[str]) -> Optional[str]:
    return extract_keyword(set_name, BRAND_KEYWORDS)


def derive_card_stock(set_name: Optional[str]) -> CardStock:
    normalized = (set_name or "").lower()
    if not normalized:
        return CardStock.unknown
    if any(keyword in normalized for keyword in CHROMIUM_KEYWORDS):
        return CardStock.chromium
    if any(keyword in normalized for keyword in PAPER_KEYWORDS):
        return CardStock.paper
    return CardStock.unknown


def validate_parallel_against_stock(
    parallel: Optional[str], card_stock: CardStock
) -> Tuple[Optional[str], List[str]]:
    """A chromium-only parallel on paper stock is dropped and flagged."""
    if not parallel:
        return parallel, []
    lowered = parallel.lower()
    if card_stock == CardStock.paper and any(
        token in lowered for token in CHROMIUM_ONLY_PARALLEL_TOKENS
    ):
        return None, [PARALLEL_INVALID]
    return parallel, []


# ============================================================================
# YEAR RESOLUTION
# ============================================================================


def _score_year_line(line: str) -> int:
    lower = line.lower()
    score = 1
    if "©" in lower or "copyright" in lower or "all rights reserved" in lower:
        score += 3
    if any(k in lower for k in ("panini", "topps", "upper deck", "inc", "ltd")):
        score += 2
    if any(k in lower for k in ("trading card", "printed", "licensed")):
        score += 1
    if "back" in lower or "reverse" in lower:
        score += 1
    return score


def parse_year_candidates(text: Optional[str]) -> List[Tuple[int, int]]:
    """(year, line score) for every 19xx/20xx token in the OCR text."""
    candidates = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        for match in YEAR_REGEX.finditer(line):
            candidates.append((int(match.group(0)), _score_year_line(line)))
    return candidates


def pick_top_year_candidate(
    candidates: List[Tuple[int, int]], current_year: int
) -> Tuple[Optional[int], Confidence, Optional[str]]:
    best: Dict[int, int] = {}
    for year, score in candidates:
        if year < 1900 or year > current_year + 1:
            continue
        best[year] = max(best.get(year, 0), score)

    if not best:
        return None, Confidence.low, None

    ranked = sorted(best.items(), key=lambda item: item[1], reverse=True)
    top_year, top_score = ranked[0]

    if len(ranked) == 1:
        if top_score >= 4:
            return top_year, Confidence.high, None
        if top_score >= 2:
            return top_year, Confidence.medium, None
        return top_year, Confidence.low, YEAR_NEEDS_CONFIRMATION

    if top_score - ranked[1][1] >= 2:
        return top_year, Confidence.high if top_score >= 4 else Confidence.medium, None

    return None, Confidence.low, YEAR_AMBIGUOUS


def _coerce_year(value: Any) -> Optional[int]:
    if value is None:
        return None
    match = re.search(r"\b(?:19|20)\d{2}\b", str(value))
    return int(match.group(0)) if match else None


def resolve_year(
    ocr_year: Optional[int],
    ocr_confidence: Confidence,
    ocr_warning: Optional[str],
    vision_year: Any,
    vision_confidence: Confidence,
    known_year: Any = None,
    current_year: Optional[int] = None,
) -> Tuple[Optional[int], Confidence, List[str]]:
    """Merge the OCR year, the model's year and a user-confirmed year."""
    current_year = current_year or datetime.now().year
    warnings: List[str] = []

    confirmed = _coerce_year(known_year)
    raw_vision = _coerce_year(vision_year)
    vision = raw_vision if raw_vision and 1900 <= raw_vision <= current_year + 1 else None
    if vision_year is not None and vision_year != "" and vision is None:
        warnings.append(YEAR_OUT_OF_RANGE)

    if confirmed:
        detected = ocr_year or vision
        if detected and detected != confirmed:
            warnings.append(YEAR_CONFLICT)
        return confirmed, Confidence.high, warnings

    if ocr_warning:
        warnings.append(ocr_warning)

    if ocr_warning == YEAR_AMBIGUOUS and vision and vision_confidence != Confidence.low:
        return None, Confidence.low, warnings

    if vision and ocr_year:
        if vision == ocr_year:
            return ocr_year, max_confidence(ocr_confidence, vision_confidence), warnings
        if ocr_confidence != Confidence.low or vision_confidence != Confidence.low:
            warnings.append(YEAR_AMBIGUOUS)
            return None, Confidence.low, warnings

    if ocr_year:
        if ocr_confidence == Confidence.low:
            warnings.append(YEAR_NEEDS_CONFIRMATION)
            return None, Confidence.low, warnings
        return ocr_year, ocr_confidence, warnings

    if vision:
        if vision_confidence == Confidence.low:
            warnings.append(YEAR_NEEDS_CONFIRMATION)
            return None, Confidence.low, warnings
        return vision, vision_confidence, warnings

    if ocr_warning != YEAR_AMBIGUOUS:
        warnings.append(YEAR_NEEDS_CONFIRMATION)
    return None, Confidence.low, warnings


def compute_overall_confidence(field_confidence: Dict[str, Confidence]) -> Confidence:
    values = [field_confidence[k] for k in KEY_FIELDS if k in field_confidence]
    if not values:
        return Confidence.low
    return min_confidence(*values)


# ============================================================================
# PUBLIC ENTRY POINTS
# ============================================================================


def normalize(
    raw_signals: Any, known_year: Any = None, current_year: Optional[int] = None
) -> CardIdentity:
    """
    Build a canonical CardIdentity from raw identification signals.

    Args:
        raw_signals: dict of model-extracted attributes (snake or camel case keys,
            optional ``ocr_text``) or the raw model output string
        known_year: year already confirmed by the user, wins over detection
        current_year: reference year for plausibility checks (defaults to now)

    Returns:
        A fresh CardIdentity. Malformed input yields an empty identity tagged parse_error.
    """
    current_year = current_year or datetime.now().year

    signals = raw_signals
    if isinstance(raw_signals, (str, bytes)):
        text = raw_signals.decode("utf-8", "replace") if isinstance(raw_signals, bytes) else raw_signals
        signals = parse_first_json_object(text)
    if not isinstance(signals, dict):
        identity_logger.warning("Identification output unparseable, returning empty identity")
        return empty_card_identity([PARSE_ERROR])

    incoming_warnings = [str(w) for w in (signals.get("warnings") or []) if w]
    if PARSE_ERROR in incoming_warnings:
        return empty_card_identity([PARSE_ERROR])

    overall_hint = clamp_confidence(signals.get("confidence"))
    reported = signals.get("field_confidence") or signals.get("fieldConfidence") or {}
    if not isinstance(reported, dict):
        reported = {}

    def reported_confidence(*keys: str) -> Confidence:
        for key in keys:
            if key in reported:
                return clamp_confidence(reported[key])
        return overall_hint

    warnings: List[str] = list(incoming_warnings)
    field_confidence: Dict[str, Confidence] = {}
    ocr_text = _pick(signals, "ocr_text", "ocrText", "raw_text")

    # player: dictionary hit > confirmed by OCR text > pass-through
    players = signals.get("players") if isinstance(signals.get("players"), list) else []
    raw_player = _pick(signals, "player", "player_name", "playerName") or (
        players[0] if players else None
    )
    player, player_conf = canonicalize_player(raw_player)
    ocr_player = match_player_from_ocr(ocr_text)
    if not player and ocr_player:
        player, player_conf = ocr_player, Confidence.high
    elif player and player_conf != Confidence.high and ocr_text:
        if _fold_name(player) and _fold_name(player) in _fold_name(ocr_text):
            player_conf = Confidence.medium
    field_confidence["player"] = player_conf if player else Confidence.low

    # year
    ocr_year, ocr_conf, ocr_warning = pick_top_year_candidate(
        parse_year_candidates(ocr_text), current_year
    )
    year, year_conf, year_warnings = resolve_year(
        ocr_year,
        ocr_conf,
        ocr_warning,
        _pick(signals, "year"),
        reported_confidence("year"),
        known_year=known_year,
        current_year=current_year,
    )
    warnings.extend(year_warnings)
    field_confidence["year"] = year_conf if year else Confidence.low

    # set / brand
    set_name = _clean(_pick(signals, "set_name", "setName", "set"))
    if set_name:
        field_confidence["set_name"] = reported_confidence("set_name", "setName")
    elif ocr_text:
        set_name = extract_keyword(ocr_text, SET_KEYWORDS)
        field_confidence["set_name"] = Confidence.medium if set_name else Confidence.low
    else:
        field_confidence["set_name"] = Confidence.low

    brand = _clean(_pick(signals, "brand"))
    if brand:
        field_confidence["brand"] = reported_confidence("brand")
    else:
        brand = infer_brand_from_set(set_name) or extract_keyword(ocr_text, BRAND_KEYWORDS)
        field_confidence["brand"] = Confidence.medium if brand else Confidence.low

    # parallel vs stock
    card_stock = derive_card_stock(set_name)
    parallel, parallel_warnings = validate_parallel_against_stock(
        _clean(_pick(signals, "parallel", "parallel_type", "parallelType")), card_stock
    )
    warnings.extend(parallel_warnings)
    if parallel:
        field_confidence["parallel"] = reported_confidence("parallel")

    card_number = normalize_card_number(_pick(signals, "card_number", "cardNumber"))
    if card_number:
        field_confidence["card_number"] = reported_confidence("card_number", "cardNumber")

    identity = CardIdentity(
        player=player,
        year=str(year) if year else None,
        brand=brand,
        set_name=set_name,
        parallel=parallel,
        card_number=card_number,
        card_stock=card_stock,
        confidence=compute_overall_confidence(field_confidence),
        field_confidence=field_confidence,
        warnings=_dedupe(warnings),
    )
    if PARALLEL_INVALID in identity.warnings:
        identity_logger.info(
            f"Dropped parallel incompatible with {card_stock.value} stock for set '{set_name}'"
        )
    return identity


def normalize_identity(identity: CardIdentity) -> CardIdentity:
    """Re-apply canonicalization to an existing identity. Canonical input comes back equal."""
    if PARSE_ERROR in identity.warnings:
        return empty_card_identity([PARSE_ERROR])

    field_confidence = dict(identity.field_confidence)
    player, player_conf = canonicalize_player(identity.player)
    if player and player_conf == Confidence.high:
        field_confidence["player"] = Confidence.high
    elif not player:
        field_confidence["player"] = Confidence.low

    card_stock = derive_card_stock(identity.set_name)
    parallel, parallel_warnings = validate_parallel_against_stock(identity.parallel, card_stock)
    if not parallel:
        field_confidence.pop("parallel", None)

    warnings = _dedupe(list(identity.warnings) + parallel_warnings)
    return identity.with_changes(
        player=player,
        set_name=_clean(identity.set_name),
        brand=_clean(identity.brand),
        parallel=parallel,
        card_number=normalize_card_number(identity.card_number),
        card_stock=card_stock,
        field_confidence=field_confidence,
        confidence=(
            Confidence.low
            if PARSE_ERROR in warnings
            else compute_overall_confidence(field_confidence)
        ),
        warnings=warnings,
    )


def normalize_identification_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """
    Canonicalize a full identification response (flat form fields + nested identity).

    A parse_error clears every identity-derived field. Otherwise a missing flat
    player name is filled from the identity's player even when the overall
    confidence is low, since player confidence is tracked on its own.
    """
    identity = result.get("card_identity")
    if not isinstance(identity, CardIdentity):
        identity = empty_card_identity()
    has_parse_error = PARSE_ERROR in identity.warnings
    if has_parse_error:
        identity = empty_card_identity([PARSE_ERROR])

    player_name = _clean(result.get("player_name")) or ""
    normalized = {
        "player_name": player_name,
        "players": list(result.get("players") or ([player_name] if player_name else [])),
        "year": result.get("year"),
        "set_name": result.get("set_name"),
        "insert": result.get("insert"),
        "grade": result.get("grade"),
        "card_number": result.get("card_number"),
        "parallel_type": result.get("parallel_type"),
        "serial_number": result.get("serial_number"),
        "confidence": result.get("confidence") or Confidence.low.value,
        "card_identity": identity,
        "confirmed_year": result.get("confirmed_year"),
    }

    if has_parse_error:
        normalized.update(
            player_name="", players=[], year=None, set_name=None, parallel_type=None
        )
    elif not normalized["player_name"] and identity.player:
        normalized["player_name"] = identity.player
        normalized["players"] = [identity.player]

    return normalized

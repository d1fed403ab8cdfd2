"""Catalog card search with strict optional filters and opt-in relaxation."""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from rapidfuzz import fuzz

from src.models.card import SearchFilters
from src.utils.errors import CardSearchValidationError

DEFAULT_LIMIT = 25
MAX_LIMIT = 50
PLAYER_FUZZY_THRESHOLD = 90

REQUIRED_FIELDS = {"playerId": ("playerId", "player_id"), "setSlug": ("setSlug", "set_slug")}
OPTIONAL_FIELDS = {
    "year": ("year",),
    "parallel": ("parallel",),
    "grader": ("grader",),
    "grade": ("grade",),
    "card_number": ("cardNumber", "card_number"),
}


@dataclass
class CardSearchResult:
    results: List[Dict[str, Any]] = field(default_factory=list)
    relaxed: bool = False
    can_relax: bool = False

    @property
    def count(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": self.results,
            "count": self.count,
            "relaxed": self.relaxed,
            "canRelax": self.can_relax,
        }


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (str, int, float)):
        return None
    text = str(value).strip()
    return text or None


def _slug_words(value: Any) -> str:
    return re.sub(r"[^a-z0-9]+", " ", str(value or "").lower()).strip()


def normalize_card_number(value: Any) -> str:
    return re.sub(r"[#\s]", "", str(value or "")).lower()


def _parse_limit(value: Any) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, limit))


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def parse_card_search_payload(payload: Any) -> SearchFilters:
    """
    Validate a card-search body before any matching work.

    Raises:
        CardSearchValidationError: body is not an object or required filters are absent.
            ``missing`` lists exactly which required fields were absent.
    """
    if not isinstance(payload, dict):
        raise CardSearchValidationError("Request body must be a JSON object")

    required = {}
    missing = []
    for name, keys in REQUIRED_FIELDS.items():
        value = next((_text(payload.get(k)) for k in keys if _text(payload.get(k))), None)
        if value is None:
            missing.append(name)
        required[name] = value
    if missing:
        raise CardSearchValidationError(
            f"Missing required filter(s): {', '.join(missing)}", missing=missing
        )

    optional = {
        name: next((_text(payload.get(k)) for k in keys if _text(payload.get(k))), None)
        for name, keys in OPTIONAL_FIELDS.items()
    }
    return SearchFilters(
        player_id=required["playerId"],
        set_slug=required["setSlug"],
        relax_optional=_parse_bool(payload.get("relaxOptional", payload.get("relax_optional"))),
        limit=_parse_limit(payload.get("limit", DEFAULT_LIMIT)),
        **optional,
    )


# ============================================================================
# MATCHING
# ============================================================================


def _contains(needle: str, *haystacks: Any) -> bool:
    wanted = _slug_words(needle)
    if not wanted:
        return True
    return any(wanted in _slug_words(h) for h in haystacks if h)


def _ilike_pattern(words: List[str]) -> str:
    return "*" + "*".join(words) + "*"


def catalog_narrowing_clause(filters: SearchFilters) -> str:
    """
    PostgREST ``or`` expression that pre-narrows catalog rows on player and set.

    Any single player token is enough so the fuzzy player fallback in
    ``matches_required`` still sees near-miss spellings; the set must contain
    every requested set word.
    """
    player_words = _slug_words(filters.player_id).split()
    set_words = _slug_words(filters.set_slug).split()
    player_terms = [f"player_id.ilike.{_ilike_pattern(player_words)}"] + [
        f"player_name.ilike.{_ilike_pattern([word])}" for word in player_words
    ]
    set_pattern = _ilike_pattern(set_words)
    set_terms = [f"set_slug.ilike.{set_pattern}", f"set_name.ilike.{set_pattern}"]
    return f"and(or({','.join(player_terms)}),or({','.join(set_terms)}))"


def matches_required(row: Dict[str, Any], filters: SearchFilters) -> bool:
    """Player and set are always enforced; relaxation never touches them."""
    player_ok = _contains(filters.player_id, row.get("player_id"), row.get("player_name"))
    if not player_ok and row.get("player_name"):
        player_ok = (
            fuzz.partial_ratio(_slug_words(filters.player_id), _slug_words(row["player_name"]))
            >= PLAYER_FUZZY_THRESHOLD
        )
    if not player_ok:
        return False
    return _contains(filters.set_slug, row.get("set_slug"), row.get("set_name"))


def _grade_equal(a: Any, b: Any) -> bool:
    left, right = str(a).strip().lower(), str(b).strip().lower()
    try:
        return float(left) == float(right)
    except ValueError:
        return left == right


def optional_matches(row: Dict[str, Any], filters: SearchFilters) -> Dict[str, bool]:
    """Per-field outcome for every optional filter that was requested."""
    checks: Dict[str, bool] = {}
    if filters.year:
        checks["year"] = _text(row.get("year")) == filters.year
    if filters.parallel:
        variant = _slug_words(row.get("variant") or row.get("parallel"))
        checks["parallel"] = bool(variant) and _slug_words(filters.parallel) in variant
    if filters.grader:
        checks["grader"] = str(row.get("grader") or "").strip().lower() == filters.grader.lower()
    if filters.grade:
        checks["grade"] = row.get("grade") is not None and _grade_equal(row["grade"], filters.grade)
    if filters.card_number:
        row_number = normalize_card_number(row.get("card_number"))
        checks["card_number"] = bool(row_number) and row_number == normalize_card_number(
            filters.card_number
        )
    return checks


def matches_optional(row: Dict[str, Any], filters: SearchFilters) -> bool:
    return all(optional_matches(row, filters).values())


def _tokens(*values: Any) -> set:
    tokens = set()
    for value in values:
        tokens.update(_slug_words(value).split())
    return tokens


def text_score(row: Dict[str, Any], filters: SearchFilters) -> float:
    """Jaccard overlap between the requested variant fields and the row's."""
    wanted = _tokens(
        filters.parallel, normalize_card_number(filters.card_number), filters.grader, filters.grade
    )
    have = _tokens(
        row.get("variant"), normalize_card_number(row.get("card_number")), row.get("grader"), row.get("grade")
    )
    if not wanted or not have:
        return 0.0
    return len(wanted & have) / len(wanted | have)


def _year_key(row: Dict[str, Any]) -> int:
    try:
        return int(str(row.get("year")).strip()[:4])
    except (TypeError, ValueError):
        return 0


def rank_cards(rows: List[Dict[str, Any]], filters: SearchFilters) -> List[Dict[str, Any]]:
    """More optional-filter matches first, then closer variant text, then newer year."""

    def sort_key(row):
        match_count = sum(1 for ok in optional_matches(row, filters).values() if ok)
        return (match_count, text_score(row, filters), _year_key(row))

    return sorted(rows, key=sort_key, reverse=True)


def run_card_search(
    rows: List[Dict[str, Any]],
    filters: SearchFilters,
    relax_optional: Optional[bool] = None,
    limit: Optional[int] = None,
) -> CardSearchResult:
    """
    Filter catalog rows against the search filters.

    A zero-result strict pass is a legitimate empty answer; ``can_relax`` tells
    the caller whether dropping the optional filters would find something, and
    rows are only returned relaxed when the caller asked for it.
    """
    relax = filters.relax_optional if relax_optional is None else relax_optional
    limit = _parse_limit(filters.limit if limit is None else limit)

    base = [row for row in rows if matches_required(row, filters)]
    strict = [row for row in base if matches_optional(row, filters)]
    if strict:
        return CardSearchResult(results=rank_cards(strict, filters)[:limit])

    relaxable = filters.has_optional and bool(base)
    if relax and relaxable:
        return CardSearchResult(results=rank_cards(base, filters)[:limit], relaxed=True)
    return CardSearchResult(results=[], relaxed=False, can_relax=relaxable and not relax)

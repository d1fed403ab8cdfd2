"""
Deterministic listing relevance engine: card-number extraction, title scoring,
progressive hard filtering of sold/for-sale listings, and exact/likely/close
tiering of search candidates against a parsed query.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from src.models.card import Listing, ListingTier, QueryIntent, SearchMode
from src.utils.identity import infer_brand_from_set
from src.utils.logger import get_logger

match_logger = get_logger("search.match", "INFO")


def _normalize_text(text: str) -> str:
    """Normalize text: trim, collapse whitespace, lowercase, keep alphanumerics + dashes + plus."""
    if not text:
        return ""

    normalized = re.sub(r"\s+", " ", text.lower().strip())
    normalized = re.sub(r"[^\w\s\-\+]", " ", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def _tokenize(text: Optional[str]) -> List[str]:
    normalized = _normalize_text(text or "")
    return normalized.split() if normalized else []


# ============================================================================
# CARD NUMBER EXTRACTION
# ============================================================================

# Ordered pattern table: (regex, tag). "/349" is a print run, never a card number.
CARD_NUMBER_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"#\s*(\d+)\b"), "hash"),
    (re.compile(r"\bno\.?\s*(\d+)\b", re.IGNORECASE), "no"),
    (re.compile(r"\bcard\s+(\d+)\b", re.IGNORECASE), "card"),
]

YEAR_LIKE = re.compile(r"^(?:19|20)\d{2}$")


def extract_card_numbers(title: Optional[str]) -> List[str]:
    """
    Card numbers mentioned in a listing title, deduped in first-seen order.

    "#349", "# 349", "No. 349", "No 349" and "Card 349" all yield "349";
    "Card 2024" does not (year), and "/349" does not (serial numbering).
    """
    found: List[str] = []
    for pattern, tag in CARD_NUMBER_PATTERNS:
        for match in pattern.finditer(title or ""):
            number = match.group(1)
            if tag == "card" and YEAR_LIKE.match(number):
                continue
            if number not in found:
                found.append(number)
    return found


# ============================================================================
# TITLE SCORING
# ============================================================================

SCORE_WEIGHTS = {
    "grade_match": 10,
    "set_match": 8,
    "card_number_match": 6,
    "card_number_missing": -3,
    "parallel_match": 5,
    "holo_prizm_synonym": 5,
    "silver_prizm": 5,
    "rated_rookie": 4,
    "wrong_set": -8,
    "junk": -5,
    "unwanted_no_huddle": -5,
    "unwanted_insert": -5,
}

JUNK_SIGNALS = [
    re.compile(r"lot of"),
    re.compile(r"card lot"),
    re.compile(r"\bbreak\b"),
    re.compile(r"\bdigital\b"),
    re.compile(r"\bcustom\b"),
    re.compile(r"\breprint\b"),
    re.compile(r"\brp\b"),
    re.compile(r"\bcopy\b"),
]

# Actual insert sub-sets. Generic descriptors ("refractor", "variation") stay out:
# sellers pad titles with them and they would reject legitimate parallels.
INSERT_KEYWORDS = [
    "emergent",
    "instant impact",
    "fireworks",
    "stargazing",
    "downtown",
    "kaboom",
    "color blast",
    "colorblast",
    "color-blast",
    "color wheel",
    "stained glass",
    "color wave",
    "illumination",
    "intro",
    "sophomore stars",
    "all americans",
    "all-americans",
    "draft picks",
    "no huddle",
    "rookie gear",
    "deca brilliance",
    "next level",
    "sensational",
    "widescreen",
    "instant classic",
    "game breaker",
    "rookie revolution",
    "color pop",
    "rookie patch",
    "flashback rookie",
]

# product line -> lines that must not appear alongside it
COMPETING_LINES = {
    "prizm": ["phoenix", "optic", "mosaic", "select"],
    "mosaic": ["phoenix", "optic", "select"],
    "optic": ["phoenix", "mosaic", "select"],
    "select": ["phoenix", "mosaic", "optic"],
    "phoenix": ["mosaic", "optic", "select"],
}

LOT_PATTERNS = [
    re.compile(r"\blot\b"),
    re.compile(r"\bbundle\b"),
    re.compile(r"\b\d+\s*cards?\b"),
    re.compile(r"\b\d+x\b"),
    re.compile(r"\bcollection\b"),
    re.compile(r"\bset\b(?!\s+name)"),
    re.compile(r"\bgroup\b"),
    re.compile(r"\bmixed\b"),
    re.compile(r"\brandom\b"),
    re.compile(r"\bpick\b"),
    re.compile(r"\bchoose\b"),
]

TITLE_GRADE_PATTERN = re.compile(r"\b(psa|bgs|sgc|cgc)\s*(\d+(?:\.\d+)?)\b", re.IGNORECASE)


@dataclass
class ScoreSignals:
    """What the searcher asked for, as seen by the title scorer."""

    wants_psa10: bool = False
    wants_silver_prizm: bool = False
    wants_no_huddle: bool = False
    wants_insert: bool = False
    card_number: Optional[str] = None
    selected_set: Optional[str] = None
    selected_parallel: Optional[str] = None

    @classmethod
    def from_request(
        cls,
        set_name: Optional[str] = None,
        parallel: Optional[str] = None,
        grade: Optional[str] = None,
        card_number: Optional[str] = None,
    ) -> "ScoreSignals":
        parallel_lower = (parallel or "").lower().strip()
        grade_lower = (grade or "").lower().strip()
        return cls(
            wants_psa10="psa" in grade_lower and "10" in grade_lower,
            wants_silver_prizm="silver" in parallel_lower and "prizm" in parallel_lower,
            wants_no_huddle="no huddle" in parallel_lower,
            wants_insert=has_insert_signal(parallel_lower),
            card_number=clean_card_number(card_number),
            selected_set=set_name,
            selected_parallel=parallel,
        )


def clean_card_number(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = re.sub(r"^(#|no\.?)\s*", "", str(value).strip(), flags=re.IGNORECASE).strip()
    return cleaned or None


def has_insert_signal(text: str) -> bool:
    lower = (text or "").lower()
    return any(keyword in lower for keyword in INSERT_KEYWORDS)


def score_listing_title(title: str, signals: ScoreSignals) -> int:
    """
    Additive relevance score of a listing title against the search signals.

    Point values live in ``SCORE_WEIGHTS``. Only their ordering matters: a
    matching "#N" always outranks a title with no number at all, and a title
    with no number scores lower when a number was requested than when none was.
    """
    lower = (title or "").lower()
    weights = SCORE_WEIGHTS
    score = 0

    if signals.wants_psa10 and any(
        marker in lower for marker in ("psa 10", "psa10", "gem mint", "gem mt")
    ):
        score += weights["grade_match"]

    set_lower = (signals.selected_set or "").lower().strip()
    if set_lower and set_lower in lower:
        score += weights["set_match"]

    if signals.card_number:
        found = extract_card_numbers(lower)
        if signals.card_number in found:
            score += weights["card_number_match"]
        elif not found:
            score += weights["card_number_missing"]

    parallel_lower = (signals.selected_parallel or "").lower().strip()
    if parallel_lower:
        if parallel_lower in lower:
            score += weights["parallel_match"]
        if "holo" in parallel_lower and "holo prizm" in lower:
            score += weights["holo_prizm_synonym"]
        if signals.wants_silver_prizm and "silver" in lower and "prizm" in lower:
            score += weights["silver_prizm"]

    if "rated rookie" in lower or re.search(r"\brr\b", lower):
        score += weights["rated_rookie"]

    if set_lower == "optic" and "prizm" in lower and "optic" not in lower and "holo prizm" not in lower:
        score += weights["wrong_set"]
    if set_lower == "prizm" and "optic" in lower and "prizm" not in lower:
        score += weights["wrong_set"]

    if any(pattern.search(lower) for pattern in JUNK_SIGNALS):
        score += weights["junk"]

    if not signals.wants_no_huddle and "no huddle" in lower:
        score += weights["unwanted_no_huddle"]
    if not signals.wants_insert and has_insert_signal(lower):
        score += weights["unwanted_insert"]

    return score


# ============================================================================
# HARD FILTERS
# ============================================================================


def is_lot_or_bundle(title: str) -> bool:
    lower = (title or "").lower()
    return any(pattern.search(lower) for pattern in LOT_PATTERNS)


def listing_matches_set(title: str, set_name: Optional[str]) -> bool:
    """Reject titles from a competing product line (Prizm vs Phoenix, Optic vs Mosaic)."""
    if not set_name or not set_name.strip():
        return True
    lower = (title or "").lower()
    set_lower = set_name.lower().strip().replace("prism", "prizm")

    for line, competitors in COMPETING_LINES.items():
        if line not in set_lower:
            continue
        present = line in lower or (line == "prizm" and "prism" in lower)
        if not present:
            return False
        return not any(other in lower for other in competitors if other not in set_lower)
    return True


def matches_parallel_strict(title: str, parallel: Optional[str]) -> bool:
    """Every parallel token must be in the title ("prizm" also accepts "prism")."""
    parallel_lower = (parallel or "").lower().strip()
    if not parallel_lower:
        return True
    lower = (title or "").lower()

    if ("no huddle" in parallel_lower) != ("no huddle" in lower):
        return False

    for token in parallel_lower.replace("prism", "prizm").split():
        if token == "prizm":
            if "prizm" not in lower and "prism" not in lower:
                return False
        elif token not in lower:
            return False
    return True


def title_matches_grade(title: str, wanted_grade: Optional[str]) -> bool:
    """False only when the title names the same grader with a different grade."""
    if not wanted_grade:
        return True
    wanted = TITLE_GRADE_PATTERN.search(wanted_grade.lower())
    if not wanted:
        return True
    grader, value = wanted.group(1).lower(), wanted.group(2)
    for match in TITLE_GRADE_PATTERN.finditer((title or "").lower()):
        if match.group(1).lower() == grader and match.group(2) != value:
            return False
    return True


@dataclass
class ListingFilterParams:
    set_name: Optional[str] = None
    parallel: Optional[str] = None
    grade: Optional[str] = None
    card_number: Optional[str] = None
    exclude_lots: bool = True


@dataclass(frozen=True)
class FilterLevel:
    name: str
    require_card_number: bool
    enforce_grade: bool
    enforce_insert_check: bool


# Set and parallel are hard at every level. A title naming a different card
# number than the one requested is rejected at every level; the first level
# additionally requires the requested number to be present.
FILTER_LEVELS = [
    FilterLevel("strict", True, True, True),
    FilterLevel("no-card-number", False, True, True),
    FilterLevel("no-card-number-grade", False, False, True),
    FilterLevel("relaxed-all", False, False, False),
]


def _passes(listing: Listing, params: ListingFilterParams, level: FilterLevel) -> bool:
    title = (listing.title or "").lower()
    if not title:
        return False

    if params.exclude_lots and is_lot_or_bundle(title):
        return False
    if not listing_matches_set(title, params.set_name):
        return False

    parallel_lower = (params.parallel or "").lower().strip()
    wants_insert = has_insert_signal(parallel_lower)
    if "no huddle" not in parallel_lower and "no huddle" in title:
        return False
    if level.enforce_insert_check and not wants_insert and has_insert_signal(title):
        return False
    if not matches_parallel_strict(title, parallel_lower):
        return False

    wanted_number = clean_card_number(params.card_number)
    if wanted_number:
        found = extract_card_numbers(title)
        if found and wanted_number not in found:
            return False
        if level.require_card_number and wanted_number not in found:
            return False

    if level.enforce_grade and not title_matches_grade(title, params.grade):
        return False
    return True


def filter_listings(
    listings: List[Listing], params: ListingFilterParams
) -> Tuple[List[Listing], str]:
    """
    Walk the filter levels from strict to relaxed and stop at the first level
    with survivors. Returns the survivors ranked by title score, and the level name.
    """
    if not listings:
        return [], FILTER_LEVELS[0].name

    survivors: List[Listing] = []
    level = FILTER_LEVELS[0]
    for level in FILTER_LEVELS:
        survivors = [item for item in listings if _passes(item, params, level)]
        if survivors:
            break

    if level is not FILTER_LEVELS[0]:
        match_logger.info(
            f"⚠️ relaxed listing filter to '{level.name}': {len(survivors)}/{len(listings)} survive"
        )

    signals = ScoreSignals.from_request(
        set_name=params.set_name,
        parallel=params.parallel,
        grade=params.grade,
        card_number=params.card_number,
    )
    ranked = sorted(survivors, key=lambda item: score_listing_title(item.title, signals), reverse=True)
    return ranked, level.name


# ============================================================================
# INTENT TIERING
# ============================================================================

TIER_WEIGHTS = {
    "player": 8,
    "set": 5,
    "brand": 3,
    "year": 3,
    "variant": 2,
    "grader": 2,
    "grade": 2,
    "card_number": 3,
    "text": 4,
}

MODE_RATIOS = {
    SearchMode.watchlist: {"exact": 0.78, "close": 0.38},
    SearchMode.collection: {"exact": 0.70, "close": 0.32},
}

# field -> (weight key, share of the weight lost on a mismatch)
LOCKED_PENALTIES = {
    "year": ("year", 0.6),
    "brand": ("brand", 0.6),
    "line": ("set", 0.6),
    "card_number": ("card_number", 0.6),
    "parallel": ("variant", 0.5),
    "grader": ("grader", 0.5),
    "grade": ("grade", 0.5),
}


@dataclass
class ScoredListing:
    listing: Listing
    score: float
    confidence: float
    tier: Optional[ListingTier]
    breakdown: Dict[str, float] = field(default_factory=dict)
    mismatched: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            **self.listing.to_dict(),
            "score": round(self.score, 2),
            "confidence": round(self.confidence, 3),
            "tier": self.tier.value if self.tier else None,
            "mismatched": self.mismatched,
        }


@dataclass
class TieredListings:
    exact: List[ScoredListing] = field(default_factory=list)
    likely: List[ScoredListing] = field(default_factory=list)
    close: List[ScoredListing] = field(default_factory=list)
    hidden_count: int = 0

    @property
    def total(self) -> int:
        return len(self.exact) + len(self.likely) + len(self.close) + self.hidden_count

    def to_dict(self) -> Dict:
        return {
            "exact": [item.to_dict() for item in self.exact],
            "likely": [item.to_dict() for item in self.likely],
            "close": [item.to_dict() for item in self.close],
            "hiddenCount": self.hidden_count,
        }


@dataclass
class TierSignals:
    player: Optional[str] = None
    set_name: Optional[str] = None
    brand: Optional[str] = None
    year: Optional[str] = None
    variant_tokens: List[str] = field(default_factory=list)
    grader: Optional[str] = None
    grade: Optional[str] = None
    card_number: Optional[str] = None

    @classmethod
    def from_intent(cls, intent: QueryIntent) -> "TierSignals":
        set_name = " ".join(intent.requested_product_lines) or None
        grade_match = TITLE_GRADE_PATTERN.search(intent.normalized)
        numbers = extract_card_numbers(intent.raw)
        return cls(
            player=intent.player,
            set_name=set_name,
            brand=infer_brand_from_set(set_name),
            year=intent.year,
            variant_tokens=[*intent.parallel_tokens, *intent.insert_tokens],
            grader=grade_match.group(1).lower() if grade_match else None,
            grade=grade_match.group(2) if grade_match else None,
            card_number=numbers[0] if numbers else None,
        )


def _detect_phrases_in_title(query_tokens: List[str], normalized_title: str) -> Dict[str, int]:
    """
    Detect contiguous multi-word phrases from the query that appear in the title.
    Longer phrases win; overlapping shorter ones are skipped.
    """
    phrases = {}
    covered_positions = set()

    for length in range(len(query_tokens), 1, -1):
        for start_idx in range(len(query_tokens) - length + 1):
            positions = set(range(start_idx, start_idx + length))
            if positions.intersection(covered_positions):
                continue

            phrase = " ".join(query_tokens[start_idx : start_idx + length])
            if phrase in normalized_title:
                phrases[phrase] = length
                covered_positions.update(positions)

    return phrases


def _count_matched_words(query_tokens: List[str], normalized_title: str) -> int:
    """Words matched via phrases first, then remaining single words."""
    if not query_tokens or not normalized_title:
        return 0

    phrases = _detect_phrases_in_title(query_tokens, normalized_title)
    phrase_words = sum(phrases.values())
    covered = set()
    for phrase in phrases:
        tokens = phrase.split()
        for start in range(len(query_tokens) - len(tokens) + 1):
            if query_tokens[start : start + len(tokens)] == tokens:
                covered.update(range(start, start + len(tokens)))
                break

    single = sum(
        1
        for i, token in enumerate(query_tokens)
        if i not in covered and re.search(rf"\b{re.escape(token)}\b", normalized_title)
    )
    return phrase_words + single


def _overlap(needles: List[str], haystack: List[str], relative_to_needles: bool) -> float:
    needle_set = {t for t in needles if t}
    hay_set = {t for t in haystack if t}
    if not needle_set or not hay_set:
        return 0.0
    matches = len(needle_set & hay_set)
    denom = len(needle_set) if relative_to_needles else max(len(needle_set), len(hay_set))
    return matches / denom


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return _normalize_text(a or "") == _normalize_text(b or "")


def _listing_grade(listing: Listing) -> Tuple[Optional[str], Optional[str]]:
    if listing.grader and listing.grade:
        return listing.grader.lower(), str(listing.grade)
    match = TITLE_GRADE_PATTERN.search(listing.title or "")
    if match:
        return match.group(1).lower(), match.group(2)
    return None, None


def tier_thresholds(signals: TierSignals, mode: SearchMode) -> Dict[str, float]:
    """Raw-score cutoffs for each tier; ``likely`` sits midway between exact and close."""
    w = TIER_WEIGHTS
    max_score = w["text"]
    if signals.player:
        max_score += w["player"]
    if signals.set_name:
        max_score += w["set"]
    if signals.brand:
        max_score += w["brand"]
    if signals.year:
        max_score += w["year"]
    if signals.variant_tokens:
        max_score += w["variant"]
    if signals.grader:
        max_score += w["grader"]
    if signals.grade:
        max_score += w["grade"]
    if signals.card_number:
        max_score += w["card_number"]

    ratios = MODE_RATIOS[SearchMode(mode)]
    exact = max(w["player"], max_score * ratios["exact"])
    close = max(w["text"], max_score * ratios["close"])
    return {"max": max_score, "exact": exact, "likely": (exact + close) / 2, "close": close}


def score_candidate(
    signals: TierSignals,
    query_tokens: List[str],
    listing: Listing,
    max_score: float,
    locked: Optional[Dict[str, str]] = None,
) -> ScoredListing:
    w = TIER_WEIGHTS
    text = " ".join(
        filter(None, [listing.title, listing.player_name, listing.set_name, listing.variant])
    )
    normalized_text = _normalize_text(text)
    breakdown: Dict[str, float] = {}

    if signals.player:
        haystack = _tokenize(listing.player_name or listing.title)
        breakdown["player"] = w["player"] * _overlap(_tokenize(signals.player), haystack, True)
    if signals.set_name:
        haystack = _tokenize(listing.set_name or listing.title)
        breakdown["set"] = w["set"] * _overlap(_tokenize(signals.set_name), haystack, True)

    listing_brand = infer_brand_from_set(listing.set_name or listing.title)
    if signals.brand:
        breakdown["brand"] = w["brand"] if _same(listing_brand, signals.brand) else 0
    if signals.year:
        listing_year = listing.year
        if not listing_year:
            year_match = re.search(r"\b(?:19|20)\d{2}\b", listing.title or "")
            listing_year = year_match.group(0) if year_match else None
        breakdown["year"] = w["year"] if _same(listing_year, signals.year) else 0
    if signals.variant_tokens:
        variant_tokens = _tokenize(" ".join(signals.variant_tokens))
        haystack = _tokenize(listing.variant or listing.title)
        breakdown["variant"] = w["variant"] * _overlap(variant_tokens, haystack, False)

    grader, grade = _listing_grade(listing)
    if signals.grader:
        breakdown["grader"] = w["grader"] if _same(grader, signals.grader) else 0
    if signals.grade:
        breakdown["grade"] = w["grade"] if _same(grade, signals.grade) else 0

    listing_number = clean_card_number(listing.card_number)
    if listing_number is None:
        numbers = extract_card_numbers(listing.title)
        listing_number = numbers[0] if numbers else None
    if signals.card_number:
        breakdown["card_number"] = (
            w["card_number"] if _same(listing_number, signals.card_number) else 0
        )

    matched = _count_matched_words(query_tokens, normalized_text)
    breakdown["text"] = w["text"] * (matched / len(query_tokens) if query_tokens else 0)

    score = sum(breakdown.values())

    mismatched: Dict[str, str] = {}
    penalty = 0.0
    candidate_values = {
        "year": listing.year,
        "brand": listing_brand,
        "line": listing.set_name,
        "card_number": listing_number,
        "parallel": listing.variant,
        "grader": grader,
        "grade": grade,
    }
    for name, wanted in (locked or {}).items():
        if name not in LOCKED_PENALTIES or not wanted:
            continue
        have = candidate_values.get(name)
        if have and not _same(have, wanted):
            weight_key, share = LOCKED_PENALTIES[name]
            mismatched[name] = have
            penalty += w[weight_key] * share

    if penalty:
        breakdown["penalty"] = -penalty
        score = max(0.0, score - penalty)

    confidence = max(0.0, min(1.0, score / max_score)) if max_score > 0 else 0.0
    return ScoredListing(
        listing=listing,
        score=score,
        confidence=confidence,
        tier=None,
        breakdown=breakdown,
        mismatched=mismatched,
    )


def tier_listings(
    intent: QueryIntent,
    listings: List[Listing],
    mode: SearchMode = SearchMode.watchlist,
    locked: Optional[Dict[str, str]] = None,
) -> TieredListings:
    """
    Score every candidate against the parsed query and bucket it into
    exact / likely / close. Candidates under the close cutoff are not returned
    but are counted in ``hidden_count``.
    """
    signals = TierSignals.from_intent(intent)
    thresholds = tier_thresholds(signals, mode)
    query_tokens = _tokenize(intent.normalized)

    result = TieredListings()
    scored = [
        score_candidate(signals, query_tokens, listing, thresholds["max"], locked)
        for listing in listings
    ]
    scored.sort(key=lambda item: item.score, reverse=True)

    for item in scored:
        if item.score >= thresholds["exact"]:
            item.tier = ListingTier.exact
            result.exact.append(item)
        elif item.score >= thresholds["likely"]:
            item.tier = ListingTier.likely
            result.likely.append(item)
        elif item.score >= thresholds["close"]:
            item.tier = ListingTier.close
            result.close.append(item)
        else:
            result.hidden_count += 1

    match_logger.info(
        f"📊 tiered {len(listings)} candidates: exact={len(result.exact)} "
        f"likely={len(result.likely)} close={len(result.close)} hidden={result.hidden_count}"
    )
    return result

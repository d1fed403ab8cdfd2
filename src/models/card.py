"""
Domain types shared by the card identity, search and CMV pipeline.
"""

from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import dateutil.parser as date_parser


def parse_sold_at(value) -> Optional[datetime]:
    """Safely parse a sold date into an aware UTC datetime (naive values are taken as UTC)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.parse(str(value))
        except (ValueError, OverflowError, TypeError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CardStock(str, Enum):
    paper = "paper"
    chromium = "chromium"
    unknown = "unknown"


class Confidence(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"


CONFIDENCE_ORDER = [Confidence.low, Confidence.medium, Confidence.high]


class CmvConfidence(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"
    unavailable = "unavailable"


class CmvStatus(str, Enum):
    pending = "pending"
    ready = "ready"
    failed = "failed"
    unavailable = "unavailable"


class CmvUiState(str, Enum):
    ready = "ready"
    pending = "pending"
    pending_stale = "pending_stale"
    failed = "failed"
    unavailable = "unavailable"


class CmvMethod(str, Enum):
    median = "median"
    trimmed_mean = "trimmedMean"
    none = "none"


class ListingTier(str, Enum):
    exact = "exact"
    likely = "likely"
    close = "close"


class SearchMode(str, Enum):
    watchlist = "watchlist"
    collection = "collection"


class GradingRating(str, Enum):
    strong_yes = "strong_yes"
    yes = "yes"
    maybe = "maybe"
    no = "no"


@dataclass(frozen=True)
class CardIdentity:
    """Canonical description of a physical card."""

    player: Optional[str] = None
    year: Optional[str] = None
    brand: Optional[str] = None
    set_name: Optional[str] = None
    parallel: Optional[str] = None
    card_number: Optional[str] = None
    card_stock: CardStock = CardStock.unknown
    confidence: Confidence = Confidence.low
    field_confidence: Dict[str, Confidence] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def with_changes(self, **changes) -> "CardIdentity":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["card_stock"] = self.card_stock.value
        data["confidence"] = self.confidence.value
        data["field_confidence"] = {
            k: v.value for k, v in self.field_confidence.items()
        }
        return data


@dataclass
class QueryIntent:
    """Structured decomposition of a free-text search string."""

    raw: str
    normalized: str
    year: Optional[str] = None
    player_tokens: List[str] = field(default_factory=list)
    product_tokens: List[str] = field(default_factory=list)
    insert_tokens: List[str] = field(default_factory=list)
    parallel_tokens: List[str] = field(default_factory=list)
    has_rookie_keyword: bool = False
    has_draft_or_college_signal: bool = False
    rookie_tokens: List[str] = field(default_factory=list)
    draft_college_tokens: List[str] = field(default_factory=list)
    noise_tokens: List[str] = field(default_factory=list)
    generic_tokens: List[str] = field(default_factory=list)
    product_specified: bool = False
    requested_product_lines: List[str] = field(default_factory=list)

    @property
    def player(self) -> Optional[str]:
        return " ".join(self.player_tokens) if self.player_tokens else None


@dataclass
class Listing:
    """A candidate marketplace item or catalog row."""

    title: str
    price: Optional[float] = None
    sold_at: Optional[datetime] = None
    url: Optional[str] = None
    id: Optional[str] = None
    image: Optional[str] = None
    player_name: Optional[str] = None
    set_name: Optional[str] = None
    year: Optional[str] = None
    variant: Optional[str] = None
    grader: Optional[str] = None
    grade: Optional[str] = None
    card_number: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Listing":
        """Build a listing from a loosely shaped source row (missing optionals tolerated)."""
        price = row.get("price")
        try:
            price = float(price) if price is not None else None
        except (TypeError, ValueError):
            price = None
        year = row.get("year")
        return cls(
            title=str(row.get("title") or ""),
            price=price,
            sold_at=parse_sold_at(row.get("sold_at") or row.get("date")),
            url=row.get("url") or row.get("post_url"),
            id=str(row["id"]) if row.get("id") is not None else None,
            image=row.get("image") or row.get("image_url"),
            player_name=row.get("player_name"),
            set_name=row.get("set_name"),
            year=str(year) if year is not None else None,
            variant=row.get("variant") or row.get("parallel"),
            grader=row.get("grader") or row.get("grading_company"),
            grade=str(row["grade"]) if row.get("grade") is not None else None,
            card_number=(
                str(row["card_number"]) if row.get("card_number") is not None else None
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["sold_at"] = self.sold_at.isoformat() if self.sold_at else None
        return data


@dataclass
class CompsQuery:
    """What to ask a listing source for."""

    player: str
    year: Optional[str] = None
    set_name: Optional[str] = None
    grade: Optional[str] = None
    parallel: Optional[str] = None
    card_number: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    limit: int = 100

    def to_text(self) -> str:
        parts = [self.year, self.set_name, self.player, self.parallel, *self.keywords]
        if self.card_number:
            parts.append(f"#{self.card_number}")
        parts.append(self.grade)
        return " ".join(p for p in parts if p)

    def cache_key(self) -> str:
        return self.to_text().lower()


@dataclass
class SearchFilters:
    """Required vs optional filter set for a catalog search."""

    player_id: str
    set_slug: str
    year: Optional[str] = None
    parallel: Optional[str] = None
    grader: Optional[str] = None
    grade: Optional[str] = None
    card_number: Optional[str] = None
    relax_optional: bool = False
    limit: int = 25

    OPTIONAL_FIELDS = ("year", "parallel", "grader", "grade", "card_number")

    @property
    def has_optional(self) -> bool:
        return any(getattr(self, name) for name in self.OPTIONAL_FIELDS)


@dataclass
class CompStats:
    cmv: Optional[float] = None
    avg: Optional[float] = None
    low: Optional[float] = None
    high: Optional[float] = None
    count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GradeCmv:
    price: Optional[float] = None
    n: int = 0
    method: CmvMethod = CmvMethod.none
    last_sold_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "n": self.n,
            "method": self.method.value,
            "lastSoldAt": self.last_sold_at.isoformat() if self.last_sold_at else None,
        }


@dataclass
class GradingOption:
    grader: str
    fee: float
    expected_value: float
    net_gain: float
    roi: float
    used_fallback: bool = False
    max_n: int = 0


@dataclass
class WorthGradingResult:
    raw_price: Optional[float]
    expected_value: Optional[float]
    net_gain: Optional[float]
    roi: Optional[float]
    rating: GradingRating
    confidence: Confidence
    best_grader: Optional[str] = None
    options: List[GradingOption] = field(default_factory=list)
    explanation: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["rating"] = self.rating.value
        data["confidence"] = self.confidence.value
        return data

"""
Free-text search query parser.

Turns "2024 jayden daniels optic rated rookie holo psa10" into a QueryIntent by
walking the tokens once with a cursor that can take a two-word phrase before
falling back to single words. Player tokens are a heuristic: the first few
generic tokens without digits, which is usually but not always the name.
"""

import re
from typing import Iterable, List, Optional, Tuple

from src.models.card import QueryIntent

YEAR_PATTERN = re.compile(r"\b(?:19|20)\d{2}\b")


def normalize_base(raw: Optional[str]) -> str:
    """Lowercase, strip punctuation except '/', split 'psa10' into 'psa 10', collapse whitespace."""
    text = (raw or "").lower()
    text = re.sub(r"[^\w\s/]", " ", text)
    text = text.replace("_", " ")
    text = re.sub(r"\b(psa|bgs|sgc|cgc)(\d+(?:\.\d+)?)\b", r"\1 \2", text)
    return re.sub(r"\s+", " ", text).strip()


def _table(values: Iterable[str]) -> Tuple[str, ...]:
    return tuple(normalize_base(v) for v in values)


PRODUCT_KEYWORDS = _table(
    ["prizm", "optic", "select", "mosaic", "donruss", "chronicles", "contenders", "phoenix"]
)

INSERT_KEYWORDS = _table(
    ["rated rookie", "downtown", "my house", "kaboom", "rookies & stars"]
)

PARALLEL_KEYWORDS = _table(
    [
        "silver", "holo", "hollow", "red", "blue", "green", "gold", "purple",
        "orange", "pink", "black", "pulsar", "checkerboard", "mojo", "wave",
        "/199", "/99", "/75", "/50", "/25", "/10", "/5", "/1",
    ]
)

DRAFT_COLLEGE_KEYWORDS = _table(
    ["draft picks", "draft", "college", "collegiate", "ncaa", "university", "campus"]
)

ROOKIE_KEYWORDS = ("rookie", "rc")

NOISE_KEYWORDS = _table(
    ["card", "cards", "psa", "bgs", "sgc", "cgc", "lot", "investment", "hot"]
)

# applied as whole-word replacements, in order
SYNONYMS = [
    ("rated rookies", "rated rookie"),
    ("rr", "rated rookie"),
    ("silver prism", "silver"),
    ("silver prizm", "silver"),
]


def _dedupe(tokens: List[str]) -> List[str]:
    seen = set()
    out = []
    for token in tokens:
        if token not in seen:
            seen.add(token)
            out.append(token)
    return out


def apply_synonyms(text: str) -> str:
    for source, target in SYNONYMS:
        text = re.sub(rf"(?<![\w/]){re.escape(source)}(?![\w/])", target, text)
    return text


def parse_query(raw: Optional[str]) -> QueryIntent:
    """Deterministic, single pass. Every token lands in exactly one bucket."""
    if raw is not None and not isinstance(raw, str):
        raise TypeError("search text must be a string")

    normalized = normalize_base(raw)
    year_match = YEAR_PATTERN.search(normalized)
    year = year_match.group(0) if year_match else None

    tokens = apply_synonyms(normalized).split()

    product: List[str] = []
    inserts: List[str] = []
    parallels: List[str] = []
    rookie: List[str] = []
    draft: List[str] = []
    noise: List[str] = []
    generic: List[str] = []
    year_taken = False

    i = 0
    while i < len(tokens):
        token = tokens[i]
        bigram = f"{token} {tokens[i + 1]}" if i + 1 < len(tokens) else ""

        if token == year and not year_taken:
            year_taken = True
            i += 1
            continue

        if bigram and bigram in DRAFT_COLLEGE_KEYWORDS:
            draft.append(bigram)
            i += 2
            continue
        if token in DRAFT_COLLEGE_KEYWORDS:
            draft.append(token)
            i += 1
            continue

        if bigram and bigram in INSERT_KEYWORDS:
            inserts.append(bigram)
            i += 2
            continue
        if token in INSERT_KEYWORDS:
            inserts.append(token)
            i += 1
            continue

        if token in PRODUCT_KEYWORDS:
            product.append(token)
        elif token in PARALLEL_KEYWORDS:
            parallels.append(token)
        elif token in ROOKIE_KEYWORDS:
            rookie.append(token)
        elif token in NOISE_KEYWORDS:
            noise.append(token)
        else:
            generic.append(token)
        i += 1

    player_tokens = [t for t in generic[:3] if not re.search(r"\d", t)]
    product_lines = _dedupe(product)
    insert_tokens = _dedupe(inserts)

    return QueryIntent(
        raw=raw or "",
        normalized=normalized,
        year=year,
        player_tokens=player_tokens,
        product_tokens=product_lines,
        insert_tokens=insert_tokens,
        parallel_tokens=_dedupe(parallels),
        has_rookie_keyword=bool(rookie) or any("rookie" in t for t in insert_tokens),
        has_draft_or_college_signal=bool(draft),
        rookie_tokens=_dedupe(rookie),
        draft_college_tokens=_dedupe(draft),
        noise_tokens=_dedupe(noise),
        generic_tokens=generic,
        product_specified=bool(product_lines),
        requested_product_lines=product_lines,
    )

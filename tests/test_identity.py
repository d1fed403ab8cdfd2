import pytest

from src.models.card import CardStock, Confidence
from src.utils.identity import (
    PARALLEL_INVALID,
    PARSE_ERROR,
    YEAR_CONFLICT,
    YEAR_OUT_OF_RANGE,
    derive_card_stock,
    normalize,
    normalize_card_number,
    normalize_identification_result,
    normalize_identity,
    parse_first_json_object,
)


# ---------- Player / set canonicalization ----------


def test_alias_resolves_to_canonical_player_with_high_confidence():
    identity = normalize({"player": "wemby", "set": "Prizm", "year": 2023, "confidence": "high"}, current_year=2025)
    assert identity.player == "Victor Wembanyama"
    assert identity.field_confidence["player"] == Confidence.high
    assert identity.year == "2023"
    assert identity.card_stock == CardStock.chromium


def test_unknown_player_passes_through_at_low_confidence():
    identity = normalize({"player": "  Some   Prospect ", "confidence": "high"}, current_year=2025)
    assert identity.player == "Some Prospect"
    assert identity.field_confidence["player"] == Confidence.low
    assert identity.confidence == Confidence.low


@pytest.mark.parametrize(
    "set_name,expected",
    [
        ("Topps Chrome", CardStock.chromium),
        ("Donruss Optic", CardStock.chromium),
        ("Topps Finest", CardStock.chromium),
        ("Donruss", CardStock.paper),
        ("Upper Deck", CardStock.paper),
        ("Mystery Set", CardStock.unknown),
        (None, CardStock.unknown),
    ],
)
def test_derive_card_stock(set_name, expected):
    assert derive_card_stock(set_name) == expected


def test_chromium_parallel_on_paper_is_dropped_and_flagged():
    identity = normalize(
        {"player": "Caitlin Clark", "set": "Donruss", "parallel": "Silver Prizm", "confidence": "high"},
        current_year=2025,
    )
    assert identity.card_stock == CardStock.paper
    assert identity.parallel is None
    assert PARALLEL_INVALID in identity.warnings
    assert "parallel" not in identity.field_confidence


def test_chromium_parallel_on_chromium_is_kept():
    identity = normalize({"player": "Caitlin Clark", "set": "Prizm", "parallel": "Silver Prizm"}, current_year=2025)
    assert identity.parallel == "Silver Prizm"
    assert PARALLEL_INVALID not in identity.warnings


def test_finest_refractor_is_kept():
    identity = normalize({"player": "Shohei Ohtani", "set": "Topps Finest", "parallel": "Refractor"}, current_year=2025)
    assert identity.card_stock == CardStock.chromium
    assert identity.parallel == "Refractor"
    assert PARALLEL_INVALID not in identity.warnings


@pytest.mark.parametrize(
    "raw,expected",
    [("#042", "042"), ("No. 12", "12"), ("  # 7 ", "7"), ("", None), (None, None)],
)
def test_normalize_card_number(raw, expected):
    assert normalize_card_number(raw) == expected


# ---------- Idempotence ----------


def test_normalize_identity_is_idempotent():
    first = normalize(
        {"player": "ant edwards", "set": "Donruss", "parallel": "Holo Prizm", "card_number": "#5", "confidence": "medium"},
        current_year=2025,
    )
    once = normalize_identity(first)
    twice = normalize_identity(once)
    assert once == twice
    assert once.player == "Anthony Edwards"
    assert once.parallel is None


def test_normalize_starts_fresh_each_call():
    a = normalize({"player": "Shohei Ohtani", "parallel": "Refractor", "set": "Topps Chrome"}, current_year=2025)
    b = normalize({"player": "Cooper Flagg"}, current_year=2025)
    assert b.parallel is None
    assert b.set_name is None
    assert a.parallel == "Refractor"


# ---------- Year resolution ----------


def test_user_confirmed_year_wins_and_conflict_is_flagged():
    identity = normalize(
        {"player": "Cooper Flagg", "ocr_text": "© 2023 Panini America, Inc."},
        known_year=2024,
        current_year=2025,
    )
    assert identity.year == "2024"
    assert identity.field_confidence["year"] == Confidence.high
    assert YEAR_CONFLICT in identity.warnings


def test_copyright_line_year_is_high_confidence():
    identity = normalize(
        {"player": "Cooper Flagg", "ocr_text": "Rookie card\n© 2023 Panini America, Inc."},
        current_year=2025,
    )
    assert identity.year == "2023"
    assert identity.field_confidence["year"] == Confidence.high


def test_implausible_model_year_is_rejected():
    identity = normalize({"player": "Cooper Flagg", "year": 2099, "confidence": "high"}, current_year=2025)
    assert identity.year is None
    assert YEAR_OUT_OF_RANGE in identity.warnings


# ---------- Malformed input ----------


def test_json_embedded_in_model_text_is_extracted():
    text = 'Sure! Here it is: {"player": "Caitlin Clark", "note": "brace } in string"} thanks'
    assert parse_first_json_object(text) == {"player": "Caitlin Clark", "note": "brace } in string"}
    assert normalize(text, current_year=2025).player == "Caitlin Clark"


@pytest.mark.parametrize("raw", ["no json here", "{not: valid}", 42, None])
def test_unparseable_input_yields_empty_identity(raw):
    identity = normalize(raw, current_year=2025)
    assert identity.warnings == [PARSE_ERROR]
    assert identity.player is None
    assert identity.confidence == Confidence.low


def test_parse_error_clears_flat_fields():
    result = normalize_identification_result(
        {
            "player_name": "Somebody",
            "year": "2020",
            "set_name": "Prizm",
            "card_identity": normalize("garbage", current_year=2025),
        }
    )
    assert result["player_name"] == ""
    assert result["players"] == []
    assert result["year"] is None
    assert result["set_name"] is None


def test_missing_flat_player_is_filled_from_identity():
    identity = normalize({"player": "Jayden Daniels"}, current_year=2025)
    result = normalize_identification_result({"card_identity": identity})
    assert result["player_name"] == "Jayden Daniels"
    assert result["players"] == ["Jayden Daniels"]

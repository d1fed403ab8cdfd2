import json
from datetime import datetime, timezone

from src.utils.ai_context import MAX_TOP, build_analyst_prompt, build_user_ai_context

NOW = datetime(2026, 10, 1, tzinfo=timezone.utc)

COLLECTION = [
    {"id": "a", "player_name": "Joe Burrow", "year": 2020, "est_cmv": 100, "purchase_price": 60, "created_at": "2026-01-01T00:00:00+00:00"},
    {"id": "b", "player_name": "Zion Williamson", "purchase_price": 40, "created_at": "2026-03-01T00:00:00+00:00"},
    {"id": "c", "player_name": "Luka Doncic", "est_cmv": 500, "created_at": "2025-01-01T00:00:00+00:00"},
]

WATCHLIST = [
    {"id": "w1", "player_name": "Victor Wembanyama", "target_price": 100, "estimated_cmv": 80},
    {"id": "w2", "player_name": "Chet Holmgren", "target_price": 50, "estimated_cmv": 70},
    {"id": "w3", "player_name": "Paolo Banchero", "target_price": 50},
]


def test_context_snapshot():
    searches = [{"query": "2020 prizm burrow", "kind": "comps"}]
    context = build_user_ai_context("user-1", COLLECTION, WATCHLIST, searches, now=NOW)

    assert context["user"] == {"id": "user-1"}
    assert context["collection_summary"] == {
        "total_cards": 3,
        "total_value": 640,
        "cost_basis": 100,
        "unrealized_pl": 40,
    }
    assert [c["id"] for c in context["collection_top"]] == ["c", "a", "b"]
    assert [c["id"] for c in context["collection_recent"]] == ["b", "a", "c"]
    assert context["collection_top"][0]["has_cmv"] is True
    assert context["collection_top"][2]["has_cmv"] is False

    assert context["watchlist_summary"] == {
        "total_cards": 3,
        "total_value_if_purchased": 150,
        "below_target_count": 1,
    }
    assert context["watchlist_below_target"] == [
        {
            "id": "w1",
            "display_name": "Victor Wembanyama",
            "target_price": 100,
            "est_value": 80,
            "delta": -20,
        }
    ]
    assert context["recent_searches"] == [
        {"query": "2020 prizm burrow", "kind": "comps", "created_at": NOW.isoformat()}
    ]
    assert context["app_time"] == NOW.isoformat()


def test_empty_user():
    context = build_user_ai_context("user-1", [], [], now=NOW)
    assert context["collection_summary"]["total_cards"] == 0
    assert context["collection_summary"]["unrealized_pl"] is None
    assert context["collection_top"] == []
    assert context["watchlist_below_target"] == []
    assert context["recent_searches"] == []


def test_lists_are_capped():
    collection = [{"id": str(i), "est_cmv": i} for i in range(25)]
    context = build_user_ai_context("user-1", collection, [], now=NOW)
    assert len(context["collection_top"]) == MAX_TOP
    assert context["collection_top"][0]["id"] == "24"


def test_prompt_embeds_rules_and_snapshot():
    context = build_user_ai_context("user-1", COLLECTION, WATCHLIST, now=NOW)
    messages = build_analyst_prompt(context, "What is my best card?")

    assert [m["role"] for m in messages] == ["system", "user"]
    assert messages[1]["content"] == "What is my best card?"

    system = messages[0]["content"]
    assert "HARD RULES:" in system
    assert "Never invent or guess cards the user owns or watches." in system
    marker = "USER CONTEXT (SOURCE OF TRUTH - JSON):\n"
    assert json.loads(system.split(marker, 1)[1]) == context

import asyncio
from datetime import datetime, timedelta, timezone

from src.db.watchlist import with_below_target
from src.handlers.watchlist_refresh import (
    MAX_PRICE_HISTORY,
    append_price_history,
    build_watchlist_query,
    refresh_watchlist_prices,
)
from src.models.card import Listing
from src.scheduler import CmvRefreshScheduler
from src.utils.errors import CmvPersistenceError, UpstreamSourceError

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def sold(title, price):
    return Listing(title=title, price=price, sold_at=datetime.now(timezone.utc) - timedelta(days=2))


WEMBY_PSA10 = [sold("2023 Prizm Victor Wembanyama PSA 10", p) for p in (100, 120, 140)]


class FakeSource:
    name = "fake"

    def __init__(self, listings=None, error=None):
        self.listings = listings or []
        self.error = error
        self.queries = []

    async def fetch_sold(self, query):
        self.queries.append(query)
        if self.error:
            raise self.error
        return list(self.listings)


class FakeWatchlistRepo:
    def __init__(self, rows, fail_ids=()):
        self.rows = {row["id"]: dict(row) for row in rows}
        self.fail_ids = set(fail_ids)
        self.cutoffs = []
        self.writes = []

    def list_for_price_check(self, checked_before, limit=50):
        self.cutoffs.append(checked_before)
        due = [
            row
            for row in self.rows.values()
            if not row.get("last_checked") or datetime.fromisoformat(row["last_checked"]) < checked_before
        ]
        return due[:limit]

    def update_price(self, item_id, payload):
        if item_id in self.fail_ids:
            raise CmvPersistenceError("Failed to persist watchlist price", {"item_id": item_id})
        self.writes.append(item_id)
        self.rows[item_id].update(payload)
        return self.rows[item_id]


def watched(item_id, **extra):
    return {
        "id": item_id,
        "user_id": "user-1",
        "player_name": "Victor Wembanyama",
        "year": 2023,
        "set_name": "Prizm",
        "grade": "PSA 10",
        "target_price": 150,
        "estimated_cmv": 200,
        **extra,
    }


def test_build_watchlist_query():
    query = build_watchlist_query(watched("w1", parallel_type="Silver", card_number="136"))
    assert query.player == "Victor Wembanyama"
    assert query.year == "2023"
    assert query.grade == "PSA 10"
    assert query.parallel == "Silver"
    assert query.card_number == "136"
    assert build_watchlist_query(watched("w1", grade="Raw")).grade is None


def test_price_history_is_capped():
    history = [{"price": float(i), "date": "2026-01-01"} for i in range(MAX_PRICE_HISTORY)]
    updated = append_price_history(history, 99.0, NOW)
    assert len(updated) == MAX_PRICE_HISTORY
    assert updated[0]["price"] == 1.0
    assert updated[-1] == {"price": 99.0, "date": "2026-10-01"}


def test_refresh_reprices_and_trips_target_alert():
    repo = FakeWatchlistRepo([watched("w1")])
    assert with_below_target(repo.rows["w1"])["below_target"] is False

    counts = asyncio.run(refresh_watchlist_prices(repo, FakeSource(WEMBY_PSA10), now=NOW))

    assert counts == {"processed": 1, "updated": 1, "unchanged": 0, "failed": 0}
    row = repo.rows["w1"]
    assert row["last_price"] == 120.0
    assert row["estimated_cmv"] == 120.0
    assert row["last_checked"] == NOW.isoformat()
    assert row["price_history"] == [{"price": 120.0, "date": "2026-10-01"}]
    assert with_below_target(row)["below_target"] is True


def test_only_items_due_for_a_check_are_repriced():
    repo = FakeWatchlistRepo(
        [
            watched("fresh", last_checked=(NOW - timedelta(hours=2)).isoformat()),
            watched("due", last_checked=(NOW - timedelta(hours=30)).isoformat()),
            watched("never"),
        ]
    )

    asyncio.run(refresh_watchlist_prices(repo, FakeSource(WEMBY_PSA10), now=NOW))

    assert repo.cutoffs == [NOW - timedelta(hours=24)]
    assert sorted(repo.writes) == ["due", "never"]


def test_no_comps_only_moves_last_checked():
    history = [{"price": 180.0, "date": "2026-09-01"}]
    repo = FakeWatchlistRepo([watched("w1", last_price=180.0, price_history=history)])

    counts = asyncio.run(refresh_watchlist_prices(repo, FakeSource([]), now=NOW))

    assert counts["unchanged"] == 1
    row = repo.rows["w1"]
    assert row["last_price"] == 180.0
    assert row["estimated_cmv"] == 200
    assert row["price_history"] == history
    assert row["last_checked"] == NOW.isoformat()


def test_other_grades_do_not_set_the_price():
    repo = FakeWatchlistRepo([watched("w1")])
    listings = [sold("2023 Prizm Victor Wembanyama", 20), sold("2023 Prizm Victor Wembanyama BGS 9.5", 90)]

    asyncio.run(refresh_watchlist_prices(repo, FakeSource(listings), now=NOW))

    assert "last_price" not in repo.rows["w1"]


def test_write_failure_is_counted_and_batch_continues():
    repo = FakeWatchlistRepo([watched("w1"), watched("w2")], fail_ids={"w1"})

    counts = asyncio.run(refresh_watchlist_prices(repo, FakeSource(WEMBY_PSA10), now=NOW))

    assert counts == {"processed": 2, "updated": 1, "unchanged": 0, "failed": 1}
    assert repo.writes == ["w2"]


def test_unavailable_source_stops_the_batch():
    repo = FakeWatchlistRepo([watched("w1"), watched("w2")])
    source = FakeSource(error=UpstreamSourceError("Listing source unavailable"))

    counts = asyncio.run(refresh_watchlist_prices(repo, source, now=NOW))

    assert counts == {"processed": 1, "updated": 0, "unchanged": 0, "failed": 1}
    assert len(source.queries) == 1
    assert repo.writes == []


def test_scheduler_watchlist_pass():
    repo = FakeWatchlistRepo([watched("w1")])
    scheduler = CmvRefreshScheduler(source=FakeSource(WEMBY_PSA10), watchlist_repo=repo)

    counts = asyncio.run(scheduler.run_watchlist_refresh())

    assert counts["updated"] == 1
    assert scheduler.is_watchlist_running is False


def test_scheduler_skips_overlapping_watchlist_pass():
    repo = FakeWatchlistRepo([watched("w1")])
    scheduler = CmvRefreshScheduler(source=FakeSource(WEMBY_PSA10), watchlist_repo=repo)
    scheduler.is_watchlist_running = True

    assert asyncio.run(scheduler.run_watchlist_refresh()) is None
    assert repo.writes == []

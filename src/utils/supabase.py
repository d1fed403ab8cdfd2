"""Supabase client configuration and shared query helpers."""

import os
from functools import lru_cache

from dotenv import load_dotenv
from fastapi import HTTPException
from supabase import Client, create_client

from src.utils.logger import log_database_operation, supabase_logger as sb_logger

# Load environment variables from .env file
load_dotenv()

COLLECTION_TABLE = "collection_items"
WATCHLIST_TABLE = "watchlist_items"
CATALOG_TABLE = "card_catalog"
SOLD_LISTINGS_TABLE = "ebay_posts"
RECENT_SEARCHES_TABLE = "recent_searches"


def _get_supabase_credentials() -> tuple[str, str]:
    """Get and validate Supabase credentials from environment."""
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_SERVICE_KEY")

    if not url or not key:
        raise ValueError(
            "SUPABASE_URL and SUPABASE_SERVICE_KEY environment variables are required"
        )

    return url, key


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """Create the Supabase client on first use and reuse it afterwards."""
    url, key = _get_supabase_credentials()

    sb_logger.info("🔧 Initializing Supabase connection...")
    sb_logger.info(f"   🌐 URL: {url}")
    sb_logger.info(f"   🔑 Key: {key[:8]}...")

    try:
        client = create_client(url, key)
        sb_logger.info("✅ Supabase client created")
        return client
    except Exception as e:
        sb_logger.error(f"❌ Supabase connection failed: {e}")
        raise


# ===============================================================
# query helpers
# ===============================================================
def supabase_apply_filter(query, filters: dict | None):
    """
    Apply equality filters plus a few structured operators:
    ``{"in": [...]}``, ``{"neq": v}``, ``{"ilike": pattern}``, ``{"gte": v}``, ``{"lte": v}``.
    The reserved key ``"or"`` takes a raw PostgREST logical expression.
    """
    if not filters:
        return query
    for k, v in filters.items():
        if v is None:
            sb_logger.debug(f"supabase_apply_filter: skipping filter {k}=None")
            continue

        if k == "or":
            query = query.or_(v)
            continue

        if isinstance(v, dict):
            if "in" in v:
                in_val = v.get("in")
                if in_val is None or not isinstance(in_val, (list, tuple)) or len(in_val) == 0:
                    sb_logger.debug(
                        f"supabase_apply_filter: skipping filter {k} IN {in_val!r} (None/invalid/empty)"
                    )
                else:
                    query = query.in_(k, list(in_val))
                continue

            applied = False
            for op in ("neq", "ilike", "gte", "lte"):
                if op in v:
                    if v[op] is None:
                        sb_logger.debug(f"supabase_apply_filter: skipping filter {k} {op} None")
                    else:
                        query = getattr(query, op)(k, v[op])
                    applied = True
            if not applied:
                sb_logger.debug(
                    f"supabase_apply_filter: unrecognized filter object for key={k}: {v!r} (skipping)"
                )
            continue

        query = query.eq(k, v)
    return query


def supabase_select(
    table: str,
    filters: dict | None = None,
    columns: str = "*",
    order_by: str | None = None,
    desc: bool = True,
    limit: int | None = None,
    client: Client | None = None,
) -> list[dict]:
    """Select rows from ``table``. Fetch failures are logged and raised as HTTP 500."""
    try:
        client = client or get_supabase()
        q = supabase_apply_filter(client.table(table).select(columns), filters)
        if order_by:
            q = q.order(order_by, desc=desc)
        if limit:
            q = q.limit(limit)
        res = q.execute()
        return list(getattr(res, "data", []) or [])
    except HTTPException:
        raise
    except Exception as e:
        sb_logger.exception("supabase_select(%s) failed: %s", table, e)
        raise HTTPException(status_code=500, detail=f"Database fetch error ({table})")


def supabase_get_one(
    table: str, filters: dict, columns: str = "*", client: Client | None = None
) -> dict | None:
    rows = supabase_select(table, filters, columns, limit=1, client=client)
    return rows[0] if rows else None


# ===============================================================
# getters
# ===============================================================
def supabase_get_catalog_cards(filters: dict | None = None, limit: int = 500) -> list[dict]:
    """Candidate catalog rows for card search."""
    return supabase_select(CATALOG_TABLE, filters, limit=limit)


def supabase_get_sold_listings(filters: dict | None = None, limit: int = 200) -> list[dict]:
    """Recent sold listings, newest first."""
    return supabase_select(
        SOLD_LISTINGS_TABLE, filters, order_by="sold_at", desc=True, limit=limit
    )


def supabase_get_recent_searches(user_id: str, limit: int = 10) -> list[dict]:
    return supabase_select(
        RECENT_SEARCHES_TABLE,
        {"user_id": user_id},
        order_by="created_at",
        desc=True,
        limit=limit,
    )


# ===============================================================
# insert / update mutate
# ===============================================================
def supabase_mutate(
    table: str,
    mutate_type: str,
    payload: dict,
    filters: dict | None = None,
    client: Client | None = None,
):
    """Insert or update rows in ``table``. Returns the Supabase response."""
    try:
        client = client or get_supabase()
        query = client.table(table)
        if mutate_type == "insert":
            res = query.insert(payload).execute()
        elif mutate_type == "update":
            res = supabase_apply_filter(query.update(payload), filters).execute()
        else:
            raise ValueError("mutate_type must be 'insert' or 'update'")
        log_database_operation(sb_logger, mutate_type, len(getattr(res, "data", None) or []), table)
        return res
    except Exception as e:
        sb_logger.exception("supabase_mutate(%s) failed: %s", table, e)
        raise HTTPException(status_code=500, detail=f"Database mutate error ({table})")


def supabase_record_search(user_id: str, query: str, kind: str = "comps"):
    return supabase_mutate(
        RECENT_SEARCHES_TABLE, "insert", {"user_id": user_id, "query": query, "kind": kind}
    )


# ===============================================================
# delete
# ===============================================================
def supabase_delete(table: str, filters: dict, client: Client | None = None):
    try:
        client = client or get_supabase()
        return supabase_apply_filter(client.table(table).delete(), filters).execute()
    except Exception as e:
        sb_logger.exception("supabase_delete(%s) failed: %s", table, e)
        raise HTTPException(status_code=500, detail=f"Database delete error ({table})")

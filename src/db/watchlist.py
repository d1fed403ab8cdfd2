from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from supabase import Client

from src.utils.errors import CmvPersistenceError
from src.utils.logger import supabase_logger as db_logger
from src.utils.supabase import (
    WATCHLIST_TABLE,
    supabase_delete,
    supabase_get_one,
    supabase_mutate,
    supabase_select,
)
from src.utils.values import is_below_target

WATCHLIST_FIELDS = (
    "player_name",
    "year",
    "set_name",
    "parallel_type",
    "card_number",
    "grade",
    "target_price",
    "estimated_cmv",
    "notes",
)


def with_below_target(item: Dict[str, Any]) -> Dict[str, Any]:
    return dict(item, below_target=is_below_target(item))


class WatchlistRepository:
    def __init__(self, client: Optional[Client] = None):
        self.client = client

    def list_items(self, user_id: str) -> List[Dict[str, Any]]:
        rows = supabase_select(
            WATCHLIST_TABLE,
            {"user_id": user_id},
            order_by="created_at",
            desc=True,
            client=self.client,
        )
        return [with_below_target(row) for row in rows]

    def get_item(self, user_id: str, item_id: str) -> Optional[Dict[str, Any]]:
        row = supabase_get_one(
            WATCHLIST_TABLE, {"user_id": user_id, "id": item_id}, client=self.client
        )
        return with_below_target(row) if row else None

    def insert_item(self, user_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        payload = {k: v for k, v in fields.items() if k in WATCHLIST_FIELDS}
        payload["user_id"] = user_id
        response = supabase_mutate(WATCHLIST_TABLE, "insert", payload, client=self.client)
        if not response.data:
            db_logger.error(f"❌ No data returned inserting watchlist item for {user_id}")
            raise HTTPException(status_code=500, detail="Database insert error (watchlist_items)")
        db_logger.info(f"✅ Added watchlist item {response.data[0].get('id')} for user {user_id}")
        return with_below_target(response.data[0])

    def update_item(
        self, user_id: str, item_id: str, fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        changes = {k: v for k, v in fields.items() if k in WATCHLIST_FIELDS}
        changes["updated_at"] = datetime.now(timezone.utc).isoformat()
        response = supabase_mutate(
            WATCHLIST_TABLE,
            "update",
            changes,
            {"user_id": user_id, "id": item_id},
            client=self.client,
        )
        return with_below_target(response.data[0]) if response.data else None

    def delete_item(self, user_id: str, item_id: str) -> bool:
        response = supabase_delete(
            WATCHLIST_TABLE, {"user_id": user_id, "id": item_id}, client=self.client
        )
        return bool(getattr(response, "data", None))

    def list_for_price_check(self, checked_before: datetime, limit: int = 50) -> List[Dict[str, Any]]:
        """Rows across all users never priced or last priced before ``checked_before``."""
        cutoff = checked_before.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return supabase_select(
            WATCHLIST_TABLE,
            {"or": f"last_checked.is.null,last_checked.lt.{cutoff}"},
            order_by="last_checked",
            desc=False,
            limit=limit,
            client=self.client,
        )

    def update_price(self, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Write a price refresh to one row.

        Raises:
            CmvPersistenceError: the write failed or matched no row
        """
        try:
            response = supabase_mutate(
                WATCHLIST_TABLE, "update", payload, {"id": item_id}, client=self.client
            )
        except HTTPException as e:
            raise CmvPersistenceError("Failed to persist watchlist price", {"item_id": item_id}) from e
        if not response.data:
            raise CmvPersistenceError("Watchlist price update matched no row", {"item_id": item_id})
        return response.data[0]

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from supabase import Client

from src.utils.errors import CmvPersistenceError
from src.utils.logger import supabase_logger as db_logger
from src.utils.supabase import (
    COLLECTION_TABLE,
    supabase_delete,
    supabase_get_one,
    supabase_mutate,
    supabase_select,
)


class CollectionRepository:
    """
    Collection rows for one Supabase project.

    All reads are scoped by ``user_id``. CMV columns are only ever written
    through ``update_cmv`` with a payload from the ``build_*_cmv_update``
    builders.
    """

    def __init__(self, client: Optional[Client] = None):
        self.client = client

    def list_items(self, user_id: str) -> List[Dict[str, Any]]:
        return supabase_select(
            COLLECTION_TABLE,
            {"user_id": user_id},
            order_by="created_at",
            desc=True,
            client=self.client,
        )

    def get_item(self, user_id: str, item_id: str) -> Optional[Dict[str, Any]]:
        return supabase_get_one(
            COLLECTION_TABLE, {"user_id": user_id, "id": item_id}, client=self.client
        )

    def insert_item(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert one collection row.

        Args:
            payload: full row, including ``user_id`` and the initial CMV fields

        Returns:
            dict: the stored row

        Raises:
            HTTPException: insertion failed or returned no row
        """
        response = supabase_mutate(COLLECTION_TABLE, "insert", payload, client=self.client)
        if not response.data:
            db_logger.error(f"❌ No data returned inserting collection item for {payload.get('user_id')}")
            raise HTTPException(status_code=500, detail="Database insert error (collection_items)")
        row = response.data[0]
        db_logger.info(f"✅ Created collection item {row.get('id')} for user {payload.get('user_id')}")
        return row

    def update_item(
        self, user_id: str, item_id: str, changes: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        changes = dict(changes, updated_at=datetime.now(timezone.utc).isoformat())
        response = supabase_mutate(
            COLLECTION_TABLE,
            "update",
            changes,
            {"user_id": user_id, "id": item_id},
            client=self.client,
        )
        return response.data[0] if response.data else None

    def delete_item(self, user_id: str, item_id: str) -> bool:
        response = supabase_delete(
            COLLECTION_TABLE, {"user_id": user_id, "id": item_id}, client=self.client
        )
        deleted = bool(getattr(response, "data", None))
        if deleted:
            db_logger.info(f"🗑️ Deleted collection item {item_id}")
        return deleted

    def update_cmv(self, user_id: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Write a CMV payload to one row.

        Raises:
            CmvPersistenceError: the write failed or matched no row
        """
        try:
            response = supabase_mutate(
                COLLECTION_TABLE,
                "update",
                payload,
                {"user_id": user_id, "id": item_id},
                client=self.client,
            )
        except HTTPException as e:
            raise CmvPersistenceError(
                "Failed to persist CMV", {"item_id": item_id, "status": payload.get("cmv_status")}
            ) from e

        if not response.data:
            raise CmvPersistenceError("CMV update matched no row", {"item_id": item_id})

        db_logger.info(
            f"💵 Persisted CMV for {item_id}: status={payload.get('cmv_status')} value={payload.get('cmv_value')}"
        )
        return response.data[0]

    def list_for_refresh(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Rows across all users, least recently refreshed first."""
        return supabase_select(
            COLLECTION_TABLE,
            None,
            order_by="cmv_updated_at",
            desc=False,
            limit=limit,
            client=self.client,
        )

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, Callable, List
import logging

logger = logging.getLogger(__name__)

# Entity type -> activity collection
ACTIVITY_COLLECTIONS = {
    "invoice": "invoice_activity",
    "draw": "draw_activity",
}


class ActivityService:
    """Service for insert-only invoice and draw activity logging"""

    def __init__(self, db: AsyncIOMotorDatabase, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or datetime.utcnow

    def _collection(self, entity_type: str):
        name = ACTIVITY_COLLECTIONS.get(entity_type)
        if name is None:
            raise ValueError(f"No activity log for entity type '{entity_type}'")
        return self.db[name]

    async def log(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        performed_by: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Append an activity row (INSERT ONLY).

        Never raises: a failed write is logged and reported as False so the
        caller can surface a warning without rolling anything back.
        """
        try:
            entry = {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
                "performed_by": performed_by,
                "details": details or {},
                "timestamp": self.clock(),
            }
            await self._collection(entity_type).insert_one(entry)
            logger.info(f"[ACTIVITY] {action} on {entity_type}:{entity_id} by {performed_by}")
            return True
        except Exception as e:
            logger.error(f"[ACTIVITY] Failed to write activity for {entity_type}:{entity_id}: {str(e)}")
            return False

    async def get_activity(self, entity_type: str, entity_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Retrieve activity rows, newest first (READ ONLY)"""
        cursor = self._collection(entity_type).find({"entity_id": entity_id}).sort("timestamp", -1).limit(limit)
        rows = await cursor.to_list(length=limit)

        for row in rows:
            row["activity_id"] = str(row.pop("_id"))

        return rows

"""
ADVISORY LOCK MANAGER

Short-TTL edit locks keyed by (entity_type, entity_id).

RULES:
- A non-expired lock held by another actor blocks acquisition (LOCKED)
- Re-acquiring with the same holder refreshes the TTL
- Expired locks are treated as absent on every check and removed on acquire
  and by the periodic cleanup
- check_lock never writes
- Locks only guard the lifecycle engine's own write path
"""

from pymongo.errors import DuplicateKeyError
from datetime import timedelta
from typing import Dict, Any, List, Optional
import logging

from .errors import LockedError, NotFoundError, ValidationFailedError
from .ledger_store import LedgerStore, new_id

logger = logging.getLogger(__name__)


class LockManager:
    """
    Grants and releases advisory edit locks.

    Example:
        result = await locks.acquire("invoice", invoice_id, "alice")
        ...
        await locks.release(result["lock"]["_id"], "alice")
    """

    DEFAULT_TTL_SECONDS = 300

    def __init__(self, store: LedgerStore, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.store = store
        self.collection = store.locks
        self.ttl = timedelta(seconds=ttl_seconds)

    # =========================================================================
    # READ
    # =========================================================================

    async def check_lock(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Active lock on an entity, or None. Pure read."""
        return await self.collection.find_one({
            "entity_type": entity_type,
            "entity_id": entity_id,
            "expires_at": {"$gt": self.store.now()}
        })

    async def list_locks(self) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"expires_at": {"$gt": self.store.now()}}).sort("locked_at", 1)
        return await cursor.to_list(length=None)

    async def assert_editable(self, entity_type: str, entity_id: str, actor: str):
        """Raise LOCKED when another actor holds an active lock"""
        lock = await self.check_lock(entity_type, entity_id)
        if lock and lock["locked_by"] != actor:
            raise LockedError(entity_type, entity_id, lock["locked_by"], lock["expires_at"])

    # =========================================================================
    # ACQUIRE / RELEASE
    # =========================================================================

    async def acquire(self, entity_type: str, entity_id: str, holder: str) -> Dict[str, Any]:
        """
        Acquire or refresh a lock.

        Returns:
            {"success": True, "lock": lock_doc, "created": bool}
            created is False when an existing lock of the same holder was refreshed.
        """
        now = self.store.now()
        expires_at = now + self.ttl

        existing = await self.collection.find_one({"entity_type": entity_type, "entity_id": entity_id})

        if existing and existing["expires_at"] > now:
            if existing["locked_by"] != holder:
                logger.info(
                    f"[LOCK] {holder} blocked on {entity_type}:{entity_id} (held by {existing['locked_by']})"
                )
                raise LockedError(entity_type, entity_id, existing["locked_by"], existing["expires_at"])

            result = await self.collection.update_one(
                {"_id": existing["_id"], "locked_by": holder},
                {"$set": {"expires_at": expires_at, "refreshed_at": now}}
            )
            if result.matched_count == 1:
                existing.update({"expires_at": expires_at, "refreshed_at": now})
                logger.debug(f"[LOCK] Refreshed {entity_type}:{entity_id} for {holder}")
                return {"success": True, "lock": existing, "created": False}

        if existing:
            # Expired: drop only the row we saw so a concurrent acquirer is not clobbered
            await self.collection.delete_one({"_id": existing["_id"], "expires_at": existing["expires_at"]})

        lock = {
            "_id": new_id(),
            "entity_type": entity_type,
            "entity_id": entity_id,
            "locked_by": holder,
            "locked_at": now,
            "expires_at": expires_at,
        }
        try:
            await self.collection.insert_one(lock)
        except DuplicateKeyError:
            winner = await self.collection.find_one({"entity_type": entity_type, "entity_id": entity_id})
            locked_by = winner["locked_by"] if winner else None
            if locked_by == holder:
                return {"success": True, "lock": winner, "created": False}
            raise LockedError(
                entity_type, entity_id, locked_by,
                winner["expires_at"] if winner else None,
                message=f"{entity_type} {entity_id} was just locked by another user"
            )

        logger.info(f"[LOCK] {holder} acquired {entity_type}:{entity_id} until {expires_at.isoformat()}")
        return {"success": True, "lock": lock, "created": True}

    async def release(self, lock_id: str, by: str) -> Dict[str, Any]:
        """Release a lock. Only the holder may release it."""
        lock = await self.collection.find_one({"_id": lock_id})
        if not lock or lock["expires_at"] <= self.store.now():
            if lock:
                await self.collection.delete_one({"_id": lock_id})
            raise NotFoundError("Lock", lock_id)

        if lock["locked_by"] != by:
            raise ValidationFailedError(
                "Only the lock holder can release this lock",
                details={"locked_by": lock["locked_by"]}
            )

        await self.collection.delete_one({"_id": lock_id, "locked_by": by})
        logger.info(f"[LOCK] {by} released {lock['entity_type']}:{lock['entity_id']}")
        return {"success": True, "lock_id": lock_id}

    async def release_entity(self, entity_type: str, entity_id: str, by: str) -> int:
        """Release whatever lock `by` holds on an entity"""
        result = await self.collection.delete_many({
            "entity_type": entity_type,
            "entity_id": entity_id,
            "locked_by": by
        })
        if result.deleted_count:
            logger.info(f"[LOCK] {by} released {entity_type}:{entity_id}")
        return result.deleted_count

    async def force_release(self, lock_id: str, by: str) -> Dict[str, Any]:
        """Administrative release regardless of holder"""
        lock = await self.collection.find_one({"_id": lock_id})
        if not lock:
            raise NotFoundError("Lock", lock_id)
        await self.collection.delete_one({"_id": lock_id})
        logger.warning(
            f"[LOCK] {by} force-released {lock['entity_type']}:{lock['entity_id']} held by {lock['locked_by']}"
        )
        return {"success": True, "lock_id": lock_id, "previous_holder": lock["locked_by"]}

    async def cleanup_expired(self) -> int:
        result = await self.collection.delete_many({"expires_at": {"$lte": self.store.now()}})
        if result.deleted_count:
            logger.info(f"[LOCK] Cleaned up {result.deleted_count} expired locks")
        return result.deleted_count

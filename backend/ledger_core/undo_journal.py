"""
UNDO JOURNAL

One-level undo for lifecycle mutations.

RULES:
- A snapshot is written BEFORE the mutating write, inside the same transaction
- Each entry expires after a fixed window (default 30 seconds)
- An entry becomes available only once sealed, after the write succeeded;
  sealing supersedes any earlier open entry for the same entity
- execute() claims the entry atomically; expired, consumed or superseded
  entries fail with UNDO_NOT_FOUND
- Restoration is delegated to a restorer registered per entity type
"""

from pymongo import ReturnDocument, DESCENDING
from datetime import timedelta
from typing import Dict, Any, List, Optional, Callable, Awaitable
import copy
import logging

from .errors import UndoNotFoundError
from .ledger_store import LedgerStore, new_id

logger = logging.getLogger(__name__)

# Restorer signature: async def restorer(entry, by, session) -> restored state
Restorer = Callable[[Dict[str, Any], str, Any], Awaitable[Dict[str, Any]]]


class UndoJournal:
    """Time-boxed, single-level undo journal"""

    DEFAULT_WINDOW_SECONDS = 30

    def __init__(self, store: LedgerStore, window_seconds: int = DEFAULT_WINDOW_SECONDS):
        self.store = store
        self.collection = store.undo_journal
        self.window = timedelta(seconds=window_seconds)
        self._restorers: Dict[str, Restorer] = {}

    def register_restorer(self, entity_type: str, restorer: Restorer) -> "UndoJournal":
        self._restorers[entity_type] = restorer
        return self

    def _open_query(self, now) -> Dict[str, Any]:
        return {
            "sealed_at": {"$ne": None},
            "consumed_at": None,
            "superseded_at": None,
            "expires_at": {"$gt": now},
        }

    # =========================================================================
    # WRITE
    # =========================================================================

    async def snapshot(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        state_before: Dict[str, Any],
        by: str,
        session=None
    ) -> Dict[str, Any]:
        """Store a full pre-transition copy of the entity"""
        now = self.store.now()
        entry = {
            "_id": new_id(),
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "state_before": copy.deepcopy(state_before),
            "effects": [],
            "touched_draws": [],
            "version_after": None,
            "performed_by": by,
            "created_at": now,
            "expires_at": now + self.window,
            "sealed_at": None,
            "consumed_at": None,
            "superseded_at": None,
        }
        await self.collection.insert_one(entry, session=session)
        logger.debug(f"[UNDO] Snapshot {entry['_id']} for {entity_type}:{entity_id} ({action})")
        return entry

    async def seal(
        self,
        entry_id: str,
        effects: List[Dict[str, Any]],
        version_after: Optional[int],
        touched_draws: List[str],
        session=None
    ):
        """
        Attach what the transition actually did, once it has been applied,
        and make the entry the entity's only open one.
        """
        now = self.store.now()
        entry = await self.collection.find_one_and_update(
            {"_id": entry_id},
            {"$set": {
                "effects": effects,
                "version_after": version_after,
                "touched_draws": sorted(set(touched_draws)),
                "sealed_at": now,
            }},
            return_document=ReturnDocument.AFTER,
            session=session
        )
        await self.collection.update_many(
            {
                "_id": {"$ne": entry_id},
                "entity_type": entry["entity_type"],
                "entity_id": entry["entity_id"],
                "consumed_at": None,
                "superseded_at": None,
            },
            {"$set": {"superseded_at": now}},
            session=session
        )

    async def discard(self, entry_id: str):
        """Drop an unsealed entry whose write failed outside a transaction"""
        await self.collection.delete_one({"_id": entry_id, "sealed_at": None})

    async def invalidate(self, entity_type: str, entity_id: str, session=None) -> int:
        """Close every open entry for an entity (used when a non-journaled path mutates it)"""
        result = await self.collection.update_many(
            {"entity_type": entity_type, "entity_id": entity_id, "consumed_at": None, "superseded_at": None},
            {"$set": {"superseded_at": self.store.now()}},
            session=session
        )
        return result.modified_count

    # =========================================================================
    # READ
    # =========================================================================

    async def available(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        now = self.store.now()
        query = dict(self._open_query(now), entity_type=entity_type, entity_id=entity_id)
        entries = await self.collection.find(query).sort("created_at", DESCENDING).to_list(length=1)
        if not entries:
            return {"available": False, "entry": None}

        entry = entries[0]
        return {
            "available": True,
            "entry": {
                "id": entry["_id"],
                "entity_type": entry["entity_type"],
                "entity_id": entry["entity_id"],
                "action": entry["action"],
                "performed_by": entry["performed_by"],
                "created_at": entry["created_at"],
                "expires_at": entry["expires_at"],
                "expires_in_ms": int((entry["expires_at"] - now).total_seconds() * 1000),
            }
        }

    async def get_entry(self, entry_id: str) -> Dict[str, Any]:
        entry = await self.collection.find_one({"_id": entry_id})
        if not entry:
            raise UndoNotFoundError(entry_id)
        return entry

    # =========================================================================
    # EXECUTE
    # =========================================================================

    async def execute(self, entry_id: str, by: str) -> Dict[str, Any]:
        """
        Replay the snapshot over the entity and consume the entry.

        The claim and the restore run in one transaction: if the restorer
        raises, the entry stays available.
        """
        async with self.store.transaction() as session:
            now = self.store.now()
            entry = await self.collection.find_one_and_update(
                dict(self._open_query(now), _id=entry_id),
                {"$set": {"consumed_at": now, "consumed_by": by}},
                return_document=ReturnDocument.AFTER,
                session=session
            )
            if entry is None:
                logger.info(f"[UNDO] Entry {entry_id} unavailable for {by}")
                raise UndoNotFoundError(entry_id, "Undo entry not found, expired, or already used")

            restorer = self._restorers.get(entry["entity_type"])
            if restorer is None:
                raise UndoNotFoundError(entry_id, f"No undo support for {entry['entity_type']}")

            try:
                restored = await restorer(entry, by, session)
            except Exception:
                if session is None:
                    # No transaction to roll back the claim
                    await self.collection.update_one(
                        {"_id": entry_id},
                        {"$set": {"consumed_at": None, "consumed_by": None}}
                    )
                raise

        logger.info(
            f"[UNDO] {by} undid {entry['action']} on {entry['entity_type']}:{entry['entity_id']}"
        )
        return {"success": True, "entry_id": entry_id, "action": entry["action"], "restored_state": restored}

    async def cleanup_expired(self) -> int:
        """Drop entries past their window"""
        result = await self.collection.delete_many({"expires_at": {"$lte": self.store.now()}})
        if result.deleted_count:
            logger.info(f"[UNDO] Cleaned up {result.deleted_count} expired entries")
        return result.deleted_count

"""
Periodic cleanup of expired locks and undo entries.

Runs as an asyncio task next to the API and never blocks a request.
"""

from typing import Dict, Any, Optional
import asyncio
import logging

from .locking import LockManager
from .undo_journal import UndoJournal

logger = logging.getLogger(__name__)


class MaintenanceLoop:

    def __init__(self, locks: LockManager, journal: UndoJournal, interval_seconds: int = 60):
        self.locks = locks
        self.journal = journal
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> Dict[str, Any]:
        """One sweep; a failing step is logged and the other still runs"""
        report = {"locks_removed": 0, "undo_entries_removed": 0, "errors": []}

        try:
            report["locks_removed"] = await self.locks.cleanup_expired()
        except Exception as e:
            logger.error(f"[MAINTENANCE] Lock cleanup failed: {str(e)}")
            report["errors"].append(f"locks: {str(e)}")

        try:
            report["undo_entries_removed"] = await self.journal.cleanup_expired()
        except Exception as e:
            logger.error(f"[MAINTENANCE] Undo cleanup failed: {str(e)}")
            report["errors"].append(f"undo: {str(e)}")

        if report["locks_removed"] or report["undo_entries_removed"]:
            logger.info(
                f"[MAINTENANCE] Removed {report['locks_removed']} locks, "
                f"{report['undo_entries_removed']} undo entries"
            )
        return report

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    def start(self) -> Optional[asyncio.Task]:
        if self.interval_seconds <= 0:
            logger.info("[MAINTENANCE] Disabled")
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info(f"[MAINTENANCE] Started, every {self.interval_seconds}s")
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("[MAINTENANCE] Stopped")

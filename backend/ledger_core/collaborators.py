"""
EXTERNAL COLLABORATORS

Side effects that run AFTER a lifecycle transaction commits:
- DocumentStamper: best-effort stamping of the invoice/draw document
  (failures become warnings, never roll back the transition)
- Broadcaster: fire-and-forget notification of every successful transition

Neither collaborator can fail the business operation.
"""

from typing import Dict, Any, Optional, Callable, List, Set
from datetime import datetime
import asyncio
import uuid
import logging

import httpx

logger = logging.getLogger(__name__)


class StampingError(Exception):
    """Raised by a stamper when the document could not be stamped"""
    pass


# =============================================================================
# DOCUMENT STAMPING
# =============================================================================

class DocumentStamper:
    """
    Stamps approval/funding status onto the source document.

    Rendering lives outside this service; the default implementation only
    records that a stamp was requested.
    """

    async def stamp(self, entity_type: str, entity: Dict[str, Any], label: str) -> Optional[str]:
        logger.debug(f"[STAMP] No renderer configured for {entity_type}:{entity.get('_id')} ({label})")
        return None


class RecordingStamper(DocumentStamper):
    """Stamper that tags the stored document with a stamp reference"""

    def __init__(self, db):
        self.db = db

    async def stamp(self, entity_type: str, entity: Dict[str, Any], label: str) -> Optional[str]:
        if entity_type != "invoice":
            return None
        if not entity.get("document_url"):
            raise StampingError("Invoice has no source document to stamp")
        stamped_url = f"{entity['document_url']}#stamp={label}"
        await self.db.invoices.update_one(
            {"_id": entity["_id"]},
            {"$set": {"stamped_document_url": stamped_url}}
        )
        return stamped_url


# =============================================================================
# BROADCAST
# =============================================================================

class Broadcaster:
    """
    Fan out lifecycle events to registered handlers without blocking the caller.

    Handlers registered for "*" receive every event.
    """

    def __init__(self):
        self._handlers: Dict[str, list] = {}
        self._tasks: Set[asyncio.Task] = set()

    def register_handler(self, event_type: str, handler: Callable):
        """Register a handler for an event type"""
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    def publish(self, event_type: str, payload: Dict[str, Any]):
        """Schedule delivery and return immediately"""
        event = {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "payload": payload,
            "timestamp": datetime.utcnow().isoformat()
        }
        handlers = self._handlers.get(event_type, []) + self._handlers.get("*", [])
        if not handlers:
            return
        task = asyncio.create_task(self._deliver(event, handlers))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: Dict[str, Any], handlers: List[Callable]):
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                logger.error(f"[BROADCAST] Handler error: {event['event_type']} - {str(e)}")

        logger.info(f"[BROADCAST] Emitted: {event['event_type']} - {event['event_id']}")

    async def drain(self):
        """Wait for in-flight deliveries (shutdown, tests)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class WebhookBroadcastHandler:
    """POST each event as JSON to a configured URL"""

    def __init__(self, url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def __call__(self, event: Dict[str, Any]):
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, json=event)
            if response.status_code >= 400:
                logger.warning(
                    f"[BROADCAST] Webhook {self.url} answered {response.status_code} for {event['event_type']}"
                )

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from typing import Optional
import logging

from audit_service import ActivityService
from ledger_core.collaborators import Broadcaster, RecordingStamper, WebhookBroadcastHandler
from ledger_core.errors import LedgerError
from ledger_core.maintenance import MaintenanceLoop
from ledger_core.orchestrator import build_orchestrator
from ledger_core.settings import Settings, get_settings
from ledger_routes import ledger_router, ledger_error_handler, LedgerServices

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, client: Optional[AsyncIOMotorClient] = None) -> FastAPI:
    """
    Wire the ledger services onto a FastAPI app.

    `client` may be any motor-compatible client (tests pass a mock).
    """
    settings = settings or get_settings()
    client = client or AsyncIOMotorClient(settings.mongo_url)
    db = client[settings.db_name]

    # Initialize services
    activity = ActivityService(db)
    broadcaster = Broadcaster()
    if settings.broadcast_webhook_url:
        broadcaster.register_handler("*", WebhookBroadcastHandler(settings.broadcast_webhook_url))
    stamper = RecordingStamper(db) if settings.stamping_enabled else None

    orchestrator = build_orchestrator(
        db,
        client=client,
        settings=settings,
        stamper=stamper,
        broadcaster=broadcaster,
        activity=activity,
    )
    maintenance = MaintenanceLoop(
        orchestrator.locks,
        orchestrator.journal,
        interval_seconds=settings.maintenance_interval_seconds
    )

    app = FastAPI(
        title="Invoice & Draw Ledger",
        version="1.0.0",
        description="Invoice and draw lifecycle engine for construction billing"
    )
    app.state.ledger = LedgerServices(orchestrator, activity)
    app.include_router(ledger_router)
    app.add_exception_handler(LedgerError, ledger_error_handler)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_ledger():
        await orchestrator.store.ensure_indexes()
        maintenance.start()
        logger.info(
            f"Ledger started on {settings.db_name} "
            f"(transactions={'on' if settings.use_transactions else 'off'})"
        )

    @app.on_event("shutdown")
    async def shutdown_ledger():
        await maintenance.stop()
        await broadcaster.drain()
        client.close()

    return app


_settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, _settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

app = create_app(_settings)

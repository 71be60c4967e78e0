"""
Runtime configuration.

Values come from backend/.env (python-dotenv) overlaid by the process
environment. Read once through get_settings().
"""

from dotenv import load_dotenv
from pathlib import Path
from typing import List, Optional
import os

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Settings:
    """Engine and service settings"""

    def __init__(
        self,
        mongo_url: str = "mongodb://localhost:27017",
        db_name: str = "draw_ledger",
        use_transactions: bool = True,
        lock_ttl_seconds: int = 300,
        undo_window_seconds: int = 30,
        maintenance_interval_seconds: int = 60,
        broadcast_webhook_url: Optional[str] = None,
        stamping_enabled: bool = False,
        log_level: str = "INFO",
        cors_origins: Optional[List[str]] = None,
    ):
        self.mongo_url = mongo_url
        self.db_name = db_name
        self.use_transactions = use_transactions
        self.lock_ttl_seconds = lock_ttl_seconds
        self.undo_window_seconds = undo_window_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.broadcast_webhook_url = broadcast_webhook_url
        self.stamping_enabled = stamping_enabled
        self.log_level = log_level
        self.cors_origins = cors_origins or ["*"]

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongo_url=os.environ.get('MONGO_URL', "mongodb://localhost:27017"),
            db_name=os.environ.get('DB_NAME', "draw_ledger"),
            use_transactions=_env_bool('MONGO_TRANSACTIONS', True),
            lock_ttl_seconds=_env_int('LOCK_TTL_SECONDS', 300),
            undo_window_seconds=_env_int('UNDO_WINDOW_SECONDS', 30),
            maintenance_interval_seconds=_env_int('MAINTENANCE_INTERVAL_SECONDS', 60),
            broadcast_webhook_url=os.environ.get('BROADCAST_WEBHOOK_URL') or None,
            stamping_enabled=_env_bool('STAMPING_ENABLED', False),
            log_level=os.environ.get('LOG_LEVEL', "INFO").upper(),
            cors_origins=[o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()],
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings

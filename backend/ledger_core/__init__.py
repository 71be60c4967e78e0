"""
Invoice & Draw Lifecycle Engine
"""
from .errors import (
    ErrorCode,
    LedgerError,
    ValidationFailedError,
    TransitionNotAllowedError,
    LockedError,
    VersionConflictError,
    NotFoundError,
    DatabaseError,
    UndoNotFoundError,
    PoOverage
)

from .state_machine import (
    EntityType,
    InvoiceStatus,
    DrawStatus,
    can_transition,
    validate_transition
)

from .ledger_store import LedgerStore

from .locking import LockManager

from .undo_journal import UndoJournal

from .orchestrator import (
    LifecycleOrchestrator,
    TransitionResult,
    build_orchestrator
)

from .commitments import CommitmentService

from .g702 import build_g702

from .integrity_job import JobReconciliationJob

from .maintenance import MaintenanceLoop

from .settings import Settings, get_settings

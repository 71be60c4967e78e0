"""
Request-scoped state for one lifecycle operation.

A TransitionContext is created per call and passed explicitly to every
handler. It collects what the operation did (ledger effects, touched draws)
and what should happen after commit (activity rows, stamp request, warnings).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Set, Callable, Awaitable

from .ledger_store import LedgerStore


@dataclass
class TransitionContext:
    store: LedgerStore
    actor: str
    entity_type: str
    entity_id: str
    action: str
    payload: Dict[str, Any]
    now: datetime
    session: Any = None
    warnings: List[str] = field(default_factory=list)
    effects: List[Dict[str, Any]] = field(default_factory=list)
    touched_draws: Set[str] = field(default_factory=set)
    activity: List[Dict[str, Any]] = field(default_factory=list)
    stamp: Optional[str] = None
    scratch: Dict[str, Any] = field(default_factory=dict)

    def warn(self, message: str):
        self.warnings.append(message)

    def record(self, effect: Dict[str, Any]):
        """Remember an applied aggregate change so undo can reverse it"""
        if effect.get("applied"):
            self.effects.append(effect)

    def touch_draw(self, draw_id: Optional[str]):
        if draw_id:
            self.touched_draws.add(draw_id)

    def log_activity(self, entity_type: str, entity_id: str, action: str, details: Optional[Dict[str, Any]] = None):
        self.activity.append({
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "details": details or {},
        })

    def request_stamp(self, label: str):
        """Ask for a best-effort document stamp after commit"""
        self.stamp = label


# prepare(ctx, entity) -> Optional[PoOverage]   (reads and validation only)
# apply(ctx, entity)   -> updated entity document (writes)
Prepare = Callable[[TransitionContext, Dict[str, Any]], Awaitable[Any]]
Apply = Callable[[TransitionContext, Dict[str, Any]], Awaitable[Dict[str, Any]]]


@dataclass
class LifecycleHandler:
    """
    One registered operation.

    journaled=False skips the undo snapshot (draw funding and draw deletion
    cannot be undone).
    """
    action: str
    apply: Apply
    prepare: Optional[Prepare] = None
    journaled: bool = True
    description: str = ""

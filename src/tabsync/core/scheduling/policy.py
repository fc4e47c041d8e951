"""
Scope-aware skip policy.

Decides, per operation and scope, whether the dispatcher does anything
at all. Decisions are pure functions of the scope declaration and its
checkpoint, so they run before any lock or network call and are cheap
to re-evaluate after the lock is acquired.

Frozen scopes (historical, finalized, complete) are never touched by
scheduled work; only an operator reset brings them back.
Reset is the only operation that moves a cursor backward, and the
dispatcher accepts it from interactive callers only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from tabsync.core.scheduling.registry import SyncScope
from tabsync.store.checkpoints import Checkpoint


class SyncOperation(str, Enum):
    """Named entry points the host scheduler (or an operator) invokes."""

    CONTINUE = "continue"
    REFRESH = "refresh"
    DISCOVER = "discover"
    SNAPSHOT = "snapshot"
    RECONCILE = "reconcile"
    RESET = "reset"

    @property
    def uses_network(self) -> bool:
        return self not in (SyncOperation.SNAPSHOT, SyncOperation.RESET)

    @property
    def cadence(self) -> timedelta | None:
        """Reference cadence; ``None`` for operator-only operations."""
        return CADENCES.get(self)


CADENCES: dict[SyncOperation, timedelta] = {
    SyncOperation.CONTINUE: timedelta(minutes=10),
    SyncOperation.REFRESH: timedelta(hours=2),
    SyncOperation.DISCOVER: timedelta(minutes=30),
    SyncOperation.SNAPSHOT: timedelta(days=1),
    SyncOperation.RECONCILE: timedelta(weeks=1),
}


class Action(str, Enum):
    """What the dispatcher does for one scope."""

    CONTINUE = "continue"
    TAIL_REFRESH = "tail_refresh"
    DISCOVER = "discover"
    RECONCILE = "reconcile"
    RESET = "reset"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True, slots=True)
class Decision:
    """Outcome of the policy for one scope: an action, or a skip reason."""

    action: Action | None
    reason: str = ""

    @property
    def skip(self) -> bool:
        return self.action is None

    @classmethod
    def skipped(cls, reason: str) -> Decision:
        return cls(None, reason)


def is_frozen(scope: SyncScope, checkpoint: Checkpoint) -> bool:
    return scope.historical and scope.finalized and checkpoint.completed


def decide(operation: SyncOperation, scope: SyncScope, checkpoint: Checkpoint) -> Decision:
    """Classify *scope* for *operation*."""
    if operation == SyncOperation.RESET:
        return Decision(Action.RESET)
    if operation == SyncOperation.SNAPSHOT:
        return Decision(Action.SNAPSHOT)

    if operation == SyncOperation.CONTINUE:
        if checkpoint.completed:
            return Decision.skipped("complete")
        return Decision(Action.CONTINUE)

    if operation == SyncOperation.REFRESH:
        if scope.historical:
            return Decision.skipped("historical")
        if checkpoint.completed:
            return Decision(Action.TAIL_REFRESH)
        return Decision(Action.CONTINUE)

    if is_frozen(scope, checkpoint):
        return Decision.skipped("frozen")

    if operation == SyncOperation.DISCOVER:
        if checkpoint.total_units == -1:
            return Decision.skipped("not started")
        return Decision(Action.DISCOVER)

    if checkpoint.cursor < 0:
        return Decision.skipped("not started")
    return Decision(Action.RECONCILE)

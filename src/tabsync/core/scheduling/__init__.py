"""Scheduling package: scope registry, skip policy, locks, dispatcher and cadences.

::

    CadenceService ── tick ──► SyncDispatcher.run(operation)
                                  ├── policy.decide(operation, scope, checkpoint)
                                  ├── LockManager.acquire("scope:<id>")
                                  └── BatchSyncLoop / discovery / reset

Guardrails:
    ❌ Mutating a checkpoint without holding the scope lock
    ✅ Policy skips before any lock or network call
"""

from tabsync.core.scheduling.lock_manager import LockManager, LockToken
from tabsync.core.scheduling.registry import RowTypeSpec, ScopeKind, ScopeRegistry, SyncScope
from tabsync.core.scheduling.policy import Action, Decision, SyncOperation, decide, is_frozen
from tabsync.core.scheduling.dispatcher import DispatchReport, ScopeResult, ScopeStatus, SyncDispatcher
from tabsync.core.scheduling.protocol import BackendHealth, SchedulerBackend
from tabsync.core.scheduling.thread_backend import ThreadSchedulerBackend
from tabsync.core.scheduling.cadence import CadenceService

__all__ = [
    "Action",
    "BackendHealth",
    "CadenceService",
    "Decision",
    "DispatchReport",
    "LockManager",
    "LockToken",
    "RowTypeSpec",
    "SchedulerBackend",
    "ScopeKind",
    "ScopeRegistry",
    "ScopeResult",
    "ScopeStatus",
    "SyncDispatcher",
    "SyncOperation",
    "SyncScope",
    "ThreadSchedulerBackend",
    "decide",
    "is_frozen",
]

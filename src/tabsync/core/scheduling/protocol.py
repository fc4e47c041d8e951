"""Cadence backend protocol.

A backend controls WHEN ticks happen; :class:`~tabsync.core.scheduling.cadence.CadenceService`
controls WHAT happens on each tick (which operations are due, dispatching
them). Hosts that already provide a scheduler (cron, a cloud trigger)
call ``tabsync run <operation>`` directly and need no backend at all.

::

    ┌─────────────────┐      tick()      ┌──────────────────┐     run(op)     ┌────────────────┐
    │  Thread Backend │ ───────────────► │  CadenceService  │ ──────────────► │ SyncDispatcher │
    └─────────────────┘                  └──────────────────┘                 └────────────────┘
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

TickCallback = Callable[[], Awaitable[Any]]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable cadence timing backends."""

    name: str

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 60.0,
    ) -> None:
        """Start calling *tick_callback* every *interval_seconds*."""
        ...

    def stop(self) -> None:
        """Stop the loop, waiting for the current tick to finish."""
        ...

    def health(self) -> dict[str, Any]:
        """Return at least ``healthy``, ``backend``, ``tick_count``, ``last_tick``."""
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            **self.extra,
        }

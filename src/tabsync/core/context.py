"""
Invocation-scoped context.

Every dispatcher run creates one :class:`InvocationContext` and passes it
to the checkpoint store, the batch loop and the operational log. It
replaces any process-wide cache: the settings-sheet position cache lives
here and dies with the invocation, so two invocations in one process
never share stale positions.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tabsync.core.timestamps import generate_ulid


class Trigger(str, Enum):
    """Who started the invocation."""

    INTERACTIVE = "interactive"
    SCHEDULED = "scheduled"


@dataclass
class InvocationContext:
    """State owned by a single invocation.

    Attributes:
        invocation_id: Time-sortable id stamped on every log row.
        trigger: Interactive (operator) or scheduled (cadence tick).
        operation: Dispatcher operation name, for logging.
        clock: Monotonic clock used for the wall-clock budget.
        started_at: ``clock()`` reading when the invocation began.
        positions: Settings-sheet key → physical row cache, filled by the
            first scan. ``None`` until then.
        scans: Number of full settings-sheet scans performed.
        metadata: Arbitrary key/value pairs forwarded to logging.
    """

    trigger: Trigger = Trigger.SCHEDULED
    operation: str = ""
    clock: Callable[[], float] = time.monotonic
    invocation_id: str = field(default_factory=generate_ulid)
    started_at: float | None = None
    positions: dict[str, int] | None = None
    scans: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.started_at is None:
            self.started_at = self.clock()

    @property
    def interactive(self) -> bool:
        return self.trigger == Trigger.INTERACTIVE

    def elapsed(self) -> float:
        """Seconds since the invocation started."""
        return self.clock() - self.started_at

    def invalidate_positions(self) -> None:
        self.positions = None

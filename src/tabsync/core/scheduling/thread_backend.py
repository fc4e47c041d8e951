"""Threading-based cadence backend.

The default backend for ``tabsync serve``. A daemon thread waits on a stop
event between ticks and runs each async tick with ``asyncio.run``, so a
tick never overlaps the previous one.

::

    start()
       └── daemon thread:
             while not stop_event.wait(interval):
                 tick_count += 1
                 asyncio.run(tick_callback())

    stop()
       └── stop_event.set(); thread.join(timeout)
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Any

from tabsync.core.logging import get_logger
from tabsync.core.timestamps import utc_now

from .protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


class ThreadSchedulerBackend:
    """Daemon-thread ticker.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>> backend.start(service.tick, interval_seconds=60)
        >>> # ... later ...
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self, *, run_immediately: bool = True, join_timeout: float = 5.0) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 60.0
        self._started = False
        self._lock = threading.Lock()
        self.run_immediately = run_immediately
        self.join_timeout = join_timeout

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 60.0,
    ) -> None:
        """Start the tick loop in a daemon thread."""
        if self._started:
            logger.warning("backend_already_started", backend=self.name)
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _tick() -> None:
            with self._lock:
                self._tick_count += 1
                self._last_tick = utc_now()
            try:
                asyncio.run(tick_callback())
            except Exception as e:
                logger.exception("tick_failed", error=str(e))

        def _loop() -> None:
            logger.info("backend_started", backend=self.name, interval=interval_seconds)
            if self.run_immediately:
                _tick()
            while not self._stop_event.wait(interval_seconds):
                _tick()
            logger.info("backend_stopped", backend=self.name)

        self._thread = threading.Thread(target=_loop, daemon=True, name="tabsync-cadence")
        self._thread.start()
        self._started = True

    def stop(self) -> None:
        """Stop the loop, waiting up to ``join_timeout`` for the current tick."""
        if not self._started:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.join_timeout)
            if self._thread.is_alive():
                logger.warning("backend_stop_timeout", backend=self.name)

        self._started = False

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the backend stops. Returns ``True`` if it stopped."""
        return self._stop_event.wait(timeout)

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            extra={"interval_seconds": self._interval},
        )

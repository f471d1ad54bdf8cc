"""
Health file writer for the reader daemon.

Writes a JSON health file with four fields:
- last_poll_ts: ISO timestamp of the most recent session step.
- last_publish_ts: ISO timestamp of the most recent successful publish.
- state: Current protocol state of the meter session.
- outbox_count: Number of snapshots waiting to be published.

The session steps every few milliseconds and changes state several times a
second, so the file is rewritten at most once per ``min_interval_s``
(the first update is written immediately). It still serves as the liveness
signal a container HEALTHCHECK or monitoring can inspect, and the number of
writes to flash storage stays bounded.

CHANGELOG:
- 2026-10-18: Track protocol state and outbox instead of spool (STORY-012)
- 2026-10-19: Throttle rewrites to one per interval (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

DEFAULT_MIN_INTERVAL_S: float = 30.0
"""Shortest time between two rewrites of the health file."""


class HealthWriter:
    """Writes reader health status to a JSON file.

    Mutating methods update the in-memory state; the file is rewritten when
    nothing was written yet or ``min_interval_s`` has passed since the last
    write. ``flush()`` writes pending changes unconditionally.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
        min_interval_s: Shortest time between two rewrites.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        path: str | Path,
        min_interval_s: float = DEFAULT_MIN_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = Path(path)
        self._min_interval_s = min_interval_s
        self._clock = clock
        self._written_at: float | None = None
        self._dirty = False
        self._last_poll_ts: str | None = None
        self._last_publish_ts: str | None = None
        self._state: str | None = None
        self._outbox_count: int = 0

    def record_step(self, state: str, outbox_count: int) -> None:
        """Record one session step: its resulting state and the outbox size."""
        self._last_poll_ts = datetime.now(tz=UTC).isoformat()
        self._state = state
        self._outbox_count = outbox_count
        self._dirty = True
        self._maybe_write()

    def record_publish(self) -> None:
        """Record a successful publish."""
        self._last_publish_ts = datetime.now(tz=UTC).isoformat()
        self._dirty = True
        self._maybe_write()

    def flush(self) -> None:
        """Write pending changes now, regardless of the interval."""
        if self._dirty:
            self._write()

    def _maybe_write(self) -> None:
        if (
            self._written_at is None
            or self._clock() - self._written_at >= self._min_interval_s
        ):
            self._write()

    def _write(self) -> None:
        data = {
            "last_poll_ts": self._last_poll_ts,
            "last_publish_ts": self._last_publish_ts,
            "state": self._state,
            "outbox_count": self._outbox_count,
        }
        self.path.write_text(json.dumps(data))
        self._written_at = self._clock()
        self._dirty = False

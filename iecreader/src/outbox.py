"""
Bounded in-memory queue of snapshots waiting to be published.

The session enqueues a JSON payload whenever its publish policy fires; the
publish loop peeks a batch, hands it to the publisher and acknowledges the
rows the publisher confirmed. Nothing survives a restart: the reader keeps
no state on disk.

When the publisher is unreachable for long enough to fill the queue, the
oldest payloads are dropped first.

Operations:
- enqueue(payload): append a JSON payload, dropping the oldest when full.
- peek(n): up to n oldest payloads with their row ids (FIFO).
- ack(rowids): remove the specified rows.
- count(): number of pending payloads.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import itertools
import logging
from collections import OrderedDict

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROWS: int = 1000


class Outbox:
    """FIFO of ``(rowid, payload)`` pairs with a fixed capacity.

    Args:
        max_rows: Capacity; the oldest row is dropped when exceeded.

    Usage::

        outbox = Outbox()
        outbox.enqueue(snapshot.model_dump_json())
        rows = outbox.peek(10)
        outbox.ack([rowid for rowid, _ in rows])
    """

    def __init__(self, max_rows: int = DEFAULT_MAX_ROWS) -> None:
        if max_rows < 1:
            raise ValueError("max_rows must be >= 1")
        self._max_rows = max_rows
        self._rows: OrderedDict[int, str] = OrderedDict()
        self._rowids = itertools.count(1)
        self.dropped: int = 0

    def enqueue(self, payload: str) -> None:
        """Append a JSON payload.

        Args:
            payload: JSON string to store.
        """
        if len(self._rows) >= self._max_rows:
            rowid, _ = self._rows.popitem(last=False)
            self.dropped += 1
            logger.warning("Outbox full (%d rows), dropped oldest row %d", self._max_rows, rowid)
        self._rows[next(self._rowids)] = payload

    def peek(self, n: int) -> list[tuple[int, str]]:
        """Return up to *n* oldest payloads without removing them.

        Returns:
            List of ``(rowid, payload)`` tuples, oldest first. Empty when
            nothing is pending or n < 1.
        """
        if n < 1:
            return []
        return list(itertools.islice(self._rows.items(), n))

    def ack(self, rowids: list[int]) -> None:
        """Remove confirmed rows. Unknown rowids are ignored."""
        for rowid in rowids:
            self._rows.pop(rowid, None)

    def count(self) -> int:
        return len(self._rows)

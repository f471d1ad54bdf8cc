"""
HTTPS batch publisher posting meter snapshots to an ingest endpoint.

Reads batches from the in-memory outbox, POSTs them as JSON to
``{base_url}{ingest_path}`` with Bearer token authentication, and
acknowledges the rows on success. Implements exponential backoff on failure
(1s -> 2s -> 4s -> ... -> max_backoff_s). HTTPS is enforced at construction
and TLS certificates are always verified.

Operations:
- publish_batch(outbox): Peek rows, POST, ack on success.
- current_backoff: Current backoff delay in seconds (read-only property).

CHANGELOG:
- 2026-10-19: Treat every httpx transport error as a failed upload (STORY-014)
- 2026-10-18: Publish meter snapshots from the in-memory outbox (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from iecreader.src.outbox import Outbox

logger = logging.getLogger(__name__)

_INITIAL_BACKOFF_S = 1.0
_DEFAULT_MAX_BACKOFF_S = 300.0
_REQUEST_TIMEOUT_S = 10.0


class Uploader:
    """HTTPS batch publisher.

    On failure (non-200 status or any transport error), no rows are
    acknowledged and the backoff delay doubles (capped at
    ``max_backoff_s``). On success the backoff resets to 1 second.

    Args:
        base_url: Base URL of the ingest service. Must start with
            ``https://``.
        device_token: Per-device bearer token.
        batch_size: Maximum number of snapshots per POST.
        ingest_path: Path appended to *base_url*.
        max_backoff_s: Maximum backoff delay in seconds (default 300).

    Raises:
        ValueError: If *base_url* does not start with ``https://``.
    """

    def __init__(
        self,
        base_url: str,
        device_token: str,
        batch_size: int,
        ingest_path: str = "/v1/ingest",
        max_backoff_s: float = _DEFAULT_MAX_BACKOFF_S,
    ) -> None:
        if not base_url.lower().startswith("https://"):
            raise ValueError(f"Ingest base URL must use HTTPS (got: '{base_url}').")
        self._base_url = base_url.rstrip("/")
        self._device_token = device_token
        self._batch_size = batch_size
        self._ingest_path = ingest_path
        self._max_backoff_s = max_backoff_s
        self._current_backoff = _INITIAL_BACKOFF_S

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def current_backoff(self) -> float:
        """Current backoff delay in seconds.

        Starts at 1s, doubles on each consecutive failure, capped at
        ``max_backoff_s``. Resets to 1s on a successful upload.
        """
        return self._current_backoff

    async def publish_batch(self, outbox: Outbox) -> bool:
        """Peek a batch from the outbox, POST it, and ack on success.

        Returns:
            ``True`` if the batch was posted and acknowledged.
            ``False`` if the outbox was empty, the request failed, or the
            server returned a non-200 status.
        """
        rows = outbox.peek(self._batch_size)
        if not rows:
            logger.debug("Outbox empty, skipping upload.")
            return False

        rowids = [rowid for rowid, _ in rows]
        samples = [json.loads(payload) for _, payload in rows]

        try:
            async with httpx.AsyncClient(verify=True, timeout=_REQUEST_TIMEOUT_S) as client:
                response = await client.post(
                    f"{self._base_url}{self._ingest_path}",
                    json={"samples": samples},
                    headers={"Authorization": f"Bearer {self._device_token}"},
                )
        except httpx.TransportError as exc:
            logger.warning("Upload failed (network error): %s", exc)
            self._increase_backoff()
            return False

        if response.status_code == 200:
            outbox.ack(rowids)
            logger.info("Uploaded %d snapshots, acked rowids %s.", len(samples), rowids)
            self._reset_backoff()
            return True

        logger.warning(
            "Upload failed (HTTP %d), will retry after %.1fs backoff.",
            response.status_code,
            self._current_backoff,
        )
        self._increase_backoff()
        return False

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _increase_backoff(self) -> None:
        """Double the backoff delay, capped at max_backoff_s."""
        self._current_backoff = min(
            self._current_backoff * 2,
            self._max_backoff_s,
        )

    def _reset_backoff(self) -> None:
        self._current_backoff = _INITIAL_BACKOFF_S

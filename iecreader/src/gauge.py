"""
Power estimation from monotonically increasing watt-hour counters.

The meter only exposes cumulative energy totals with 1 Wh resolution. To
report a stable current power, each flow direction keeps a three-anchor
window over the counter values and derives the average power across it,
but only once the window spans enough time and energy to be meaningful.

EnergyGauge:
    One direction. Anchors are ``[start, previous change, latest change]``.
    The start anchor is pinned until ``reset()`` slides the window, or
    until an anticipatory reset drops a long, nearly flat stretch that was
    followed by a sudden fast change.

EnergyGaugePair:
    Import (positive) and export (negative) gauges combined into one signed
    power value, plus the hysteresis used to decide whether the change since
    the last publish is worth reporting early.

The numeric thresholds below are empirical. They give sensible results on
an ISKRA ME-162 sampled roughly every two seconds; they are not derived
from first principles.

Timestamps are integer milliseconds from a monotonic clock.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MS_WH_TO_W: int = 3600 * 1000
"""Wh per millisecond to W: ``W = Wh * 3600 * 1000 / ms``."""

ENOUGH_SHORT_MS: int = 20_000
ENOUGH_SHORT_WH: int = 5
ENOUGH_MEDIUM_MS: int = 50_000
ENOUGH_MEDIUM_WH: int = 2
ENOUGH_LONG_MS: int = 300_000
"""A window this long is always enough, whatever the delta."""

IDLE_DECAY_MS: int = 30_000
"""After this long without a change the estimate is capped by 1 Wh/idle."""

EARLY_RESET_GAP_MS: int = 60_000
EARLY_RESET_MAX_WH: int = 1
EARLY_RESET_FAST_MS: int = 20_000

ZERO_BAND_W: float = 20.0
"""Values within +/- this band count as "about zero" for hysteresis."""

RATIO_LOW: float = 0.6
RATIO_HIGH: float = 1.6


# ---------------------------------------------------------------------------
# Single direction
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Anchor:
    """A (time, cumulative energy) sample."""

    time_ms: int
    wh: int


class EnergyGauge:
    """Sliding three-anchor power estimator for a single flow direction.

    Usage::

        gauge = EnergyGauge()
        gauge.feed(now_ms(), read_watthours())   # often
        publish(gauge.instantaneous_power())     # now and then
        gauge.reset()
    """

    def __init__(self) -> None:
        self._anchors: list[Anchor] = []
        self._last_poll_ms: int | None = None
        self._last_change_ms: int | None = None
        self._power: float = 0.0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def energy_total(self) -> int:
        """Latest cumulative value in Wh (0 before the first sample)."""
        return self._anchors[2].wh if self._anchors else 0

    @property
    def last_change_ms(self) -> int | None:
        """Time of the latest value change, ``None`` if there was none yet."""
        return self._last_change_ms

    @property
    def last_poll_ms(self) -> int | None:
        """Time of the latest sample, changed or not."""
        return self._last_poll_ms

    @property
    def anchors(self) -> tuple[Anchor, ...]:
        return tuple(self._anchors)

    def instantaneous_power(self) -> float:
        """Best current estimate in W (never negative)."""
        return self._power

    def has_enough_data(self) -> bool:
        """Whether the window spans enough time and energy for an estimate."""
        if not self._anchors:
            return False
        duration = self._anchors[2].time_ms - self._anchors[0].time_ms
        delta = self._anchors[2].wh - self._anchors[0].wh
        return (
            (duration >= ENOUGH_SHORT_MS and delta >= ENOUGH_SHORT_WH)
            or (duration >= ENOUGH_MEDIUM_MS and delta >= ENOUGH_MEDIUM_WH)
            or duration >= ENOUGH_LONG_MS
        )

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def feed(self, time_ms: int, wh: int) -> None:
        """Add a sample. Call this on every poll, changed or not."""
        if not self._anchors:
            self._start(time_ms, wh)
            return

        self._last_poll_ms = time_ms
        newest = self._anchors[2]

        if wh == newest.wh:
            self._decay(time_ms)
            return

        if wh < newest.wh or time_ms < newest.time_ms:
            logger.warning(
                "Energy counter went backwards (%d Wh @ %d -> %d Wh @ %d), restarting window",
                newest.wh,
                newest.time_ms,
                wh,
                time_ms,
            )
            self._start(time_ms, wh)
            return

        self._anchors = [self._anchors[0], newest, Anchor(time_ms, wh)]
        self._last_change_ms = time_ms
        self._maybe_reset_early()

        if self.has_enough_data():
            self._recalculate()

    def reset(self) -> None:
        """Start a new measurement interval after the power was read.

        Only slides the window when it held enough data; the last computed
        power is kept until the next recalculation.
        """
        if self.has_enough_data():
            _, middle, newest = self._anchors
            self._anchors = [middle, newest, newest]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _start(self, time_ms: int, wh: int) -> None:
        self._anchors = [Anchor(time_ms, wh)] * 3
        self._last_poll_ms = time_ms
        self._power = 0.0

    def _recalculate(self) -> None:
        oldest, _, newest = self._anchors
        duration = newest.time_ms - oldest.time_ms
        self._power = (newest.wh - oldest.wh) * MS_WH_TO_W / duration

    def _decay(self, time_ms: int) -> None:
        # If one Wh ticked over right now, the power could at most be
        # 1 Wh / idle time. Never report more than that.
        idle = time_ms - self._anchors[2].time_ms
        if idle >= ENOUGH_LONG_MS:
            self._power = 0.0
        elif idle > IDLE_DECAY_MS:
            self._power = min(self._power, MS_WH_TO_W / idle)

    def _maybe_reset_early(self) -> None:
        oldest, middle, newest = self._anchors
        if (
            middle.time_ms - oldest.time_ms > EARLY_RESET_GAP_MS
            and middle.wh - oldest.wh <= EARLY_RESET_MAX_WH
            and newest.time_ms - middle.time_ms < EARLY_RESET_FAST_MS
        ):
            self._anchors[0] = middle


# ---------------------------------------------------------------------------
# Both directions
# ---------------------------------------------------------------------------


class EnergyGaugePair:
    """Import/export gauge pair producing a signed net power.

    Positive power means importing from the grid (1.8.0 rising), negative
    means exporting (2.8.0 rising).
    """

    def __init__(self) -> None:
        self.positive = EnergyGauge()
        self.negative = EnergyGauge()
        self._baseline: float = 0.0

    @property
    def baseline(self) -> float:
        """Signed power recorded at the last ``reset()``."""
        return self._baseline

    def feed_positive(self, time_ms: int, wh: int) -> None:
        self.positive.feed(time_ms, wh)

    def feed_negative(self, time_ms: int, wh: int) -> None:
        self.negative.feed(time_ms, wh)

    def instantaneous_power(self) -> float:
        """Signed power of whichever direction changed most recently."""
        pos_change = self.positive.last_change_ms
        neg_change = self.negative.last_change_ms
        if neg_change is not None and (pos_change is None or neg_change > pos_change):
            power = self.negative.instantaneous_power()
            return -power if power else 0.0
        return self.positive.instantaneous_power()

    def is_significant_change(self) -> bool:
        """Whether the power moved enough since the last reset to report."""
        current = self.instantaneous_power()
        previous = self._baseline

        if current * previous < 0:
            return True
        if abs(current) < ZERO_BAND_W and abs(previous) < ZERO_BAND_W:
            return False
        if previous == 0:
            return True

        ratio = current / previous
        return not (RATIO_LOW <= ratio <= RATIO_HIGH)

    def reset(self) -> None:
        """Record the current power as baseline and reset both gauges."""
        self._baseline = self.instantaneous_power()
        self.positive.reset()
        self.negative.reset()

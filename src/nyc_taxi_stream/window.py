"""Tumbling-window aggregation of joined trips per pickup neighborhood.

Windows are aligned to the Unix epoch: a trip picked up at ``t`` falls into
``[floor(t / interval) * interval, ... + interval)``. A window is emitted
exactly once, when the combined watermark reaches its end; trips that arrive
for an already finalized window are dropped and counted as late.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import time
from typing import Dict, List, Optional

from .metrics import MetricsRecorder
from .models import JoinedTrip, WindowAggregate, WindowKey

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)


def window_start_for(ts: datetime, interval: timedelta) -> datetime:
    """Start of the epoch-aligned window of size ``interval`` containing ``ts``."""
    return EPOCH + ((ts - EPOCH) // interval) * interval


@dataclass
class WindowAccumulator:
    """Running sums of one window; counts and sums merge associatively."""
    ride_count: int = 0
    total_fare_amount: float = 0.0
    total_tip_amount: float = 0.0
    opened_at: float = field(default_factory=time.monotonic)

    def add(self, trip: JoinedTrip) -> "WindowAccumulator":
        self.ride_count += 1
        self.total_fare_amount += trip.fare_amount
        self.total_tip_amount += trip.tip_amount
        return self

    def merge(self, other: "WindowAccumulator") -> "WindowAccumulator":
        return WindowAccumulator(
            ride_count=self.ride_count + other.ride_count,
            total_fare_amount=self.total_fare_amount + other.total_fare_amount,
            total_tip_amount=self.total_tip_amount + other.total_tip_amount,
            opened_at=min(self.opened_at, other.opened_at),
        )

    @property
    def average_fare_amount(self) -> Optional[float]:
        return self.total_fare_amount / self.ride_count if self.ride_count else None

    @property
    def average_tip_amount(self) -> Optional[float]:
        return self.total_tip_amount / self.ride_count if self.ride_count else None


class WindowAggregator:
    """Accumulate joined trips into tumbling windows keyed by neighborhood.

    Parameters
    ----------
    interval
        Window size; must be positive.
    metrics
        Recorder for late trips, emitted windows and emission latency.

    Examples
    --------
    >>> agg = WindowAggregator(timedelta(minutes=5), MetricsRecorder())
    >>> agg.add(trip)
    True
    >>> finalized = agg.advance(join.combined_watermark)
    """

    def __init__(self, interval: timedelta, metrics: MetricsRecorder):
        if interval <= timedelta(0):
            raise ValueError("window interval must be positive")
        self.interval = interval
        self.metrics = metrics
        self._windows: Dict[WindowKey, WindowAccumulator] = {}
        self._watermark: Optional[datetime] = None

    @property
    def watermark(self) -> Optional[datetime]:
        return self._watermark

    def open_windows(self) -> int:
        return len(self._windows)

    def key_for(self, trip: JoinedTrip) -> WindowKey:
        start = window_start_for(trip.pickup_time, self.interval)
        return WindowKey(
            window_start=start,
            window_end=start + self.interval,
            pickup_neighborhood=trip.pickup_neighborhood,
        )

    def _is_final(self, key: WindowKey) -> bool:
        return self._watermark is not None and key.window_end <= self._watermark

    def add(self, trip: JoinedTrip) -> bool:
        """Add ``trip`` to its window. Returns False if the window is already final."""
        key = self.key_for(trip)
        if self._is_final(key):
            self.metrics.record_late_trip()
            logger.debug("Late trip %s for finalized window %s", trip.key, key.window_start)
            return False
        acc = self._windows.get(key)
        if acc is None:
            acc = self._windows[key] = WindowAccumulator()
        acc.add(trip)
        return True

    def merge(self, window_start: datetime, neighborhood: str, partial: WindowAccumulator) -> bool:
        """Fold a partial accumulator (e.g. from a parallel shard) into a window."""
        if partial.ride_count == 0:
            return True
        key = WindowKey(
            window_start=window_start,
            window_end=window_start + self.interval,
            pickup_neighborhood=neighborhood,
        )
        if self._is_final(key):
            self.metrics.record_late_trip()
            return False
        current = self._windows.get(key)
        if current is None:
            current = WindowAccumulator(opened_at=partial.opened_at)
        self._windows[key] = current.merge(partial)
        return True

    def advance(self, watermark: Optional[datetime]) -> List[WindowAggregate]:
        """Finalize every window whose end is at or before ``watermark``.

        Returns the finalized aggregates ordered by window start and
        neighborhood. A watermark older than the current one is ignored.
        """
        if watermark is None or (self._watermark is not None and watermark <= self._watermark):
            return []
        self._watermark = watermark

        ready = sorted(
            (k for k in self._windows if k.window_end <= watermark),
            key=lambda k: (k.window_start, k.pickup_neighborhood),
        )
        finalized: List[WindowAggregate] = []
        now = time.monotonic()
        for key in ready:
            acc = self._windows.pop(key)
            finalized.append(WindowAggregate(
                window_start=key.window_start,
                window_end=key.window_end,
                pickup_neighborhood=key.pickup_neighborhood,
                ride_count=acc.ride_count,
                total_fare_amount=acc.total_fare_amount,
                total_tip_amount=acc.total_tip_amount,
                average_fare_amount=acc.average_fare_amount,
                average_tip_amount=acc.average_tip_amount,
            ))
            self.metrics.record_window_emitted(now - acc.opened_at)
        if finalized:
            logger.info("Finalized %d window(s) up to watermark %s", len(finalized), watermark)
        return finalized

    def discard_open(self) -> int:
        """Drop all windows that are still open (shutdown); return how many."""
        dropped = len(self._windows)
        self._windows.clear()
        if dropped:
            self.metrics.record_discarded_windows(dropped)
        return dropped

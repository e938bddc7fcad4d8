"""Watermark-bounded inner join of the ride and fare streams.

Rides and fares are matched on the exact trip key
``(medallion, hack_license, vendor_id, pickup_time)``. A record that finds no
partner is buffered until the *opposite* stream's watermark passes its event
time, at which point no partner can arrive any more and it is discarded as
unmatched. Buffer memory is therefore bounded by the allowed lateness of each
stream.

Each stream's watermark is ``max(pickup_time seen on that stream) -
allowed_lateness``. Watermarks never move backwards.
"""
from datetime import datetime, timedelta
import heapq
import logging
import threading
from typing import Dict, List, Optional, Tuple

from .metrics import FARE, RIDE, MetricsRecorder
from .models import FareRecord, JoinedTrip, RideRecord, TripKey

logger = logging.getLogger(__name__)


class _Side:
    """Buffer and watermark of one input stream."""

    def __init__(self, name: str, allowed_lateness: timedelta):
        self.name = name
        self.allowed_lateness = allowed_lateness
        self.buffer: Dict[TripKey, object] = {}
        # (event_time, seq, key); entries whose key already left the buffer are skipped
        self.expiry: List[Tuple[datetime, int, TripKey]] = []
        self.max_event_time: Optional[datetime] = None

    @property
    def watermark(self) -> Optional[datetime]:
        if self.max_event_time is None:
            return None
        return self.max_event_time - self.allowed_lateness

    def observe(self, event_time: datetime) -> bool:
        """Track ``event_time``; return True if the watermark advanced."""
        if self.max_event_time is None or event_time > self.max_event_time:
            self.max_event_time = event_time
            return True
        return False

    def evict_before(self, watermark: datetime) -> int:
        """Drop buffered entries with event time strictly before ``watermark``."""
        evicted = 0
        while self.expiry and self.expiry[0][0] < watermark:
            _, _, key = heapq.heappop(self.expiry)
            if self.buffer.pop(key, None) is not None:
                evicted += 1
        return evicted


class WatermarkedJoin:
    """Stateful stream-to-stream equality join with watermark eviction.

    Parameters
    ----------
    ride_lateness
        Allowed lateness of the ride stream (its "watermark interval").
    fare_lateness
        Allowed lateness of the fare stream.
    metrics
        Recorder for joined, unmatched and duplicate counts.

    Notes
    -----
    - First match wins: while a record is buffered, a second record with the
      same key on the same side is dropped and counted as a duplicate.
    - All methods take an internal lock, so concurrent callers never lose
      updates to the buffers or watermarks.
    """

    def __init__(self, ride_lateness: timedelta, fare_lateness: timedelta, metrics: MetricsRecorder):
        self._sides = {
            RIDE: _Side(RIDE, ride_lateness),
            FARE: _Side(FARE, fare_lateness),
        }
        self.metrics = metrics
        self._lock = threading.Lock()
        self._seq = 0

    def add_ride(self, ride: RideRecord) -> List[JoinedTrip]:
        return self._add(RIDE, FARE, ride)

    def add_fare(self, fare: FareRecord) -> List[JoinedTrip]:
        return self._add(FARE, RIDE, fare)

    def add(self, record) -> List[JoinedTrip]:
        """Dispatch on record type; see :meth:`add_ride` / :meth:`add_fare`."""
        if isinstance(record, RideRecord):
            return self.add_ride(record)
        if isinstance(record, FareRecord):
            return self.add_fare(record)
        raise TypeError(f"Cannot join {type(record).__name__}")

    def _add(self, own_name: str, other_name: str, record) -> List[JoinedTrip]:
        with self._lock:
            own = self._sides[own_name]
            other = self._sides[other_name]
            key = record.key
            joined: List[JoinedTrip] = []

            partner = other.buffer.pop(key, None)
            if partner is not None:
                ride, fare = (record, partner) if own_name == RIDE else (partner, record)
                joined.append(JoinedTrip(ride=ride, fare=fare))
                self.metrics.record_joined()
                logger.debug("Joined trip %s", key)
            elif other.watermark is not None and record.pickup_time < other.watermark:
                self.metrics.record_unmatched(own_name)
            elif key in own.buffer:
                self.metrics.record_duplicate(own_name)
            else:
                own.buffer[key] = record
                self._seq += 1
                heapq.heappush(own.expiry, (record.pickup_time, self._seq, key))

            if own.observe(record.pickup_time):
                evicted = other.evict_before(own.watermark)
                if evicted:
                    self.metrics.record_unmatched(other_name, evicted)
            return joined

    def holds(self, stream: str, record) -> bool:
        """True while ``record`` itself waits in the ``stream`` buffer."""
        with self._lock:
            return self._sides[stream].buffer.get(record.key) is record

    def watermark(self, stream: str) -> Optional[datetime]:
        with self._lock:
            return self._sides[stream].watermark

    @property
    def combined_watermark(self) -> Optional[datetime]:
        """``min`` of both stream watermarks; None until both streams have data."""
        with self._lock:
            marks = [side.watermark for side in self._sides.values()]
        if any(m is None for m in marks):
            return None
        return min(marks)

    def pending(self) -> Dict[str, int]:
        """Number of buffered, still unmatched records per stream."""
        with self._lock:
            return self._pending_counts()

    def clear(self) -> Dict[str, int]:
        """Drop every buffered record (shutdown); return how many were dropped."""
        with self._lock:
            dropped = self._pending_counts()
            for side in self._sides.values():
                side.buffer.clear()
                side.expiry.clear()
            return dropped

    def _pending_counts(self) -> Dict[str, int]:
        return {name: len(side.buffer) for name, side in self._sides.items()}

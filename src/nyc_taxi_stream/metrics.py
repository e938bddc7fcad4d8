"""Pipeline counters.

A single :class:`MetricsRecorder` is created by the runtime and handed to each
component that needs to count something. Components only call the
``record_*`` methods; nothing reads the values back for correctness.
"""
import logging
import threading
from typing import Dict

logger = logging.getLogger(__name__)

RIDE = "ride"
FARE = "fare"


class MetricsRecorder:
    """Thread-safe monotonically increasing counters.

    Counters
    --------
    malformed_rides, malformed_fares
        Messages rejected by the ride/fare decoders.
    unmatched_rides, unmatched_fares
        Buffered join entries discarded because the opposite stream's
        watermark passed them.
    duplicate_rides, duplicate_fares
        Records dropped because a record with the same key was already
        waiting in the join buffer.
    late_trips
        Joined trips whose window had already been finalized.
    joined_trips
        Trips emitted by the join.
    windows_emitted
        Finalized window aggregates.
    discarded_windows
        Open windows dropped at shutdown.

    Window emission latency is the processing time between the first trip
    landing in a window and the window being emitted.
    """

    COUNTERS = (
        "malformed_rides",
        "malformed_fares",
        "unmatched_rides",
        "unmatched_fares",
        "duplicate_rides",
        "duplicate_fares",
        "late_trips",
        "joined_trips",
        "windows_emitted",
        "discarded_windows",
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {name: 0 for name in self.COUNTERS}
        self._latency_total = 0.0
        self._latency_max = 0.0

    def _incr(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._counts[name] += n

    def record_malformed(self, stream: str) -> None:
        self._incr(f"malformed_{stream}s")

    def record_unmatched(self, stream: str, n: int = 1) -> None:
        self._incr(f"unmatched_{stream}s", n)

    def record_duplicate(self, stream: str) -> None:
        self._incr(f"duplicate_{stream}s")

    def record_late_trip(self) -> None:
        self._incr("late_trips")

    def record_joined(self, n: int = 1) -> None:
        self._incr("joined_trips", n)

    def record_discarded_windows(self, n: int) -> None:
        self._incr("discarded_windows", n)

    def record_window_emitted(self, latency_seconds: float) -> None:
        with self._lock:
            self._counts["windows_emitted"] += 1
            self._latency_total += latency_seconds
            self._latency_max = max(self._latency_max, latency_seconds)

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    @property
    def malformed_rides(self) -> int:
        return self.get("malformed_rides")

    @property
    def malformed_fares(self) -> int:
        return self.get("malformed_fares")

    def snapshot(self) -> dict:
        """Return a copy of all counters plus latency statistics."""
        with self._lock:
            data = dict(self._counts)
            emitted = data["windows_emitted"]
            data["window_latency_avg_s"] = self._latency_total / emitted if emitted else 0.0
            data["window_latency_max_s"] = self._latency_max
        return data

    def log_snapshot(self) -> None:
        data = self.snapshot()
        logger.info("metrics %s", " ".join(f"{k}={v}" for k, v in data.items()))

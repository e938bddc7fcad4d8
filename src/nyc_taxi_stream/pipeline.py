"""Runtime wiring: decode → join → window → sink.

Flow
----
One ingestion thread per stream reads its source, decodes each message (JSON
rides are also geo-resolved) and puts the result on a bounded queue. The
thread calling :meth:`Pipeline.run` is the only writer of join, window and
sink state, so each window key is aggregated by exactly one thread.

Read positions
--------------
Every record read by :meth:`Pipeline.run` carries its
:class:`~.source.ReadPosition`. The position stays held while the record waits
in a join buffer or in an open window. After each successful sink write the
lowest held offset of every partition is committed back to its source, so a
restart resumes after the last record whose effect is durable.

Shutdown
--------
On a stop signal intake stops, windows already finalized by the watermark are
written, and windows still open plus unmatched join buffers are discarded
(at-most-once loss on shutdown). Their read positions are never committed, so
a restart reads them again. A :class:`~.errors.SinkWriteFailure` or an
ingestion error stops the pipeline and is re-raised.
"""
import logging
import queue
import threading
import time
from typing import Dict, List, Optional, Tuple

from .config import PipelineConfig, SecretsProvider
from .geo import GeoResolver
from .join import WatermarkedJoin
from .load import ClickHouseSinkWriter, clickhouse_connection
from .metrics import FARE, RIDE, MetricsRecorder
from .models import DecodeFailure, FareRecord, TripKey, WindowAggregate, WindowKey
from .parse import FareDecoder, RecordDecoder, RideDecoder
from .source import KafkaStreamSource, OffsetTracker, ReadPosition, StreamSource
from .window import WindowAggregator

logger = logging.getLogger(__name__)

_RECORD = "record"
_DONE = "done"
_ERROR = "error"


class Pipeline:
    """The stream-processing core.

    Parameters
    ----------
    ride_decoder, fare_decoder
        Stateless decoders for each stream.
    join
        Ride/fare join state.
    aggregator
        Tumbling window state.
    sink
        Writer of finalized aggregates (anything with ``write(list)`` and
        ``close()``).
    metrics
        Shared counters.
    metrics_log_interval
        Seconds between metric log lines while running.
    queue_size
        Capacity of the hand-off queue between ingestion threads and the
        writer; a full queue blocks ingestion.

    Attributes
    ----------
    sources
        ``{stream: source}`` receiving offset commits; set by :meth:`run`.
    offsets
        Held and committable read positions.
    """

    def __init__(
        self,
        ride_decoder: RideDecoder,
        fare_decoder: FareDecoder,
        join: WatermarkedJoin,
        aggregator: WindowAggregator,
        sink,
        metrics: MetricsRecorder,
        metrics_log_interval: float = 60.0,
        queue_size: int = 10_000,
    ):
        self.decoders = {RIDE: ride_decoder, FARE: fare_decoder}
        self.join = join
        self.aggregator = aggregator
        self.sink = sink
        self.metrics = metrics
        self.metrics_log_interval = metrics_log_interval
        self.queue_size = queue_size
        self.sources: Dict[str, StreamSource] = {}
        self.offsets = OffsetTracker()
        self._buffered: Dict[Tuple[str, TripKey], Tuple[object, ReadPosition]] = {}
        self._window_positions: Dict[WindowKey, List[ReadPosition]] = {}

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        secrets: SecretsProvider,
        geo_resolver: Optional[GeoResolver] = None,
        sink=None,
    ) -> "Pipeline":
        """Build every component from validated configuration.

        Raises
        ------
        StartupConfigurationError
            If a secret is missing or the geometry source cannot be loaded.
        """
        metrics = MetricsRecorder()
        if geo_resolver is None:
            geo_resolver = GeoResolver.load(config.neighborhood_file_url, config.neighborhood_property)
        if sink is None:
            con = clickhouse_connection(
                host=config.sink_host,
                port=config.sink_port,
                user=secrets.get_secret(config.secret_scope, config.sink_user_secret_name),
                password=secrets.get_secret(config.secret_scope, config.sink_password_secret_name),
                database=config.sink_database,
                secure=config.sink_secure,
                keep_alive_ms=config.sink_keep_alive_ms,
            )
            sink = ClickHouseSinkWriter(
                con,
                config.sink_full_table,
                batch_size=config.sink_batch_size,
                write_concurrency=config.sink_write_concurrency,
                max_retries=config.sink_max_retries,
            )
        return cls(
            ride_decoder=RideDecoder(geo_resolver, metrics),
            fare_decoder=FareDecoder(metrics),
            join=WatermarkedJoin(
                config.taxi_ride_watermark_interval,
                config.taxi_fare_watermark_interval,
                metrics,
            ),
            aggregator=WindowAggregator(config.window_interval, metrics),
            sink=sink,
            metrics=metrics,
            metrics_log_interval=config.metrics_log_interval,
        )

    def decoder(self, stream: str) -> RecordDecoder:
        return self.decoders[stream]

    def process(self, decoded, position: Optional[ReadPosition] = None) -> List[WindowAggregate]:
        """Feed one decoded record through join, windows and sink.

        ``position`` is where the record was read from; without it no read
        position is tracked. Returns the aggregates finalized (and written)
        by this record.
        """
        if position is not None:
            self.offsets.hold(position)
        if isinstance(decoded, DecodeFailure):
            self._release([position])
            return []

        stream = FARE if isinstance(decoded, FareRecord) else RIDE
        other = RIDE if stream == FARE else FARE
        trips = self.join.add(decoded)
        if trips:
            _, partner_position = self._buffered.pop((other, decoded.key), (None, None))
            for trip in trips:
                key = self.aggregator.key_for(trip)
                if self.aggregator.add(trip):
                    self._window_positions.setdefault(key, []).extend(
                        p for p in (position, partner_position) if p is not None
                    )
                else:
                    self._release([position, partner_position])
        elif position is not None and self.join.holds(stream, decoded):
            self._buffered[(stream, decoded.key)] = (decoded, position)
        else:
            self._release([position])

        finalized = self.aggregator.advance(self.join.combined_watermark)
        if finalized:
            self._write(finalized)
        return finalized

    def ingest(self, stream: str, raw: bytes, offset: Optional[int] = None, partition: int = 0) -> List[WindowAggregate]:
        """Decode and process one raw message of ``stream``."""
        position = None if offset is None else ReadPosition(stream, partition, offset)
        return self.process(self.decoder(stream).decode(raw), position)

    def _release(self, positions) -> None:
        for position in positions:
            if position is not None:
                self.offsets.release(position)

    def _write(self, finalized: List[WindowAggregate]) -> None:
        self.sink.write(finalized)
        for aggregate in finalized:
            self._release(self._window_positions.pop(aggregate.key, []))
        self._commit()

    def _commit(self) -> None:
        # entries evicted from the join since the last write no longer hold their position
        for (stream, key), (record, position) in list(self._buffered.items()):
            if not self.join.holds(stream, record):
                del self._buffered[(stream, key)]
                self.offsets.release(position)
        for stream, source in self.sources.items():
            offsets = self.offsets.pending_commits(stream)
            if offsets:
                source.commit(offsets)
                logger.debug("Committing %s offsets %s", stream, offsets)

    def _put(self, q: queue.Queue, item: Tuple[str, object], stop_event: threading.Event) -> bool:
        while not stop_event.is_set():
            try:
                q.put(item, timeout=0.5)
                return True
            except queue.Full:
                continue
        return False

    def _ingest_loop(
        self,
        stream: str,
        source: StreamSource,
        position: str,
        q: queue.Queue,
        stop_event: threading.Event,
    ) -> None:
        decoder = self.decoder(stream)
        try:
            for message in source.read_from(position):
                if stop_event.is_set():
                    break
                item = (decoder.decode(message.raw), ReadPosition(stream, message.partition, message.offset))
                if not self._put(q, (_RECORD, item), stop_event):
                    break
            self._put(q, (_DONE, stream), stop_event)
        except Exception as e:
            logger.exception("Ingestion of %s stream failed", stream)
            self._put(q, (_ERROR, e), stop_event)

    def run(
        self,
        ride_source: StreamSource,
        fare_source: StreamSource,
        stop_event: Optional[threading.Event] = None,
        ride_position: str = "earliest",
        fare_position: str = "earliest",
    ) -> None:
        """Process both streams until they end, ``stop_event`` is set, or a fatal error.

        ``ride_position`` and ``fare_position`` are where each stream starts
        when its consumer group has no committed offset.

        Raises
        ------
        SinkWriteFailure
            If the sink gave up on a batch.
        Exception
            Any error raised by a source, forwarded from its ingestion thread.
        """
        stop_event = stop_event or threading.Event()
        self.sources = {RIDE: ride_source, FARE: fare_source}
        q: queue.Queue = queue.Queue(maxsize=self.queue_size)
        threads = [
            threading.Thread(
                target=self._ingest_loop,
                args=(stream, source, position, q, stop_event),
                name=f"ingest-{stream}",
                daemon=True,
            )
            for stream, source, position in (
                (RIDE, ride_source, ride_position),
                (FARE, fare_source, fare_position),
            )
        ]
        for t in threads:
            t.start()
        logger.info("Pipeline started")

        try:
            self._drain(q, stop_event, streams=len(threads))
        except BaseException:
            self._stop_intake(stop_event, threads, ride_source, fare_source)
            self.sink.close()
            raise
        self._stop_intake(stop_event, threads, ride_source, fare_source)
        self.close()

    def _drain(self, q: queue.Queue, stop_event: threading.Event, streams: int) -> None:
        finished = 0
        next_log = time.monotonic() + self.metrics_log_interval
        while not stop_event.is_set() and finished < streams:
            try:
                kind, payload = q.get(timeout=0.5)
            except queue.Empty:
                kind, payload = None, None
            if kind == _RECORD:
                self.process(*payload)
            elif kind == _DONE:
                finished += 1
                logger.info("%s stream ended", payload)
            elif kind == _ERROR:
                raise payload
            if time.monotonic() >= next_log:
                self.metrics.log_snapshot()
                next_log = time.monotonic() + self.metrics_log_interval

    def _stop_intake(self, stop_event, threads, *sources) -> None:
        stop_event.set()
        for source in sources:
            source.close()
        for t in threads:
            t.join(timeout=5)

    def close(self) -> None:
        """Write windows the watermark already closed, then discard the rest."""
        finalized = self.aggregator.advance(self.join.combined_watermark)
        if finalized:
            self._write(finalized)
        open_windows = self.aggregator.discard_open()
        unmatched = self.join.clear()
        self._buffered.clear()
        self._window_positions.clear()
        if open_windows or any(unmatched.values()):
            logger.warning(
                "Shutdown discarded %d open window(s) and %d ride / %d fare unmatched record(s)",
                open_windows, unmatched[RIDE], unmatched[FARE],
            )
        self.sink.close()
        self.metrics.log_snapshot()
        logger.info("Pipeline stopped")


def build_sources(config: PipelineConfig, secrets: SecretsProvider) -> Tuple[KafkaStreamSource, KafkaStreamSource]:
    """Create the ride and fare sources from their secret connection strings."""
    ride = KafkaStreamSource(
        secrets.get_secret(config.secret_scope, config.taxi_ride_secret_name),
        config.taxi_ride_consumer_group,
    )
    fare = KafkaStreamSource(
        secrets.get_secret(config.secret_scope, config.taxi_fare_secret_name),
        config.taxi_fare_consumer_group,
    )
    return ride, fare

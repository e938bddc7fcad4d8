"""Stream sources feeding raw ride and fare messages into the pipeline.

A source yields :class:`SourceMessage` tuples lazily and blocks only on the
upstream broker. Delivery is at-least-once. The pipeline commits a read
position only once every message before it has either reached the sink or
been dropped (see :class:`OffsetTracker`), so a restart resumes from the last
committed position and re-processes at most the messages whose effect was not
yet durable. Re-processing is safe because the sink upserts by natural key.
"""
from collections import defaultdict
from datetime import datetime, timezone
import logging
import threading
from typing import Callable, Dict, Iterator, NamedTuple, Protocol, Set, Tuple
from urllib.parse import urlparse

from kafka import KafkaConsumer
from kafka.errors import KafkaError
from kafka.structs import OffsetAndMetadata, TopicPartition

from .errors import StartupConfigurationError
from .models import to_naive_utc

logger = logging.getLogger(__name__)

EVENT_HUBS_KAFKA_PORT = 9093
STARTING_POSITIONS = ("earliest", "latest")


class SourceMessage(NamedTuple):
    raw: bytes
    event_time: datetime
    offset: int
    partition: int = 0


class ReadPosition(NamedTuple):
    """Where a decoded record was read from."""
    stream: str
    partition: int
    offset: int


class StreamSource(Protocol):
    def read_from(self, position: str = "earliest") -> Iterator[SourceMessage]:
        ...

    def commit(self, offsets: Dict[int, int]) -> None:
        """Record ``{partition: next offset to read}`` as durably processed."""
        ...

    def close(self) -> None:
        ...


class OffsetTracker:
    """Committable read offsets per stream partition.

    A message is *held* from the moment it is read until its effect on the
    sink is durable, or until it is known to have no effect (malformed,
    unmatched, duplicate or late). The committable offset of a partition is
    the lowest offset still held, or one past the highest offset read when
    nothing is held. Committable offsets only move forward.
    """

    def __init__(self):
        self._held: Dict[Tuple[str, int], Set[int]] = defaultdict(set)
        self._next: Dict[Tuple[str, int], int] = {}
        self._committed: Dict[Tuple[str, int], int] = {}

    def hold(self, position: ReadPosition) -> None:
        tp = (position.stream, position.partition)
        self._held[tp].add(position.offset)
        self._next[tp] = max(self._next.get(tp, 0), position.offset + 1)

    def release(self, position: ReadPosition) -> None:
        self._held[(position.stream, position.partition)].discard(position.offset)

    def held(self, stream: str) -> int:
        return sum(len(v) for (s, _), v in self._held.items() if s == stream)

    def pending_commits(self, stream: str) -> Dict[int, int]:
        """Return ``{partition: offset}`` that moved forward since the last call."""
        commits = {}
        for (s, partition), next_offset in self._next.items():
            if s != stream:
                continue
            held = self._held[(s, partition)]
            offset = min(held) if held else next_offset
            if offset > self._committed.get((s, partition), -1):
                self._committed[(s, partition)] = offset
                commits[partition] = offset
        return commits


def kafka_settings(connection_string: str) -> dict:
    """Translate a stream connection string into ``KafkaConsumer`` settings.

    Two forms are accepted:

    - Event Hubs: ``Endpoint=sb://<ns>.servicebus.windows.net/;...;EntityPath=<hub>``,
      reached through its Kafka endpoint on port 9093 with SASL PLAIN.
    - Plain Kafka: ``kafka://host:port/topic`` (no authentication).

    Returns
    -------
    dict
        ``{"topic": ..., "bootstrap_servers": ..., **security_kwargs}``
    """
    connection_string = connection_string.strip()
    if connection_string.startswith("kafka://"):
        url = urlparse(connection_string)
        topic = url.path.lstrip("/")
        if not url.netloc or not topic:
            raise StartupConfigurationError(f"Invalid kafka URL: {connection_string}")
        return {"topic": topic, "bootstrap_servers": url.netloc}

    parts = {}
    for item in connection_string.split(";"):
        if "=" in item:
            k, v = item.split("=", 1)
            parts[k.strip()] = v.strip()
    endpoint = urlparse(parts.get("Endpoint", ""))
    topic = parts.get("EntityPath")
    if not endpoint.hostname or not topic:
        raise StartupConfigurationError(
            "Connection string needs both Endpoint and EntityPath"
        )
    return {
        "topic": topic,
        "bootstrap_servers": f"{endpoint.hostname}:{EVENT_HUBS_KAFKA_PORT}",
        "security_protocol": "SASL_SSL",
        "sasl_mechanism": "PLAIN",
        "sasl_plain_username": "$ConnectionString",
        "sasl_plain_password": connection_string,
    }


class KafkaStreamSource:
    """Read one topic through the Kafka protocol.

    Parameters
    ----------
    connection_string
        See :func:`kafka_settings`.
    consumer_group
        Consumer group identity of this stream.
    poll_timeout_ms
        Poll timeout; bounds how long :meth:`close` takes to stop intake.
    consumer_factory
        Callable building the consumer (``KafkaConsumer`` by default).

    Notes
    -----
    The consumer group resumes from its committed offsets; ``position`` only
    applies to partitions without one. Offsets handed to :meth:`commit` are
    sent by the reading thread between polls, since the consumer is not
    thread-safe. Offsets committed after intake stopped are dropped and the
    affected messages are read again on restart.
    """

    def __init__(
        self,
        connection_string: str,
        consumer_group: str,
        poll_timeout_ms: int = 500,
        consumer_factory: Callable[..., KafkaConsumer] = KafkaConsumer,
    ):
        self.settings = kafka_settings(connection_string)
        self.consumer_group = consumer_group
        self.poll_timeout_ms = poll_timeout_ms
        self.consumer_factory = consumer_factory
        self._closed = threading.Event()
        self._commit_lock = threading.Lock()
        self._pending_commits: Dict[int, int] = {}

    @property
    def topic(self) -> str:
        return self.settings["topic"]

    def read_from(self, position: str = "earliest") -> Iterator[SourceMessage]:
        if position not in STARTING_POSITIONS:
            raise ValueError(f"position must be one of {STARTING_POSITIONS}")
        kwargs = {k: v for k, v in self.settings.items() if k != "topic"}
        consumer = self.consumer_factory(
            self.topic,
            group_id=self.consumer_group,
            auto_offset_reset=position,
            enable_auto_commit=False,
            **kwargs,
        )
        logger.info("Reading %s (group=%s, from %s)", self.topic, self.consumer_group, position)
        try:
            while not self._closed.is_set():
                self._flush_commits(consumer)
                batch = consumer.poll(timeout_ms=self.poll_timeout_ms)
                for tp, records in batch.items():
                    for rec in records:
                        event_time = to_naive_utc(
                            datetime.fromtimestamp(rec.timestamp / 1000, tz=timezone.utc)
                        )
                        yield SourceMessage(rec.value, event_time, rec.offset, tp.partition)
        finally:
            try:
                self._flush_commits(consumer)
            finally:
                consumer.close()

    def commit(self, offsets: Dict[int, int]) -> None:
        with self._commit_lock:
            for partition, offset in offsets.items():
                self._pending_commits[partition] = max(offset, self._pending_commits.get(partition, 0))

    def _flush_commits(self, consumer) -> None:
        with self._commit_lock:
            pending, self._pending_commits = self._pending_commits, {}
        if not pending:
            return
        try:
            consumer.commit({
                TopicPartition(self.topic, partition): OffsetAndMetadata(offset=offset, metadata="", leader_epoch=-1)
                for partition, offset in pending.items()
            })
        except KafkaError as e:
            # the messages are read again after a restart
            logger.warning("Commit of %s offsets %s failed: %s", self.topic, pending, e)
            return
        logger.debug("Committed %s offsets %s", self.topic, pending)

    def close(self) -> None:
        self._closed.set()

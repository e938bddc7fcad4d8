"""
Idempotent writes of finalized window aggregates into ClickHouse.

This module provides:
- The target table DDL (:data:`CREATE_TABLE_SQL`), a ``ReplacingMergeTree``
  ordered by the natural key ``(window_start, window_end, pickup_neighborhood)``
- Connection kwargs assembly for :class:`clickhouse_driver.Client`
  (:func:`clickhouse_connection`)
- Batched, retried, concurrent inserts (:class:`ClickHouseSinkWriter`)

Because rows sharing the natural key replace each other, writing the same
aggregate twice (a retry after a transient failure, or re-processing after a
restart) leaves the table as if it had been written once. Readers should
query with ``FINAL`` to see merged rows.
"""

from concurrent.futures import ThreadPoolExecutor
import logging
import threading
import time
from typing import Callable, List, Sequence

from clickhouse_driver import Client
from clickhouse_driver.errors import Error as ClickHouseError, NetworkError, SocketTimeoutError

from .errors import RetryableSinkError, SinkWriteFailure, StartupConfigurationError
from .models import WindowAggregate

logger = logging.getLogger(__name__)

COLUMNS = (
    "window_start",
    "window_end",
    "pickup_neighborhood",
    "ride_count",
    "total_fare_amount",
    "total_tip_amount",
    "average_fare_amount",
    "average_tip_amount",
)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    window_start DateTime,
    window_end DateTime,
    pickup_neighborhood String,
    ride_count UInt64,
    total_fare_amount Float64,
    total_tip_amount Float64,
    average_fare_amount Float64,
    average_tip_amount Float64
)
ENGINE = ReplacingMergeTree
ORDER BY (window_start, window_end, pickup_neighborhood)
"""

TRANSIENT_ERRORS = (NetworkError, SocketTimeoutError, OSError, EOFError)
STARTUP_ERRORS = (ClickHouseError,) + TRANSIENT_ERRORS


def clickhouse_connection(
    host: str,
    port: int,
    user: str,
    password: str,
    database: str,
    secure: bool = True,
    keep_alive_ms: int = 5000,
) -> dict:
    """
    Build connection kwargs for :class:`clickhouse_driver.Client`.

    Parameters
    ----------
    host, port
        ClickHouse native protocol endpoint (``9440`` is the TLS port).
    user, password
        Credentials, usually resolved from the secrets provider.
    database
        Default database of the connection.
    secure
        Use TLS.
    keep_alive_ms
        Idle time before TCP keep-alive packets start; ``0`` disables them.

    Returns
    -------
    dict
        Keyword arguments for ``Client(**kwargs)``.
    """
    con = {
        "host": host,
        "port": port,
        "user": user,
        "password": password,
        "database": database,
        "secure": secure,
    }
    if keep_alive_ms > 0:
        idle = max(1, keep_alive_ms // 1000)
        con["tcp_keepalive"] = (idle, idle, 3)
    return con


class ClickHouseSinkWriter:
    """
    Upsert :class:`~nyc_taxi_stream.models.WindowAggregate` rows into ClickHouse.

    Parameters
    ----------
    clickhouse_con
        Connection kwargs passed to the client factory, see
        :func:`clickhouse_connection`.
    table
        Fully qualified table name (e.g. ``"nyc.neighborhood_fare_stats"``).
    batch_size
        Maximum number of rows per ``INSERT`` statement.
    write_concurrency
        Number of batches written in parallel. Each worker thread owns its
        own client; clients are never shared between threads.
    max_retries
        Retries per batch after a transient failure before giving up.
    retry_backoff
        Base delay in seconds; doubles after every failed attempt.
    client_factory
        Callable building a client from ``clickhouse_con``.

    Notes
    -----
    A failed batch is re-sent with exactly the same rows, which is safe because
    the table deduplicates on the natural key.
    """

    def __init__(
        self,
        clickhouse_con: dict,
        table: str,
        batch_size: int = 300,
        write_concurrency: int = 5,
        max_retries: int = 5,
        retry_backoff: float = 0.5,
        client_factory: Callable[..., Client] = Client,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.clickhouse_con = clickhouse_con
        self.table = table
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.client_factory = client_factory
        self._local = threading.local()
        self._clients: List[Client] = []
        self._clients_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, write_concurrency),
            thread_name_prefix="sink-writer",
        )

    def _client(self) -> Client:
        client = getattr(self._local, "client", None)
        if client is None:
            client = self.client_factory(**self.clickhouse_con)
            self._local.client = client
            with self._clients_lock:
                self._clients.append(client)
        return client

    def _startup_query(self, query: str, action: str) -> None:
        try:
            self._client().execute(query)
        except STARTUP_ERRORS as e:
            self._local.client = None
            raise StartupConfigurationError(
                f"ClickHouse at {self.clickhouse_con.get('host')}:{self.clickhouse_con.get('port')} "
                f"failed to {action}: {e}"
            ) from e

    def check_connection(self) -> None:
        """Fail fast at startup if the sink is unreachable or rejects the credentials."""
        self._startup_query("SELECT 1", "answer a connection check")

    def ensure_table(self) -> None:
        """Create the target table if it does not exist yet."""
        self._startup_query(CREATE_TABLE_SQL.format(table=self.table), f"create table {self.table}")
        logger.info("Ensured sink table %s", self.table)

    def write_batch(self, batch: Sequence[WindowAggregate]) -> int:
        """
        Insert one batch in a single statement.

        Raises
        ------
        RetryableSinkError
            On connectivity or timeout errors.
        """
        records = [m.model_dump(include=set(COLUMNS)) for m in batch]
        try:
            self._client().execute(
                f"INSERT INTO {self.table} ({', '.join(COLUMNS)}) VALUES",
                records,
            )
        except TRANSIENT_ERRORS as e:
            # drop the broken connection; the next attempt reconnects
            self._local.client = None
            raise RetryableSinkError(str(e)) from e
        return len(records)

    def _write_with_retry(self, batch: Sequence[WindowAggregate]) -> int:
        delay = self.retry_backoff
        for attempt in range(self.max_retries + 1):
            try:
                return self.write_batch(batch)
            except RetryableSinkError as e:
                if attempt == self.max_retries:
                    raise SinkWriteFailure(
                        f"Giving up on {len(batch)} row(s) for {self.table} "
                        f"after {attempt + 1} attempt(s): {e}"
                    ) from e
                logger.warning(
                    "Sink write failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1, self.max_retries + 1, delay, e,
                )
                time.sleep(delay)
                delay *= 2
        return 0

    def write(self, aggregates: Sequence[WindowAggregate]) -> int:
        """
        Write aggregates in sub-batches of ``batch_size`` rows.

        Returns
        -------
        int
            Total number of rows acknowledged.

        Raises
        ------
        SinkWriteFailure
            If any batch exhausted its retries.
        """
        if not aggregates:
            return 0
        batches = [
            aggregates[i:i + self.batch_size]
            for i in range(0, len(aggregates), self.batch_size)
        ]
        futures = [self._executor.submit(self._write_with_retry, b) for b in batches]
        written = sum(f.result() for f in futures)
        logger.info("Upserted %d aggregate row(s) into %s", written, self.table)
        return written

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        with self._clients_lock:
            for client in self._clients:
                client.disconnect()
            self._clients.clear()

"""Decoders for raw ride and fare messages.

This module provides:

- :class:`RideDecoder` – parses a JSON ride message into a
  :class:`~.models.RideRecord` and attaches pickup/dropoff neighborhoods.
- :class:`FareDecoder` – parses a CSV fare message (header row plus one data
  row) into a :class:`~.models.FareRecord`.

Both return either the record or a :class:`~.models.DecodeFailure`; a failure
increments the stream's malformed counter and never reaches the join.
Decoders hold no mutable state and can be used from several threads.
"""
from datetime import datetime
import io
import logging
from typing import Optional, Union

import polars as pl
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .errors import DecodeError
from .geo import GeoResolver
from .metrics import FARE, RIDE, MetricsRecorder
from .models import DecodeFailure, FareRecord, RideRecord

logger = logging.getLogger(__name__)

DECODE_ERROR = "decode error"
TIMESTAMP_PARSE_ERROR = "timestamp parse error"

FARE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_PAYLOAD_CHARS = 10_000


class RecordDecoder:
    """Common decode/reject flow; subclasses implement :meth:`_decode`."""

    stream: str = ""

    def __init__(self, metrics: MetricsRecorder):
        self.metrics = metrics

    def _decode(self, raw: bytes) -> BaseModel:
        raise NotImplementedError

    def decode(self, raw: bytes) -> Union[BaseModel, DecodeFailure]:
        try:
            return self._decode(raw)
        except DecodeError as e:
            self.metrics.record_malformed(self.stream)
            payload = raw.decode("utf-8", errors="replace")[:MAX_PAYLOAD_CHARS]
            logger.debug("Malformed %s message (%s): %r", self.stream, e, payload[:200])
            return DecodeFailure(stream=self.stream, reason=e.reason, payload=payload)


class RideDecoder(RecordDecoder):
    """Decode JSON ride messages and resolve their neighborhoods.

    Parameters
    ----------
    geo_resolver
        Shared, read-only neighborhood index.
    metrics
        Recorder receiving the ``malformed_rides`` increments.
    """

    stream = RIDE

    def __init__(self, geo_resolver: GeoResolver, metrics: MetricsRecorder):
        super().__init__(metrics)
        self.geo_resolver = geo_resolver

    def _decode(self, raw: bytes) -> RideRecord:
        try:
            ride = RideRecord.model_validate_json(raw)
        except ValidationError as e:
            raise DecodeError(DECODE_ERROR, f"{e.error_count()} validation error(s)") from e
        return ride.model_copy(update={
            "pickup_neighborhood": self.geo_resolver.resolve(ride.pickup_lon, ride.pickup_lat),
            "dropoff_neighborhood": self.geo_resolver.resolve(ride.dropoff_lon, ride.dropoff_lat),
        })


class _FareRow(BaseModel):
    """A fare CSV row before the pickup timestamp is parsed."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)

    medallion: str
    hack_license: str
    vendor_id: str
    pickup_time_string: str
    payment_type: Optional[str] = None
    fare_amount: float
    surcharge: float
    mta_tax: float
    tip_amount: float
    tolls_amount: float
    total_amount: float


def read_csv_row(raw: bytes) -> dict:
    """Parse a CSV document holding a header and exactly one data row.

    All columns are read as strings; type coercion is left to the model.

    Raises
    ------
    DecodeError
        If the document is not valid CSV or does not hold exactly one row.
    """
    try:
        df = pl.read_csv(io.BytesIO(raw), has_header=True, infer_schema_length=0)
    except pl.exceptions.PolarsError as e:
        raise DecodeError(DECODE_ERROR, str(e)) from e
    if df.height != 1:
        raise DecodeError(DECODE_ERROR, f"expected 1 data row, got {df.height}")
    return df.row(0, named=True)


class FareDecoder(RecordDecoder):
    """Decode CSV fare messages.

    Field decoding is checked before the timestamp: a row with a bad amount
    and a bad timestamp is a ``decode error``.
    """

    stream = FARE

    def _decode(self, raw: bytes) -> FareRecord:
        try:
            row = _FareRow.model_validate(read_csv_row(raw))
        except ValidationError as e:
            raise DecodeError(DECODE_ERROR, f"{e.error_count()} validation error(s)") from e

        try:
            pickup_time = datetime.strptime(row.pickup_time_string, FARE_TIME_FORMAT)
        except ValueError as e:
            raise DecodeError(TIMESTAMP_PARSE_ERROR, str(e)) from e

        return FareRecord(
            **row.model_dump(exclude={"pickup_time_string"}),
            pickup_time=pickup_time,
        )

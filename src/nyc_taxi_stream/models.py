"""Data models for the NYC taxi ride/fare stream pipeline.

This module defines Pydantic v2 models for every record that flows through
the pipeline, from decoded input messages to the aggregate rows written to
ClickHouse.

Models
------
RideRecord
    One decoded ride message, enriched with pickup/dropoff neighborhoods.
FareRecord
    One decoded fare message.
JoinedTrip
    A ride and a fare sharing the same trip key.
WindowKey
    Tumbling window bounds plus pickup neighborhood.
WindowAggregate
    Finalized per-window, per-neighborhood statistics (one sink row).
DecodeFailure
    A message that could not be decoded, with the reason.
"""
from datetime import datetime, timezone
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

TripKey = Tuple[str, str, str, datetime]


def to_naive_utc(v: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are kept as-is."""
    if v.tzinfo is not None:
        v = v.astimezone(timezone.utc).replace(tzinfo=None)
    return v


class _Record(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        allow_inf_nan=False,
    )


class RideRecord(_Record):
    """Validated taxi ride record.

    Parameters
    ----------
    medallion
        Taxi medallion identifier.
    hack_license
        Driver's hack license identifier.
    vendor_id
        Vendor (TPEP provider) code.
    pickup_time
        Trip pickup timestamp, naive UTC. Event time of the ride stream.
    dropoff_time
        Trip dropoff timestamp, naive UTC.
    pickup_lon, pickup_lat
        Pickup coordinates (WGS84).
    dropoff_lon, dropoff_lat
        Dropoff coordinates (WGS84).
    pickup_neighborhood, dropoff_neighborhood
        Region labels attached by the decoder after geo resolution.
    """
    medallion: str
    hack_license: str
    vendor_id: str
    pickup_time: datetime
    dropoff_time: datetime
    pickup_lon: float
    pickup_lat: float
    dropoff_lon: float
    dropoff_lat: float
    passenger_count: Optional[int] = None
    trip_time_in_seconds: Optional[int] = None
    trip_distance_in_miles: Optional[float] = None
    rate_code: Optional[int] = None
    store_and_forward_flag: Optional[str] = None
    pickup_neighborhood: Optional[str] = None
    dropoff_neighborhood: Optional[str] = None

    @field_validator("pickup_time", "dropoff_time")
    @classmethod
    def _to_utc(cls, v):
        return to_naive_utc(v)

    @property
    def key(self) -> TripKey:
        return (self.medallion, self.hack_license, self.vendor_id, self.pickup_time)


class FareRecord(_Record):
    """Validated taxi fare record.

    ``pickup_time`` is parsed by the decoder from the ``pickupTimeString``
    column, so it is always present on a constructed record.
    """
    medallion: str
    hack_license: str
    vendor_id: str
    pickup_time: datetime
    payment_type: Optional[str] = None
    fare_amount: float
    surcharge: float
    mta_tax: float
    tip_amount: float
    tolls_amount: float
    total_amount: float

    @field_validator("pickup_time")
    @classmethod
    def _to_utc(cls, v):
        return to_naive_utc(v)

    @property
    def key(self) -> TripKey:
        return (self.medallion, self.hack_license, self.vendor_id, self.pickup_time)


class JoinedTrip(BaseModel):
    """A ride joined with the fare that shares its key."""
    model_config = ConfigDict(frozen=True)

    ride: RideRecord
    fare: FareRecord

    @property
    def key(self) -> TripKey:
        return self.ride.key

    @property
    def pickup_time(self) -> datetime:
        return self.ride.pickup_time

    @property
    def pickup_neighborhood(self) -> str:
        return self.ride.pickup_neighborhood

    @property
    def fare_amount(self) -> float:
        return self.fare.fare_amount

    @property
    def tip_amount(self) -> float:
        return self.fare.tip_amount


class WindowKey(BaseModel):
    """Natural key of a window aggregate (also the sink's upsert key)."""
    model_config = ConfigDict(frozen=True)

    window_start: datetime
    window_end: datetime
    pickup_neighborhood: str


class WindowAggregate(BaseModel):
    """Finalized statistics of one tumbling window for one pickup neighborhood.

    Parameters
    ----------
    window_start
        Inclusive window start, aligned to the window interval since the epoch.
    window_end
        Exclusive window end (``window_start + interval``).
    pickup_neighborhood
        Pickup region label, ``"Unresolved"`` when no polygon matched.
    ride_count
        Number of joined trips in the window.
    total_fare_amount, total_tip_amount
        Sums over the joined trips.
    average_fare_amount, average_tip_amount
        Totals divided by ``ride_count``.
    """
    model_config = ConfigDict(frozen=True)

    window_start: datetime
    window_end: datetime
    pickup_neighborhood: str
    ride_count: int
    total_fare_amount: float
    total_tip_amount: float
    average_fare_amount: float
    average_tip_amount: float

    @property
    def key(self) -> WindowKey:
        return WindowKey(
            window_start=self.window_start,
            window_end=self.window_end,
            pickup_neighborhood=self.pickup_neighborhood,
        )


class DecodeFailure(BaseModel):
    """A raw message rejected by a decoder.

    ``payload`` is the raw text, truncated so that log lines stay bounded.
    """
    model_config = ConfigDict(frozen=True)

    stream: str
    reason: str
    payload: str = ""

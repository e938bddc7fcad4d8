"""Shared fixtures: neighborhood GeoJSON, message builders and in-memory fakes."""
from datetime import datetime
import json
import threading

import pytest
from clickhouse_driver.errors import NetworkError

from nyc_taxi_stream.geo import GeoResolver
from nyc_taxi_stream.metrics import MetricsRecorder
from nyc_taxi_stream.models import FareRecord, RideRecord
from nyc_taxi_stream.source import SourceMessage

# lon/lat inside each neighborhood
MIDTOWN = (-73.985, 40.755)
UPPER_EAST_SIDE = (-73.955, 40.775)
OUTSIDE = (-73.5, 41.5)


def _rect(lon0, lat0, lon1, lat1):
    return {
        "type": "Polygon",
        "coordinates": [[[lon0, lat0], [lon1, lat0], [lon1, lat1], [lon0, lat1], [lon0, lat0]]],
    }


NEIGHBORHOODS = {
    "type": "FeatureCollection",
    "features": [
        {"type": "Feature", "properties": {"name": "Midtown"},
         "geometry": _rect(-74.00, 40.74, -73.97, 40.765)},
        {"type": "Feature", "properties": {"name": "Upper East Side"},
         "geometry": _rect(-73.97, 40.765, -73.94, 40.79)},
        # overlaps Midtown; listed later so Midtown wins
        {"type": "Feature", "properties": {"name": "Theater District"},
         "geometry": _rect(-73.99, 40.75, -73.98, 40.76)},
    ],
}


@pytest.fixture
def metrics():
    return MetricsRecorder()


@pytest.fixture
def geojson_path(tmp_path):
    path = tmp_path / "neighborhoods.geojson"
    path.write_text(json.dumps(NEIGHBORHOODS))
    return path


@pytest.fixture
def geo_resolver():
    return GeoResolver.from_geojson(NEIGHBORHOODS)


@pytest.fixture
def make_ride():
    """Build a raw JSON ride message; keyword overrides use wire (camelCase) names."""
    def _make(pickup="2013-01-01 00:01:00", medallion="M1", at=MIDTOWN, **overrides) -> bytes:
        pickup_iso = pickup.replace(" ", "T")
        body = {
            "medallion": medallion,
            "hackLicense": "H1",
            "vendorId": "VTS",
            "pickupTime": pickup_iso,
            "dropoffTime": pickup_iso,
            "pickupLon": at[0],
            "pickupLat": at[1],
            "dropoffLon": UPPER_EAST_SIDE[0],
            "dropoffLat": UPPER_EAST_SIDE[1],
            "passengerCount": 1,
            "tripTimeInSeconds": 540,
            "tripDistanceInMiles": 2.1,
            "rateCode": 1,
            "storeAndForwardFlag": "N",
        }
        body.update(overrides)
        body = {k: v for k, v in body.items() if v is not None}
        return json.dumps(body).encode("utf-8")
    return _make


FARE_HEADER = (
    "medallion,hackLicense,vendorId,pickupTimeString,paymentType,"
    "fareAmount,surcharge,mtaTax,tipAmount,tollsAmount,totalAmount"
)


@pytest.fixture
def make_fare():
    """Build a raw CSV fare message (header plus one row)."""
    def _make(pickup="2013-01-01 00:01:00", medallion="M1", fare="10.0", tip="2.0",
              payment="CRD", header=FARE_HEADER) -> bytes:
        row = f"{medallion},H1,VTS,{pickup},{payment},{fare},0.5,0.5,{tip},0.0,13.0"
        return f"{header}\n{row}\n".encode("utf-8")
    return _make


@pytest.fixture
def ride_record():
    def _make(pickup: datetime, medallion="M1", neighborhood="Midtown") -> RideRecord:
        return RideRecord(
            medallion=medallion, hack_license="H1", vendor_id="VTS",
            pickup_time=pickup, dropoff_time=pickup,
            pickup_lon=MIDTOWN[0], pickup_lat=MIDTOWN[1],
            dropoff_lon=MIDTOWN[0], dropoff_lat=MIDTOWN[1],
            pickup_neighborhood=neighborhood, dropoff_neighborhood=neighborhood,
        )
    return _make


@pytest.fixture
def fare_record():
    def _make(pickup: datetime, medallion="M1", fare=10.0, tip=2.0) -> FareRecord:
        return FareRecord(
            medallion=medallion, hack_license="H1", vendor_id="VTS",
            pickup_time=pickup, payment_type="CRD",
            fare_amount=fare, surcharge=0.5, mta_tax=0.5,
            tip_amount=tip, tolls_amount=0.0, total_amount=fare + tip + 1.0,
        )
    return _make


class FakeClickHouse:
    """Stand-in for a ClickHouse server with ReplacingMergeTree semantics.

    Rows are stored by natural key, so re-inserting a key replaces the row.
    ``failures`` INSERTs raise ``NetworkError`` before any succeeds; ``error``
    is raised by every query.
    """

    def __init__(self, failures: int = 0, unreachable: bool = False, error: Exception = None):
        self.rows = {}
        self.failures = failures
        self.unreachable = unreachable
        self.error = error
        self.inserts = []
        self.queries = []
        self.connections = []
        self._lock = threading.Lock()

    def client_factory(self, **con):
        client = FakeClickHouseClient(self, con)
        self.connections.append(con)
        return client


class FakeClickHouseClient:
    def __init__(self, server: FakeClickHouse, con: dict):
        self.server = server
        self.con = con
        self.disconnected = False

    def execute(self, query, params=None):
        server = self.server
        with server._lock:
            if server.unreachable:
                raise NetworkError("Connection refused")
            if server.error is not None:
                raise server.error
            server.queries.append(query)
            if not query.startswith("INSERT"):
                return [(1,)]
            if server.failures > 0:
                server.failures -= 1
                raise NetworkError("Connection reset by peer")
            server.inserts.append(list(params))
            for row in params:
                key = (row["window_start"], row["window_end"], row["pickup_neighborhood"])
                server.rows[key] = dict(row)
            return None

    def disconnect(self):
        self.disconnected = True


@pytest.fixture
def clickhouse():
    return FakeClickHouse()


class MemorySource:
    """A finite stream source over a list of raw messages."""

    def __init__(self, messages, event_time=datetime(2013, 1, 1)):
        self.messages = list(messages)
        self.event_time = event_time
        self.closed = False
        self.positions = []
        self.commits = []

    def read_from(self, position="earliest"):
        self.positions.append(position)
        for offset, raw in enumerate(self.messages):
            if self.closed:
                return
            yield SourceMessage(raw, self.event_time, offset)

    def commit(self, offsets):
        self.commits.append(dict(offsets))

    def close(self):
        self.closed = True


class FailingSource(MemorySource):
    def read_from(self, position="earliest"):
        yield from super().read_from(position)
        raise ConnectionError("broker went away")


@pytest.fixture
def memory_source():
    return MemorySource


@pytest.fixture
def failing_source():
    return FailingSource

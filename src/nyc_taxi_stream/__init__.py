"""
Streaming join of NYC taxi ride and fare events into per-neighborhood,
per-window fare statistics stored in ClickHouse.

Modules:
    - models: Pydantic records (RideRecord, FareRecord, JoinedTrip, WindowAggregate)
    - geo: neighborhood lookup from GeoJSON polygons
    - parse: ride (JSON) and fare (CSV) decoders
    - join: watermark-bounded ride/fare join
    - window: tumbling window aggregation
    - load: idempotent ClickHouse upserts
    - metrics: drop counters and window emission latency
    - source: Kafka-protocol stream sources
    - config: options and secrets
    - pipeline: runtime wiring and shutdown

Usage:
    python -m nyc_taxi_stream --help
"""

__version__ = "1.0.0"

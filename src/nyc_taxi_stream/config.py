"""Configuration surface and secret lookup.

Options are read from the command line, falling back to environment variables
named ``TAXI_STREAM_<OPTION>`` (e.g. ``TAXI_STREAM_SINK_HOST``). The result is
validated into an immutable :class:`PipelineConfig`; any problem is raised as
:class:`~.errors.StartupConfigurationError` so that the process does not start.

Secrets (stream connection strings, sink credentials) are never passed as
options directly: the configuration only names them, and a
:class:`SecretsProvider` resolves them by ``(scope, name)``.
"""
import argparse
from datetime import timedelta
import os
import re
from typing import Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .errors import StartupConfigurationError
from .source import STARTING_POSITIONS

ENV_PREFIX = "TAXI_STREAM_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_UNITS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
}
_INTERVAL_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:([a-z]+?)s?)?\s*$", re.IGNORECASE)
_TIMEDELTA = TypeAdapter(timedelta)


def parse_interval(value) -> timedelta:
    """Parse ``"3 minutes"``, ``"1 hour"``, ``"90"`` (seconds) or ISO-8601 ``"PT5M"``."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, str):
        m = _INTERVAL_RE.match(value)
        if m:
            unit = (m.group(2) or "second").lower()
            if unit in _UNITS:
                return timedelta(seconds=float(m.group(1)) * _UNITS[unit])
    try:
        return _TIMEDELTA.validate_python(value)
    except ValidationError as e:
        raise ValueError(f"invalid interval {value!r}") from e


class PipelineConfig(BaseModel):
    """Validated, immutable pipeline options. See ``--help`` for meanings."""
    model_config = ConfigDict(frozen=True)

    secret_scope: str
    taxi_ride_secret_name: str
    taxi_fare_secret_name: str
    taxi_ride_consumer_group: str = "$Default"
    taxi_fare_consumer_group: str = "$Default"
    taxi_ride_starting_position: str = "earliest"
    taxi_fare_starting_position: str = "earliest"

    sink_host: str
    sink_port: int = Field(9440, gt=0, lt=65536)
    sink_secure: bool = True
    sink_user_secret_name: str
    sink_password_secret_name: str
    sink_database: str = "nyc"
    sink_table: str = "neighborhood_fare_stats"
    sink_batch_size: int = Field(300, ge=1)
    sink_write_concurrency: int = Field(5, ge=1)
    sink_keep_alive_ms: int = Field(5000, ge=0)
    sink_max_retries: int = Field(5, ge=0)
    create_table: bool = False

    neighborhood_file_url: str
    neighborhood_property: str = "name"

    taxi_ride_watermark_interval: timedelta
    taxi_fare_watermark_interval: timedelta
    window_interval: timedelta

    metrics_log_interval: float = Field(60.0, gt=0)
    log_level: str = "INFO"

    @field_validator(
        "taxi_ride_watermark_interval",
        "taxi_fare_watermark_interval",
        "window_interval",
        mode="before",
    )
    @classmethod
    def _parse_interval(cls, v):
        return parse_interval(v)

    @field_validator("taxi_ride_watermark_interval", "taxi_fare_watermark_interval")
    @classmethod
    def _non_negative(cls, v):
        if v < timedelta(0):
            raise ValueError("watermark interval must not be negative")
        return v

    @field_validator("window_interval")
    @classmethod
    def _positive(cls, v):
        if v <= timedelta(0):
            raise ValueError("window interval must be positive")
        return v

    @field_validator("taxi_ride_starting_position", "taxi_fare_starting_position")
    @classmethod
    def _position(cls, v):
        if v not in STARTING_POSITIONS:
            raise ValueError(f"must be one of {STARTING_POSITIONS}")
        return v

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, v):
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"must be one of {LOG_LEVELS}")
        return level

    @property
    def sink_full_table(self) -> str:
        return f"{self.sink_database}.{self.sink_table}"


def _env(name: str, default=None):
    return os.getenv(ENV_PREFIX + name.upper(), default)


def _env_flag(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nyc-taxi-stream",
        description="Join taxi ride and fare streams and upsert per-neighborhood window statistics.",
    )
    opt = parser.add_argument

    opt("--secret-scope", default=_env("secret_scope"))
    opt("--taxi-ride-secret-name", default=_env("taxi_ride_secret_name"),
        help="secret holding the ride stream connection string")
    opt("--taxi-fare-secret-name", default=_env("taxi_fare_secret_name"),
        help="secret holding the fare stream connection string")
    opt("--taxi-ride-consumer-group", default=_env("taxi_ride_consumer_group", "$Default"))
    opt("--taxi-fare-consumer-group", default=_env("taxi_fare_consumer_group", "$Default"))
    opt("--taxi-ride-starting-position", choices=STARTING_POSITIONS,
        default=_env("taxi_ride_starting_position", "earliest"),
        help="where the ride stream starts when its consumer group has no committed offset")
    opt("--taxi-fare-starting-position", choices=STARTING_POSITIONS,
        default=_env("taxi_fare_starting_position", "earliest"),
        help="where the fare stream starts when its consumer group has no committed offset")

    opt("--sink-host", default=_env("sink_host"))
    opt("--sink-port", type=int, default=_env("sink_port", 9440))
    opt("--sink-secure", action=argparse.BooleanOptionalAction,
        default=_env_flag("sink_secure", True))
    opt("--sink-user-secret-name", default=_env("sink_user_secret_name"))
    opt("--sink-password-secret-name", default=_env("sink_password_secret_name"))
    opt("--sink-database", default=_env("sink_database", "nyc"))
    opt("--sink-table", default=_env("sink_table", "neighborhood_fare_stats"))
    opt("--sink-batch-size", type=int, default=_env("sink_batch_size", 300))
    opt("--sink-write-concurrency", type=int, default=_env("sink_write_concurrency", 5))
    opt("--sink-keep-alive-ms", type=int, default=_env("sink_keep_alive_ms", 5000))
    opt("--sink-max-retries", type=int, default=_env("sink_max_retries", 5))
    opt("--create-table", action="store_true", default=_env_flag("create_table", False),
        help="create the sink table if it does not exist")

    opt("--neighborhood-file-url", default=_env("neighborhood_file_url"),
        help="GeoJSON neighborhood polygons (path or http(s) URL)")
    opt("--neighborhood-property", default=_env("neighborhood_property", "name"))

    opt("--taxi-ride-watermark-interval", default=_env("taxi_ride_watermark_interval"),
        help='allowed lateness of rides, e.g. "3 minutes"')
    opt("--taxi-fare-watermark-interval", default=_env("taxi_fare_watermark_interval"),
        help='allowed lateness of fares, e.g. "3 minutes"')
    opt("--window-interval", default=_env("window_interval"),
        help='aggregation window size, e.g. "1 hour"')

    opt("--metrics-log-interval", type=float, default=_env("metrics_log_interval", 60.0))
    opt("--log-level", default=_env("log_level", "INFO"))
    return parser


def load_config(argv: Optional[Sequence[str]] = None) -> PipelineConfig:
    """Parse ``argv`` (and the environment) into a :class:`PipelineConfig`.

    Raises
    ------
    StartupConfigurationError
        If a required option is missing or a value is invalid.
    """
    args = build_arg_parser().parse_args(argv)
    values = {k: v for k, v in vars(args).items() if v is not None}
    try:
        return PipelineConfig.model_validate(values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise StartupConfigurationError(f"Invalid configuration: {problems}") from e


class SecretsProvider(Protocol):
    def get_secret(self, scope: str, name: str) -> str:
        ...


class EnvSecretsProvider:
    """Resolve secrets from environment variables named ``<SCOPE>_<NAME>``.

    Non-alphanumeric characters are replaced by ``_`` and the result is
    upper-cased, so ``("taxi-scope", "ride-conn")`` reads ``TAXI_SCOPE_RIDE_CONN``.
    """

    def __init__(self, environ: Optional[dict] = None):
        self.environ = os.environ if environ is None else environ

    @staticmethod
    def variable_name(scope: str, name: str) -> str:
        return re.sub(r"[^0-9A-Za-z]", "_", f"{scope}_{name}").upper()

    def get_secret(self, scope: str, name: str) -> str:
        var = self.variable_name(scope, name)
        value = self.environ.get(var)
        if not value:
            raise StartupConfigurationError(f"Secret {scope}/{name} not found (expected ${var})")
        return value

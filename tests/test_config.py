"""Tests for option parsing, validation and secret lookup."""
from datetime import timedelta
import os

import pytest

from nyc_taxi_stream.config import EnvSecretsProvider, load_config, parse_interval
from nyc_taxi_stream.errors import StartupConfigurationError

REQUIRED = [
    "--secret-scope", "taxi",
    "--taxi-ride-secret-name", "ride-conn",
    "--taxi-fare-secret-name", "fare-conn",
    "--sink-host", "ch.example.org",
    "--sink-user-secret-name", "ch-user",
    "--sink-password-secret-name", "ch-password",
    "--neighborhood-file-url", "https://example.org/nyc.geojson",
    "--taxi-ride-watermark-interval", "3 minutes",
    "--taxi-fare-watermark-interval", "3 minutes",
    "--window-interval", "1 hour",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("TAXI_STREAM_"):
            monkeypatch.delenv(name)


class TestParseInterval:
    @pytest.mark.happy_path
    @pytest.mark.parametrize("text,expected", [
        ("3 minutes", timedelta(minutes=3)),
        ("1 minute", timedelta(minutes=1)),
        ("1 hour", timedelta(hours=1)),
        ("2 days", timedelta(days=2)),
        ("45 seconds", timedelta(seconds=45)),
        ("90", timedelta(seconds=90)),
        ("PT5M", timedelta(minutes=5)),
    ])
    def test_formats(self, text, expected):
        assert parse_interval(text) == expected

    @pytest.mark.edge_case
    def test_unknown_unit(self):
        with pytest.raises(ValueError):
            parse_interval("3 fortnights")


class TestLoadConfig:
    @pytest.mark.happy_path
    def test_defaults(self):
        config = load_config(REQUIRED)
        assert config.window_interval == timedelta(hours=1)
        assert config.taxi_ride_watermark_interval == timedelta(minutes=3)
        assert config.sink_port == 9440
        assert config.sink_secure is True
        assert config.sink_batch_size == 300
        assert config.sink_write_concurrency == 5
        assert config.sink_keep_alive_ms == 5000
        assert config.taxi_ride_consumer_group == "$Default"
        assert config.taxi_ride_starting_position == "earliest"
        assert config.taxi_fare_starting_position == "earliest"
        assert config.log_level == "INFO"
        assert config.sink_full_table == "nyc.neighborhood_fare_stats"

    @pytest.mark.happy_path
    def test_environment_fallback(self, monkeypatch):
        monkeypatch.setenv("TAXI_STREAM_SINK_PORT", "9000")
        monkeypatch.setenv("TAXI_STREAM_SINK_SECURE", "false")
        monkeypatch.setenv("TAXI_STREAM_WINDOW_INTERVAL", "5 minutes")
        argv = [a for a in REQUIRED]
        i = argv.index("--window-interval")
        del argv[i:i + 2]
        config = load_config(argv)
        assert config.sink_port == 9000
        assert config.sink_secure is False
        assert config.window_interval == timedelta(minutes=5)

    @pytest.mark.happy_path
    def test_command_line_overrides(self):
        config = load_config(REQUIRED + ["--no-sink-secure", "--taxi-fare-consumer-group", "fares"])
        assert config.sink_secure is False
        assert config.taxi_fare_consumer_group == "fares"

    @pytest.mark.happy_path
    def test_starting_position_per_stream(self, monkeypatch):
        monkeypatch.setenv("TAXI_STREAM_TAXI_FARE_STARTING_POSITION", "latest")
        config = load_config(REQUIRED)
        assert config.taxi_ride_starting_position == "earliest"
        assert config.taxi_fare_starting_position == "latest"

        config = load_config(REQUIRED + ["--taxi-ride-starting-position", "latest", "--taxi-fare-starting-position", "earliest"])
        assert config.taxi_ride_starting_position == "latest"
        assert config.taxi_fare_starting_position == "earliest"

    @pytest.mark.happy_path
    def test_log_level_is_normalized(self):
        assert load_config(REQUIRED + ["--log-level", "debug"]).log_level == "DEBUG"

    @pytest.mark.edge_case
    def test_unknown_log_level_rejected(self):
        with pytest.raises(StartupConfigurationError, match="log_level"):
            load_config(REQUIRED + ["--log-level", "chatty"])

    @pytest.mark.edge_case
    def test_unknown_starting_position_rejected(self, monkeypatch):
        monkeypatch.setenv("TAXI_STREAM_TAXI_RIDE_STARTING_POSITION", "middle")
        with pytest.raises(StartupConfigurationError):
            load_config(REQUIRED)

    @pytest.mark.edge_case
    def test_missing_required_option(self):
        argv = REQUIRED[:-2]
        with pytest.raises(StartupConfigurationError, match="window_interval"):
            load_config(argv)

    @pytest.mark.edge_case
    def test_zero_window_rejected(self):
        with pytest.raises(StartupConfigurationError):
            load_config(REQUIRED + ["--window-interval", "0"])

    @pytest.mark.edge_case
    def test_bad_interval_rejected(self):
        with pytest.raises(StartupConfigurationError):
            load_config(REQUIRED + ["--taxi-ride-watermark-interval", "soon"])

    @pytest.mark.edge_case
    def test_config_is_immutable(self):
        config = load_config(REQUIRED)
        with pytest.raises(Exception):
            config.sink_host = "other"


class TestEnvSecretsProvider:
    @pytest.mark.happy_path
    def test_lookup(self):
        secrets = EnvSecretsProvider({"TAXI_SCOPE_RIDE_CONN": "Endpoint=sb://x/"})
        assert secrets.get_secret("taxi-scope", "ride-conn") == "Endpoint=sb://x/"

    @pytest.mark.edge_case
    def test_missing_secret(self):
        with pytest.raises(StartupConfigurationError, match="TAXI_CH_USER"):
            EnvSecretsProvider({}).get_secret("taxi", "ch-user")

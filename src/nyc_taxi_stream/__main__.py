"""Process entry point: ``python -m nyc_taxi_stream`` / ``nyc-taxi-stream``.

Exit status is 0 after an explicit shutdown (SIGINT/SIGTERM) or when both
streams end, and 1 on a startup configuration error or a fatal pipeline
failure.
"""
import logging
import signal
import sys
import threading
from typing import Optional, Sequence

from .config import EnvSecretsProvider, load_config
from .errors import PipelineError, StartupConfigurationError
from .pipeline import Pipeline, build_sources

logger = logging.getLogger("nyc_taxi_stream")

LOG_FORMAT = "%(asctime)s [%(name)s] [%(levelname)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        config = load_config(argv)
    except StartupConfigurationError as e:
        configure_logging()
        logger.error("%s", e)
        return 1
    configure_logging(config.log_level)

    secrets = EnvSecretsProvider()
    try:
        pipeline = Pipeline.from_config(config, secrets)
        pipeline.sink.check_connection()
        if config.create_table:
            pipeline.sink.ensure_table()
        ride_source, fare_source = build_sources(config, secrets)
    except StartupConfigurationError as e:
        logger.error("Startup failed: %s", e)
        return 1

    stop_event = threading.Event()

    def _shutdown(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    logger.info(
        "Windows of %s, lateness ride=%s fare=%s, sink %s",
        config.window_interval,
        config.taxi_ride_watermark_interval,
        config.taxi_fare_watermark_interval,
        config.sink_full_table,
    )
    try:
        pipeline.run(
            ride_source,
            fare_source,
            stop_event,
            ride_position=config.taxi_ride_starting_position,
            fare_position=config.taxi_fare_starting_position,
        )
    except PipelineError as e:
        logger.error("Pipeline failed: %s", e)
        return 1
    except Exception:
        logger.exception("Pipeline failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

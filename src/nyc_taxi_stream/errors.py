"""Exception hierarchy of the pipeline.

Only errors that stop the pipeline (or that a caller retries) are raised.
Record-level problems such as malformed messages, unmatched join entries and
late trips are counted by :class:`~.metrics.MetricsRecorder` instead.
"""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class StartupConfigurationError(PipelineError):
    """A required option, secret or startup resource is missing or invalid."""


class DecodeError(PipelineError):
    """A raw message could not be turned into a record.

    Raised and caught inside the decoders; ``reason`` ends up in
    :class:`~.models.DecodeFailure`.
    """

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class RetryableSinkError(PipelineError):
    """A transient sink failure; the batch can be written again."""


class SinkWriteFailure(PipelineError):
    """Sink retries were exhausted. Fatal: there is no durable output."""

class PolarsMorError(Exception):
    """Base error for polars-mor."""


class InvalidRecordError(PolarsMorError):
    """Raised when a change record is malformed."""


class ConfigurationError(PolarsMorError):
    """Raised when the table configuration is invalid."""


class PipelineError(PolarsMorError):
    """Base error raised during pipeline execution."""


class ApplyError(PipelineError):
    """Raised when the sink fails to write a record to storage."""


class CheckpointError(PipelineError):
    """Raised when a checkpoint barrier cannot be committed."""


class CheckpointTimeoutError(CheckpointError):
    """Raised when a checkpoint window exceeds the configured timeout."""

"""
Configuration for the image fan-out pipeline.

Settings are read from environment variables once, validated against the
managed-service limits, and frozen into a `PipelineConfig`. Missing required
variables fail fast at load time.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from .exceptions import ConfigurationError

SERVICE_NAME = os.environ.get("POWERTOOLS_SERVICE_NAME", "image-fanout")
METRICS_NAMESPACE = os.environ.get("POWERTOOLS_METRICS_NAMESPACE", "ImageFanOutPipeline")

# Provider limits for an SQS event source and queue.
MAX_BATCH_SIZE = 10
MAX_BATCHING_WINDOW_SECONDS = 300
MAX_VISIBILITY_TIMEOUT_SECONDS = 12 * 60 * 60
MIN_RETENTION_SECONDS = 60
MAX_RETENTION_SECONDS = 14 * 24 * 60 * 60

DEFAULT_SUFFIXES: Tuple[str, ...] = (".jpg", ".jpeg", ".png")


def get_env_var(
    name: str, default: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> str:
    """
    Gets an environment variable or raises a ConfigurationError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.
        environ: Mapping to read from instead of `os.environ`.

    Returns:
        The value of the environment variable.

    Raises:
        ConfigurationError: If the required environment variable is not set.
    """
    source = os.environ if environ is None else environ
    value = source.get(name, default)
    if value is None:
        raise ConfigurationError(f"FATAL: Environment variable '{name}' is not set.")
    return value


def _int_var(name: str, default: str, environ: Optional[Mapping[str, str]]) -> int:
    raw = get_env_var(name, default, environ)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"Environment variable '{name}' must be an integer, got {raw!r}.") from None


@dataclass(frozen=True)
class PipelineConfig:
    """
    All tunables of the pipeline, with the values of the deployed stack as defaults.

    `input_bucket`, `output_bucket` and `version` are opaque strings passed
    through to the processing capability; nothing here interprets them.
    """

    input_bucket: str
    output_bucket: str
    version: str = "2"
    suffixes: Tuple[str, ...] = DEFAULT_SUFFIXES
    batch_size: int = 10
    batching_window: float = 5.0
    visibility_timeout: float = 300.0
    retention_period: float = 4 * 24 * 60 * 60
    invocation_timeout: float = 300.0
    max_receive_count: Optional[int] = 5
    thumbnail_size: Tuple[int, int] = (128, 128)
    topic_name: str = "image-processing-topic"
    queue_name: str = "image-processing-queue"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ConfigurationError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {self.batch_size}.")
        if not 0 <= self.batching_window <= MAX_BATCHING_WINDOW_SECONDS:
            raise ConfigurationError(
                f"batching_window must be between 0 and {MAX_BATCHING_WINDOW_SECONDS}s, got {self.batching_window}."
            )
        if not 0 <= self.visibility_timeout <= MAX_VISIBILITY_TIMEOUT_SECONDS:
            raise ConfigurationError(f"visibility_timeout out of range: {self.visibility_timeout}.")
        if not MIN_RETENTION_SECONDS <= self.retention_period <= MAX_RETENTION_SECONDS:
            raise ConfigurationError(f"retention_period out of range: {self.retention_period}.")
        if self.max_receive_count is not None and self.max_receive_count < 1:
            raise ConfigurationError("max_receive_count must be at least 1 when set.")
        if not self.suffixes or any(not s for s in self.suffixes):
            raise ConfigurationError("At least one non-empty suffix filter is required.")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        """
        Builds a config from environment variables.

        `INPUT_BUCKET` and `OUTPUT_BUCKET` are required; everything else falls
        back to the deployed defaults. `MAX_RECEIVE_COUNT=0` disables the
        dead-letter cutoff.
        """
        max_receive = _int_var("MAX_RECEIVE_COUNT", "5", environ)
        suffixes = tuple(
            s.strip() for s in get_env_var("SUFFIXES", ",".join(DEFAULT_SUFFIXES), environ).split(",") if s.strip()
        )
        size = _int_var("THUMBNAIL_SIZE", "128", environ)
        return cls(
            input_bucket=get_env_var("INPUT_BUCKET", environ=environ),
            output_bucket=get_env_var("OUTPUT_BUCKET", environ=environ),
            version=get_env_var("VERSION", "2", environ),
            suffixes=suffixes,
            batch_size=_int_var("BATCH_SIZE", "10", environ),
            batching_window=_int_var("MAX_BATCHING_WINDOW_SECONDS", "5", environ),
            visibility_timeout=_int_var("VISIBILITY_TIMEOUT_SECONDS", "300", environ),
            retention_period=_int_var("RETENTION_PERIOD_SECONDS", str(4 * 24 * 60 * 60), environ),
            invocation_timeout=_int_var("INVOCATION_TIMEOUT_SECONDS", "300", environ),
            max_receive_count=max_receive or None,
            thumbnail_size=(size, size),
            log_level=get_env_var("LOG_LEVEL", "INFO", environ).upper(),
        )

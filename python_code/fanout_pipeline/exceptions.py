"""Exception hierarchy for the image fan-out pipeline."""


class PipelineError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(PipelineError, ValueError):
    """A required setting is missing or outside the provider limits."""


class MalformedMessageError(PipelineError):
    """A queue message body could not be decoded into notifications."""


class ProcessingError(PipelineError):
    """The processing capability failed for one object."""


class DeliveryError(PipelineError):
    """A topic subscriber could not accept a delivery."""

"""Error types for cov-runner."""


class CovRunnerError(Exception):
    """Base class for errors that end a run with a diagnostic."""


class DiscoveryError(CovRunnerError):
    """Build directory is missing or cannot be listed."""


class InstrumentationError(CovRunnerError):
    """The instrumenter could not be started for an artifact."""


class UploadError(CovRunnerError):
    """The uploader is missing, untrusted, or failed its checksum."""

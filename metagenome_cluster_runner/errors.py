"""
Exceptions raised by the cluster runner.

Per-node failures are never raised across processes; they travel as
NodeResult data. These exceptions cover the fatal paths: bad configuration,
an undecodable wire record, a failed broadcast, or a launch that cannot start.
"""


class ClusterRunError(RuntimeError):
    """Base class for errors raised by the cluster runner."""


class ConfigError(ClusterRunError):
    """The configuration file is unreadable or invalid.

    ``field`` names the offending entry as ``section.key`` (or ``file`` when
    the file itself could not be read or parsed).
    """

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class MissingFieldError(ConfigError):
    def __init__(self, field: str):
        super().__init__(field, f"required field '{field}' is missing or empty")


class WireFormatError(ClusterRunError):
    """A record received over the MPI channel could not be decoded."""


class TransportError(ClusterRunError):
    """The one-shot configuration broadcast did not complete."""


class LaunchError(ClusterRunError):
    """The distributed job could not be started."""

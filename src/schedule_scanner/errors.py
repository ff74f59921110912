"""Exception types raised by the schedule scanner."""
from typing import Optional


class ScannerError(Exception):
    """Base class for all schedule scanner errors."""


class ConfigError(ScannerError, ValueError):
    """Missing or invalid configuration, raised before any scanning starts."""


class SourceControlError(ScannerError):
    """A call to the source-control API failed.

    Attributes:
        operation: Short name of the API operation (e.g. ``list_workflows``)
        status_code: HTTP status code if a response was received
    """

    def __init__(self, message: str, operation: Optional[str] = None,
                 status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class RepositoryListingError(SourceControlError):
    """Repository discovery failed; the scan cannot proceed."""


class WorkflowParseError(ScannerError):
    """A workflow file is not valid YAML."""


class RepositoryScanError(ScannerError):
    """Scanning a single repository failed."""

    def __init__(self, repository: str, operation: str, cause: BaseException) -> None:
        super().__init__(f"{repository}: {operation} failed: {cause}")
        self.repository = repository
        self.operation = operation
        self.cause = cause


class ScanCancelledError(ScannerError):
    """The scan was cancelled or ran past its deadline."""


class ConnectivityError(ScannerError):
    """The GitHub Enterprise Server could not be reached."""


class PublishError(ScannerError):
    """Publishing a scan result failed."""

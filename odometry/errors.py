"""Error kinds raised by the odometry pipeline."""
from __future__ import annotations


class OdometryError(Exception):
    """Base class for all odometry pipeline errors."""


class PreconditionViolation(OdometryError):
    """A caller broke a contract (e.g. reanchoring with no captured anchors)."""


class RegistrationFailure(OdometryError):
    """The registration engine did not converge or failed internally."""

    def __init__(self, message: str, scan_index: int | None = None):
        super().__init__(message)
        self.scan_index = scan_index


class StorageFailure(OdometryError):
    """A checkpoint or cloud could not be written to or read from storage."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path

"""Error taxonomy shared by the transport, adapters and the scan pipeline."""

from __future__ import annotations


class ScanError(Exception):
    """Base class for every error raised by ci-leak-scanner."""


class InvalidConfig(ScanError):
    """Configuration rejected before any I/O happens."""


class InvalidSize(InvalidConfig):
    """A human-readable size string could not be parsed."""


class Unauthenticated(ScanError):
    """The credential was rejected (HTTP 401)."""


class AccessDenied(ScanError):
    """The credential may not read the resource (HTTP 403)."""


class NotFound(ScanError):
    """The resource does not exist or was pruned (HTTP 404)."""


class StatusError(ScanError):
    """Terminal HTTP error that has no more specific kind."""

    def __init__(self, code: int, url: str = ""):
        self.code = code
        self.url = url
        super().__init__(f"HTTP {code} for {url}" if url else f"HTTP {code}")


class Throttled(ScanError):
    """Rate limited (or still failing with 5xx) after the retry budget ran out."""


class TransientError(ScanError):
    """A retryable failure: 408, 5xx or a dropped connection."""


class NetworkError(ScanError):
    """Transport-level failure (DNS, TCP reset, TLS, timeout)."""


class Cancelled(ScanError):
    """The process-wide cancellation token was set."""


class Oversized(ScanError):
    """An artifact declared a size above the configured cap."""


class OversizedAfterDownload(Oversized):
    """An artifact crossed the cap while being downloaded."""


class DetectorTimeout(ScanError):
    """The detector exceeded the per-item hit timeout."""


class CorruptArchive(ScanError):
    """An archive header or member could not be read."""


class SinkError(ScanError):
    """Writing a report record failed."""


class DetectorInitError(ScanError):
    """The detection rule registry could not be built."""


class QueueError(ScanError):
    """The disk queue could not be created, written or read."""

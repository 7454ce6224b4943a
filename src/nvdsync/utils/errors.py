"""
errors.py
Exception hierarchy shared by the nvdsync cache, download and recovery layers.
"""

from typing import Optional


class NvdSyncError(Exception):
    """Base class for every error raised by nvdsync."""


class ConfigurationError(NvdSyncError):
    """Invalid settings or an unusable cache environment.

    This is the only error class the update coordinator lets escape to its
    caller; everything else degrades to a logged fallback.
    """


class TransportError(NvdSyncError):
    """A request could not be completed (DNS, connect, read timeout, reset)."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class HttpStatusError(TransportError):
    """The server answered with a non-success status code."""

    def __init__(self, status_code: int, url: Optional[str] = None):
        super().__init__(f"HTTP {status_code} from {url}", url=url)
        self.status_code = status_code


class ProbeError(TransportError):
    """A remote freshness probe failed."""


class DownloadError(NvdSyncError):
    """A file or chunk download failed."""


class IntegrityError(NvdSyncError):
    """The local database failed verification."""


class EngineError(NvdSyncError):
    """The downstream scanning engine failed to analyze dependencies."""

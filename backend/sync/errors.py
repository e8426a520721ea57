"""
Exception types raised by the bank sync pipeline.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for bank sync errors."""


class ConnectionNotFoundError(SyncError):
    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Bank connection {connection_id} not found")


class ConnectionValidationError(SyncError):
    """The provider rejected the connection. Fatal to the run, never retried."""

    def __init__(self, connection_id: str, reason: Optional[str] = None):
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"Connection test failed: {reason or 'unknown error'}")


class UnsupportedProviderError(SyncError):
    def __init__(self, provider: str, detail: Optional[str] = None):
        self.provider = provider
        super().__init__(detail or f"Unsupported provider: {provider}")


class ProviderError(SyncError):
    """Transport or API failure reported by a provider adapter."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class SyncAlreadyRunningError(SyncError):
    def __init__(self, connection_id: str, sync_run_id: Optional[str] = None):
        self.connection_id = connection_id
        self.sync_run_id = sync_run_id
        super().__init__(f"A sync is already running for connection {connection_id}")


class ReviewError(SyncError):
    """A review action referenced a missing or unusable record."""

    def __init__(self, message: str, not_found: bool = False):
        self.not_found = not_found
        super().__init__(message)

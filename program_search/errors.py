"""
Exception types raised by the program search core.

The API layer maps these onto HTTP statuses; everything else lets them
propagate.
"""

from typing import Optional


class ProgramSearchError(Exception):
    """Base class for errors raised by this package."""

    code = "INTERNAL_ERROR"


class SchemaConfigError(ProgramSearchError):
    """Schema configuration files are missing or malformed."""

    code = "SCHEMA_CONFIG_ERROR"


class UpstreamError(ProgramSearchError):
    """The CRM returned a non-success status or could not be reached."""

    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CacheNotReadyError(ProgramSearchError):
    """The snapshot is still empty; callers should retry shortly."""

    code = "CACHE_LOADING"


class InvalidSearchRequest(ProgramSearchError, ValueError):
    """Malformed filter or search request."""

    code = "INVALID_REQUEST"


class MissingCredentialsError(ProgramSearchError):
    code = "MISSING_CREDENTIALS"

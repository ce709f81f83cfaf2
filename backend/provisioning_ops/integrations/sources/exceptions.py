"""
Source connector exceptions.
"""

from typing import Any, Dict, Optional


class SourceError(Exception):
    """Base exception for upstream source errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        source: Optional[str] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.source = source
        self.response = response or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, status_code={self.status_code})"


class SourceAuthenticationError(SourceError):
    """Raised when the source rejects our credentials (401/403)."""

    def __init__(
        self,
        message: str = "Authentication failed - API token may be invalid or expired",
        status_code: int = 401,
        **kwargs,
    ):
        super().__init__(message, status_code=status_code, **kwargs)


class SourceRateLimitError(SourceError):
    """Raised when the source rate limits us (429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded - please retry after a delay",
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, status_code=429, **kwargs)
        self.retry_after = retry_after


class SourceConnectionError(SourceError):
    """Raised on network errors and timeouts."""

    def __init__(
        self,
        message: str = "Connection error - unable to reach the source",
        **kwargs,
    ):
        super().__init__(message, **kwargs)

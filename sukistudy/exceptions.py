"""
Exceptions raised by the SukiStudy sync core.
"""

from typing import Optional


class SukiStudyError(Exception):
    """Base exception for sync core operations."""
    pass


class AuthenticationError(SukiStudyError):
    """Credential missing or rejected by the API (HTTP 401)."""
    pass


class RateLimitError(SukiStudyError):
    """API kept answering 429 after all retries were spent."""
    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class APIError(SukiStudyError):
    """Non-2xx response other than 401/429."""
    def __init__(self, status_code: int, message: str, response_data: Optional[dict] = None):
        super().__init__(f"API Error {status_code}: {message}")
        self.status_code = status_code
        self.response_data = response_data or {}


class NetworkError(SukiStudyError):
    """Network-related error (connection failure, timeout)."""
    pass


class SyncAbortedError(SukiStudyError):
    """Local data was wiped while a sync cycle was running."""
    pass

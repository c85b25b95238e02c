from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    INSTALL_FAILED = "INSTALL_FAILED"
    INVALID_STATE = "INVALID_STATE"
    INVALID_BUILD = "INVALID_BUILD"
    NETWORK_ERROR = "NETWORK_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    PREFETCH_FAILED = "PREFETCH_FAILED"


class CacheSyncError(Exception):
    """Raised for all expected failure conditions of the agent and its host.

    The proxy surface catches it and serialises it into the JSON error
    envelope. Business logic lets it propagate; the activator is the one
    place that catches everything, to reset the cache namespaces.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: str = "",
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "suggestion": self.suggestion,
                "recoverable": self.recoverable,
            }
        }

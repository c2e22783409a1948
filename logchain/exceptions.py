"""
Exceptions raised by the hash chain core.

Chain corruption is never an exception: the verifier reports it.
"""

from typing import Dict, List, Optional


class LogChainError(Exception):
    """Base exception for log chain operations."""
    pass


class ConfigurationError(LogChainError):
    """Raised when the service is missing required configuration (e.g. LOG_HASH_KEY)."""
    pass


class LogValidationError(LogChainError):
    """Raised when caller input is rejected before any storage access."""

    def __init__(self, message: str, errors: Optional[Dict[str, List[str]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}


class WriteConflictError(LogChainError):
    """Raised when a concurrent writer won the race for a tenant's tail. Safe to retry."""
    pass

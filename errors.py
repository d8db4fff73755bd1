#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class FeedRefresherError(Exception):
    """Base class for errors raised by the refresh pipeline.

    Attributes:
        details: Optional structured payload for diagnostics.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class InvalidPayloadError(FeedRefresherError):
    """Raised when an inbound request body matches neither accepted shape."""


class InvalidMessageError(FeedRefresherError):
    """Raised when a single batch message fails validation.

    Attributes:
        batch_id: The batch id, when one could be read from the message.
    """

    def __init__(self, message: str, batch_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.batch_id = batch_id


class StoreError(FeedRefresherError):
    """Raised when a relational store operation fails."""


class DelegationError(FeedRefresherError):
    """Raised when the external fetch worker could not complete a refresh."""


class EnrichmentError(FeedRefresherError):
    """Raised by metadata lookups; callers fall back to local defaults."""


class StatusStoreError(FeedRefresherError):
    """Raised when the batch status backend is unreachable."""


__all__ = [
    "FeedRefresherError",
    "InvalidPayloadError",
    "InvalidMessageError",
    "StoreError",
    "DelegationError",
    "EnrichmentError",
    "StatusStoreError",
]

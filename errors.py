#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Any, Dict, Optional


class SourceError(Exception):
    """Raised when the Hacker News API call fails (timeout, HTTP error, bad payload)."""


class ItemNotFoundError(SourceError):
    """Raised when the Hacker News API returns ``null`` for an item or user."""

    def __init__(self, kind: str, key: Any):
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class ContentFetchError(Exception):
    """Raised when an article page cannot be retrieved."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class SummaryBackendError(Exception):
    """Raised when the AI backend keeps failing after all retries.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str = "AI backend request failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class StorageError(Exception):
    """Raised when a database operation fails inside the DatabaseQueue worker."""


__all__ = [
    "SourceError",
    "ItemNotFoundError",
    "ContentFetchError",
    "SummaryBackendError",
    "StorageError",
]

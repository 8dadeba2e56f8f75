"""
Exceptions raised by the search, curation and reorder layers.

Callers can catch ``KitaabSearchError`` for any of them. Only
``IndexUnavailableError`` is worth retrying.
"""

from __future__ import annotations


class KitaabSearchError(Exception):
    """
    Base class for kitaab-search errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class InvalidQueryError(KitaabSearchError):
    """Empty or malformed query text. Raised before any I/O."""


class InvalidPaginationError(KitaabSearchError):
    """``page`` or ``size`` below 1. Raised before any I/O."""


class IndexUnavailableError(KitaabSearchError):
    """
    The search index could not be reached, timed out, or answered with a
    server error. Retryable; no retry is attempted here.
    """


class ManifestMalformedError(KitaabSearchError):
    """
    A reorder manifest row could not be parsed.

    Attributes:
        message: Human-readable error description.
        line: 1-based line number in the manifest file, when known.
    """

    def __init__(self, message: str, line: int | None = None) -> None:
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)
        self.line = line

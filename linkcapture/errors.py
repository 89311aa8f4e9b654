"""
Typed errors raised by the link-capture core.

Every error carries a short user-facing message and an optional
suggestion so the app shell can surface it without inspecting
store-specific error text.
"""

from typing import Optional


class LinkCaptureError(Exception):
    """Base class for all core errors."""

    retryable = False
    suggestion: Optional[str] = None

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if suggestion is not None:
            self.suggestion = suggestion


class ValidationError(LinkCaptureError):
    """Malformed URL, oversized note, or a link that is still being saved."""

    suggestion = "Check the link and try again"


class DuplicateError(LinkCaptureError):
    """The normalized URL is already saved for this owner."""

    suggestion = "Search your links to find it"

    def __init__(self, normalized_url: str, message: Optional[str] = None):
        super().__init__(message or "You've already saved this link")
        self.normalized_url = normalized_url


class NetworkError(LinkCaptureError):
    """Connectivity failure or timeout talking to the store or a web page."""

    retryable = True
    suggestion = "Check your internet connection and try again"


class MetadataFetchError(NetworkError):
    """A metadata fetch attempt failed (timeout, 4xx/5xx, malformed body)."""

    suggestion = "Your link is saved without a preview"


class ConflictError(LinkCaptureError):
    """The store rejected a write because a referenced row is gone."""

    suggestion = "Refresh and try again"


class NotFoundError(ConflictError):
    """The link no longer exists in the store."""


class ExhaustedRetries(LinkCaptureError):
    """Metadata enrichment gave up; the link keeps its placeholder title."""

    suggestion = "Use refresh to try fetching the preview again"

    def __init__(self, link_id: str, attempts: int):
        super().__init__(f"metadata fetch gave up after {attempts} attempts")
        self.link_id = link_id
        self.attempts = attempts

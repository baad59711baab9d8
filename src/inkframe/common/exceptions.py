"""Inkframe exception hierarchy."""

from typing import Optional


class InkframeError(Exception):
    """Base exception for all Inkframe errors."""

    def __init__(self, message: str = "", code: str = "INKFRAME_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ProviderError(InkframeError):
    """Raised when an image backend reports a failure.

    ``status_code`` is the backend's HTTP status when it answered at all;
    transport failures and malformed responses leave it as None.
    """

    def __init__(self, message: str = "Image provider failed", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, code="PROVIDER_ERROR")


class NoProvidersConfiguredError(InkframeError):
    """Raised when the fallback chain is asked to run with no providers."""

    def __init__(self, message: str = "No image providers configured"):
        super().__init__(message, code="NO_PROVIDERS")


class LeaseLostError(InkframeError):
    """Raised when completing a lease the caller no longer holds."""

    def __init__(self, message: str = "Idempotency lease expired or was reclaimed"):
        super().__init__(message, code="LEASE_LOST")


class StorageError(InkframeError):
    """Raised when a generated image cannot be copied to durable storage."""

    def __init__(self, message: str = "Failed to store generated image"):
        super().__init__(message, code="STORAGE_ERROR")


class StoryNotFoundError(InkframeError):
    """Raised when a story cannot be found."""

    def __init__(self, message: str = "Story not found"):
        super().__init__(message, code="NOT_FOUND")


class StoryAccessError(InkframeError):
    """Raised when a user touches a story they do not own."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="FORBIDDEN")


class PageMissingError(InkframeError):
    """Raised when a page row vanished before its image could be recorded."""

    def __init__(self, page_id: str):
        self.page_id = page_id
        super().__init__(f"Page {page_id} no longer exists", code="PAGE_MISSING")

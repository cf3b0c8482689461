"""Error taxonomy shared by the ticket store, notifications and sync layers."""

from __future__ import annotations


class CertdeskError(RuntimeError):
    """Base error for every domain failure raised by this package."""


class TicketValidationError(CertdeskError):
    """Raised when an input payload is malformed or misses required fields."""


class AuthenticationError(CertdeskError):
    """Raised when the pre-shared key is missing or does not match."""


class TicketNotFoundError(CertdeskError):
    """Raised when a ticket could not be located."""


class InvalidTransitionError(CertdeskError):
    """Raised when a status change violates the state machine or targets stale state."""


class StorageUnavailableError(CertdeskError):
    """Raised when the authoritative store cannot be reached. Safe to retry."""


class AttachmentError(CertdeskError):
    """Base error for attachment encoding failures."""


class AttachmentTooLargeError(AttachmentError):
    """Raised before encoding when the attachment exceeds the configured ceiling."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Attachment of {size} bytes exceeds the {limit} byte limit")
        self.size = size
        self.limit = limit


class EncodingTimeoutError(AttachmentError):
    """Raised when encoding does not finish within its size-derived timeout."""

    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"Encoding '{name}' did not finish within {timeout:.1f}s")
        self.name = name
        self.timeout = timeout


class AttachmentReadError(AttachmentError):
    """Raised when the attachment source cannot be read or decoded."""


class ChannelDeliveryError(CertdeskError):
    """Per-channel notification failure. Never rolls back a committed transition."""

    def __init__(self, channel: str, message: str, *, variant: str | None = None, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.channel = channel
        self.variant = variant
        self.cause = cause

    def __str__(self) -> str:
        tag = f"{self.channel}/{self.variant}" if self.variant else self.channel
        return f"[{tag}] {super().__str__()}"


class CacheError(CertdeskError):
    """Base error for fallback cache failures."""


class CacheQuotaExceededError(CacheError):
    """Raised when a cache write does not fit in the configured quota."""

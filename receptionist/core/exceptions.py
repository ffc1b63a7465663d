"""
Domain exceptions shared across services and routes.
"""

from typing import Any, Optional


class ReceptionistError(Exception):
    """Base class for orchestrator errors."""


class OrganizationNotFound(ReceptionistError):
    """Raised when no organization can be resolved, not even the default."""


class ConversationStoreError(ReceptionistError):
    """
    Raised when the conversation store cannot read or write.

    This is the only failure class that is surfaced to the caller as a spoken
    apology, since there is no safe fallback for lost conversation state.
    """


class BookingApiError(ReceptionistError):
    """Raised by the booking adapter when the booking API rejects a call."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class WebhookSignatureError(ReceptionistError):
    """Raised when a provider webhook signature is missing or invalid."""

"""Custom exceptions for Supply Order Sync."""


class SupplySyncError(Exception):
    """Base exception for all Supply Order Sync errors."""


class MailAccessError(SupplySyncError):
    """The mail collaborator could not list or fetch messages."""


class AuthenticationError(MailAccessError):
    """No usable Gmail credentials for the user."""


class RateLimitError(MailAccessError):
    """Gmail API rate limit exceeded."""


class ParseError(SupplySyncError):
    """Failed to parse email MIME content."""


class ExtractionError(SupplySyncError):
    """A vendor parser failed while extracting fields from an email."""


class LedgerError(SupplySyncError):
    """A ledger or audit store read/write failed."""


class ReconciliationError(SupplySyncError):
    """Reconciling a candidate order against the ledger failed."""

    def __init__(self, message: str, *, action: str = "", payload: dict | None = None) -> None:
        super().__init__(message)
        self.action = action
        self.payload = payload or {}


class SyncInProgressError(SupplySyncError):
    """Another sync pass for the same user holds the user lock."""

"""
Custom Exceptions for the Billing Reconciliation Engine

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class BillingEngineError(Exception):
    """Base exception for all billing engine errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(BillingEngineError):
    """Raised when input validation fails."""
    pass


class DatabaseError(BillingEngineError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class PersistenceError(DatabaseError):
    """Raised when a ledger or store write fails. Never fatal to the caller."""
    pass


class AuthorityError(BillingEngineError):
    """Raised when a purchase authority (Stripe/Apple/Google) call fails."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {}
        if provider:
            details["provider"] = provider
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details, original_error)
        self.provider = provider
        self.status_code = status_code


class TransientAuthorityError(AuthorityError):
    """Network, timeout or 5xx failure. Safe to retry."""
    pass


class RateLimitError(TransientAuthorityError):
    """Raised when an authority answers HTTP 429."""
    pass


class PermanentAuthorityError(AuthorityError):
    """Malformed or structurally invalid proof. Retrying cannot help."""
    pass


class AuthorityNotFoundError(PermanentAuthorityError):
    """The remote purchase/subscription object does not exist (404/410)."""
    pass


class ReconciliationAbortedError(BillingEngineError):
    """Raised when a reconciliation run cannot even list candidate rows."""

    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {"phase": phase} if phase else {}
        super().__init__(message, details, original_error)
        self.phase = phase


class EntitlementPropagationError(BillingEngineError):
    """Raised when the claims store rejects an entitlement update."""

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {"user_id": user_id} if user_id else {}
        super().__init__(message, details, original_error)


class ConfigurationError(BillingEngineError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)

"""
Custom Exceptions for the MedRelay Consent Ledger

Provides a unified exception hierarchy for the consent lifecycle,
the relational store, the ledger binding and session handling.
"""

from typing import Optional, Dict, Any

from .constants import ErrorCodes


class MedRelayError(Exception):
    """
    Base exception for all MedRelay errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        error_code: str = ErrorCodes.UNKNOWN_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        result: Dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ValidationError(MedRelayError):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, ErrorCodes.VALIDATION_ERROR, details)


# =============================================================================
# CONSENT LIFECYCLE ERRORS
# =============================================================================

class ConsentError(MedRelayError):
    """Base exception for consent lifecycle errors"""

    def __init__(
        self,
        message: str,
        error_code: str,
        record_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if record_id:
            details["record_id"] = record_id
        super().__init__(message, error_code, details)


class ConsentNotFoundError(ConsentError):
    """Raised when a consent record does not exist"""

    def __init__(self, record_id: str):
        super().__init__(
            message=f"Consent record not found: {record_id}",
            error_code=ErrorCodes.CONSENT_NOT_FOUND,
            record_id=record_id
        )


class InvalidStateTransition(ConsentError):
    """Raised when a status transition is not allowed from the current status"""

    def __init__(
        self,
        record_id: str,
        current_status: str,
        requested_status: str
    ):
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            message=(
                f"Cannot move consent {record_id} from '{current_status}' "
                f"to '{requested_status}'"
            ),
            error_code=ErrorCodes.INVALID_STATE_TRANSITION,
            record_id=record_id,
            details={
                "current_status": current_status,
                "requested_status": requested_status,
            }
        )


# =============================================================================
# STORE ERRORS
# =============================================================================

class StoreError(MedRelayError):
    """Base exception for relational store errors"""


class StoreConflict(StoreError):
    """Raised when a write loses a race or collides with an existing row"""

    def __init__(
        self,
        message: str = "Concurrent modification detected",
        record_id: Optional[str] = None
    ):
        details: Dict[str, Any] = {}
        if record_id:
            details["record_id"] = record_id
        super().__init__(message, ErrorCodes.STORE_CONFLICT, details)


class StoreUnavailable(StoreError):
    """Raised when the relational store cannot be reached or fails a write"""

    def __init__(
        self,
        message: str = "Consent store unavailable",
        reason: Optional[str] = None
    ):
        details: Dict[str, Any] = {}
        if reason:
            details["reason"] = reason
        super().__init__(message, ErrorCodes.STORE_UNAVAILABLE, details)


# =============================================================================
# LEDGER ERRORS
# =============================================================================

class LedgerError(MedRelayError):
    """Base exception for ledger errors; never fatal to a consent operation"""

    def __init__(
        self,
        message: str,
        error_code: str,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, error_code, details)


class LedgerUnavailable(LedgerError):
    """Raised on network or RPC failure talking to the ledger"""

    def __init__(self, operation: str, reason: Optional[str] = None):
        details: Dict[str, Any] = {}
        if reason:
            details["reason"] = reason
        super().__init__(
            message=f"Ledger unavailable during {operation}",
            error_code=ErrorCodes.LEDGER_UNAVAILABLE,
            operation=operation,
            details=details
        )


class LedgerRejected(LedgerError):
    """Raised when the consent contract reverts a call"""

    def __init__(self, operation: str, reason: Optional[str] = None):
        details: Dict[str, Any] = {}
        if reason:
            details["reason"] = reason
        super().__init__(
            message=f"Ledger rejected {operation}",
            error_code=ErrorCodes.LEDGER_REJECTED,
            operation=operation,
            details=details
        )


class LedgerUnconfigured(LedgerError):
    """Raised when no contract address is configured for this deployment"""

    def __init__(self, operation: str):
        super().__init__(
            message="Ledger anchoring is disabled for this deployment",
            error_code=ErrorCodes.LEDGER_UNCONFIGURED,
            operation=operation
        )


# =============================================================================
# AUTHENTICATION ERRORS
# =============================================================================

class AuthError(MedRelayError):
    """Base exception for authentication and session errors"""


class AuthTransientError(AuthError):
    """Raised when the identity backend fails in a way worth retrying"""

    def __init__(self, message: str = "Identity service temporarily unavailable",
                 reason: Optional[str] = None):
        details: Dict[str, Any] = {}
        if reason:
            details["reason"] = reason
        super().__init__(message, ErrorCodes.AUTH_TRANSIENT, details)


class AuthRejected(AuthError):
    """Raised on invalid credentials, unknown profiles or bad session tokens"""

    def __init__(self, message: str = "Invalid email or password"):
        super().__init__(message, ErrorCodes.AUTH_REJECTED)

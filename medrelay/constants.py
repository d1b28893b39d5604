"""
Constants for the MedRelay Consent Ledger

Centralized values for consent status, ledger anchoring, audit event
kinds, actor roles and retry defaults.
"""

from typing import Final, Tuple


# =============================================================================
# SERVICE IDENTIFICATION
# =============================================================================

SERVICE_NAME: Final[str] = "medrelay-consent"
SERVICE_VERSION: Final[str] = "0.1.0"


# =============================================================================
# CONSENT STATUS
# =============================================================================

class ConsentStatuses:
    """Consent record status values"""
    PENDING: Final[str] = "pending"
    SIGNED: Final[str] = "signed"
    REJECTED: Final[str] = "rejected"


# =============================================================================
# LEDGER ANCHORING
# =============================================================================

class LedgerStatuses:
    """Ledger anchoring status values (never terminal)"""
    UNANCHORED: Final[str] = "unanchored"
    ANCHOR_PENDING: Final[str] = "anchor_pending"
    ANCHORED: Final[str] = "anchored"
    ANCHOR_FAILED: Final[str] = "anchor_failed"


class LedgerDefaults:
    """Default ledger client parameters"""
    RPC_URL: Final[str] = "http://localhost:8545"
    REQUEST_TIMEOUT_SECONDS: Final[float] = 10.0
    RECEIPT_TIMEOUT_SECONDS: Final[float] = 120.0
    RECEIPT_SUCCESS: Final[int] = 1


# =============================================================================
# AUDIT EVENT KINDS
# =============================================================================

class AuditEventKinds:
    """Derived audit event kinds"""
    CONSENT_CREATED: Final[str] = "consent_created"
    CONSENT_SIGNED: Final[str] = "consent_signed"
    CONSENT_REJECTED: Final[str] = "consent_rejected"

    ALL: Final[Tuple[str, ...]] = (CONSENT_CREATED, CONSENT_SIGNED, CONSENT_REJECTED)


# =============================================================================
# ACTOR ROLES
# =============================================================================

class ActorRoles:
    """Role labels carried on actor references"""
    CLINICIAN: Final[str] = "doctor"
    CONSENT_SIGNER: Final[str] = "poa"
    CARE_TEAM: Final[str] = "nurse"
    ADMINISTRATOR: Final[str] = "admin"
    PATIENT: Final[str] = "patient"

    STAFF: Final[Tuple[str, ...]] = (CLINICIAN, CONSENT_SIGNER, CARE_TEAM, ADMINISTRATOR)


# =============================================================================
# SESSION RECOVERY
# =============================================================================

class RetryDefaults:
    """Bounded retry parameters for session operations"""
    MAX_ATTEMPTS: Final[int] = 3
    BACKOFF_SECONDS: Final[float] = 1.0


# =============================================================================
# FIELD LIMITS
# =============================================================================

class FieldLimits:
    """Maximum lengths for consent inputs"""
    REFERENCE_MAX: Final[int] = 128
    PROCEDURE_TYPE_MAX: Final[int] = 128
    TITLE_MAX: Final[int] = 256
    DESCRIPTION_MAX: Final[int] = 4000


# =============================================================================
# ERROR CODES
# =============================================================================

class ErrorCodes:
    """Standardized error codes"""
    UNKNOWN_ERROR: Final[str] = "UNKNOWN_ERROR"
    VALIDATION_ERROR: Final[str] = "VALIDATION_ERROR"

    # Consent lifecycle
    CONSENT_NOT_FOUND: Final[str] = "CONSENT_NOT_FOUND"
    INVALID_STATE_TRANSITION: Final[str] = "INVALID_STATE_TRANSITION"

    # Store
    STORE_CONFLICT: Final[str] = "STORE_CONFLICT"
    STORE_UNAVAILABLE: Final[str] = "STORE_UNAVAILABLE"

    # Ledger
    LEDGER_UNAVAILABLE: Final[str] = "LEDGER_UNAVAILABLE"
    LEDGER_REJECTED: Final[str] = "LEDGER_REJECTED"
    LEDGER_UNCONFIGURED: Final[str] = "LEDGER_UNCONFIGURED"

    # Authentication
    AUTH_TRANSIENT: Final[str] = "AUTH_TRANSIENT"
    AUTH_REJECTED: Final[str] = "AUTH_REJECTED"

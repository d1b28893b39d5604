"""
Input Validators for the MedRelay Consent Ledger

Provides validation utilities for consent inputs, actor references,
statuses and retry parameters.
"""

import re
import logging
from typing import Optional, Any

from ..constants import AuditEventKinds, FieldLimits
from ..exceptions import ValidationError

logger = logging.getLogger(__name__)

# =============================================================================
# REGEX PATTERNS
# =============================================================================

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
CONTROL_CHARS_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

# =============================================================================
# VALIDATION FUNCTIONS
# =============================================================================

def validate_text(
    value: Any,
    field_name: str,
    max_length: int,
    required: bool = True
) -> Optional[str]:
    """
    Validate a free-text consent field.

    Args:
        value: Value to validate
        field_name: Field name for error messages
        max_length: Maximum length after stripping
        required: Whether the field is required

    Returns:
        Stripped string or None

    Raises:
        ValidationError: If validation fails
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field_name} is required", field=field_name)
        return None

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", field=field_name)

    value = value.strip()

    if len(value) > max_length:
        raise ValidationError(
            f"{field_name} exceeds maximum length of {max_length}",
            field=field_name
        )

    if CONTROL_CHARS_PATTERN.search(value):
        raise ValidationError(
            f"{field_name} contains control characters",
            field=field_name
        )

    return value


def validate_reference(value: Any, field_name: str) -> str:
    """Validate a patient, issuer or signer reference"""
    return validate_text(value, field_name, FieldLimits.REFERENCE_MAX)


def validate_event_kind(kind: Any) -> str:
    """Validate an audit event kind"""
    if not isinstance(kind, str) or kind.strip().lower() not in AuditEventKinds.ALL:
        raise ValidationError(f"Invalid audit event kind: {kind}", field="kind")
    return kind.strip().lower()


def validate_email(email: Any) -> str:
    """Validate and normalise an email address"""
    email = validate_text(email, "email", 254)
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("email is not a valid address", field="email")
    return email.lower()


def validate_tx_hash(tx_hash: Any) -> str:
    """Validate a 32-byte hex transaction hash"""
    if not isinstance(tx_hash, str) or not TX_HASH_PATTERN.match(tx_hash):
        raise ValidationError("tx_hash must be a 0x-prefixed 32-byte hex string", field="tx_hash")
    return tx_hash.lower()


def validate_retry_parameters(max_attempts: Any, backoff_seconds: Any) -> None:
    """Validate bounded retry parameters"""
    if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1:
        raise ValidationError("max_attempts must be a positive integer", field="max_attempts")

    if not isinstance(backoff_seconds, (int, float)) or backoff_seconds < 0:
        raise ValidationError("backoff_seconds must be non-negative", field="backoff_seconds")

    if max_attempts > 10:
        logger.warning(f"Unusually high retry budget: {max_attempts} attempts")

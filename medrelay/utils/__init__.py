"""
Utility functions for MedRelay
ID generation, validation, and helper functions
"""

from .ids import (
    generate_consent_id,
    generate_user_id,
    generate_patient_id,
    validate_id,
)
from .validators import (
    validate_text,
    validate_reference,
    validate_event_kind,
    validate_email,
    validate_tx_hash,
    validate_retry_parameters,
)

__all__ = [
    # ID generation
    "generate_consent_id",
    "generate_user_id",
    "generate_patient_id",
    "validate_id",
    # Validators
    "validate_text",
    "validate_reference",
    "validate_event_kind",
    "validate_email",
    "validate_tx_hash",
    "validate_retry_parameters",
]

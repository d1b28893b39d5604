"""
ID generation and validation utilities for MedRelay
Unique identifiers for consent records, users and patients
"""

import uuid
import secrets
from typing import Optional
from datetime import datetime, UTC


def generate_consent_id() -> str:
    """Generate consent record ID; doubles as the ledger idempotency key"""
    return f"consent_{uuid.uuid4()}"


def generate_user_id(prefix: str = "user") -> str:
    """Generate unique user ID"""
    timestamp = datetime.now(UTC).strftime("%Y%m%d")
    random_part = secrets.token_hex(8)
    return f"{prefix}_{timestamp}_{random_part}"


def generate_patient_id() -> str:
    """Generate patient ID"""
    return generate_user_id(prefix="patient")


def validate_id(id_value: str, expected_prefix: Optional[str] = None) -> bool:
    """Validate ID format"""
    if not id_value or not isinstance(id_value, str):
        return False

    if expected_prefix and not id_value.startswith(f"{expected_prefix}_"):
        return False

    parts = id_value.split("_")
    if len(parts) < 2:
        return False

    return True

"""
Cryptographic utilities for MedRelay
Password hashing and session tokens
"""

from .jwt import (
    create_jwt,
    verify_jwt,
    create_session_token,
    verify_session_token,
    extract_bearer_token,
)
from .hash import hash_password, verify_password, secure_hash, fingerprint, HashError

__all__ = [
    "create_jwt",
    "verify_jwt",
    "create_session_token",
    "verify_session_token",
    "extract_bearer_token",
    "hash_password",
    "verify_password",
    "secure_hash",
    "fingerprint",
    "HashError",
]

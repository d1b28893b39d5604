"""
Hashing utilities for MedRelay
Password hashing and log-safe fingerprints
"""

import hashlib
import bcrypt
import structlog

logger = structlog.get_logger(__name__)


class HashError(Exception):
    """Base exception for hashing-related errors"""
    pass


def hash_password(password: str, rounds: int = 12) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password
        rounds: bcrypt cost factor (default 12)

    Returns:
        Hashed password string
    """
    try:
        salt = bcrypt.gensalt(rounds=rounds)
        hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
        return hashed.decode('utf-8')

    except ValueError as e:
        logger.error("Password hashing failed", error=str(e))
        raise HashError(f"Password hashing failed: {str(e)}")


def verify_password(password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Returns:
        True if password matches, False otherwise (including a malformed hash)
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed_password.encode('utf-8'))

    except ValueError as e:
        logger.error("Password verification failed", error=str(e))
        return False


def secure_hash(data: bytes, algorithm: str = 'sha256') -> str:
    """
    Create secure hash of data

    Args:
        data: Data to hash
        algorithm: Hash algorithm (sha256, sha512, blake2b)

    Returns:
        Hex-encoded hash string
    """
    if algorithm == 'sha256':
        hasher = hashlib.sha256()
    elif algorithm == 'sha512':
        hasher = hashlib.sha512()
    elif algorithm == 'blake2b':
        hasher = hashlib.blake2b()
    else:
        raise HashError(f"Unsupported hash algorithm: {algorithm}")

    hasher.update(data)
    return hasher.hexdigest()


def fingerprint(text: str) -> str:
    """Short, non-reversible tag for identifiers that must not appear in logs"""
    return secure_hash(text.strip().lower().encode('utf-8'))[:16]

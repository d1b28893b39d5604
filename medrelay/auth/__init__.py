"""
Authentication for MedRelay
Identity lookup, session tokens and session recovery
"""

from .identity import IdentityService, SignInResult, Profile, UserAccountDB, PatientDB
from .recovery import SessionRecoveryManager, Session, DEFAULT_TRANSIENT_ERRORS

__all__ = [
    "IdentityService",
    "SignInResult",
    "Profile",
    "UserAccountDB",
    "PatientDB",
    "SessionRecoveryManager",
    "Session",
    "DEFAULT_TRANSIENT_ERRORS",
]

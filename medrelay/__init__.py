"""
MedRelay Consent Ledger
Procedure consent lifecycle with dual-ledger anchoring and a derived audit trail
"""

__version__ = "0.1.0"

# Core exports
from .config import MedRelayConfig, get_config

# Consent lifecycle
from .consent import (
    ConsentRecord, ConsentStatus, LedgerStatus, OwnerScope,
    ConsentStorage, InMemoryConsentStorage,
    ConsentLifecycleCoordinator, ReconciliationReport, ConsentManager,
)

# Ledger binding
from .ledger import LedgerClient, LedgerReceipt

# Audit trail
from .audit import ActorRef, AuditEvent, AuditEventDeriver, AuditTrail, LedgerProof, resolve_verifications

# Identity and sessions
from .auth import IdentityService, SessionRecoveryManager, Session

from .exceptions import MedRelayError

__all__ = [
    # Config
    "MedRelayConfig",
    "get_config",

    # Consent
    "ConsentRecord",
    "ConsentStatus",
    "LedgerStatus",
    "OwnerScope",
    "ConsentStorage",
    "InMemoryConsentStorage",
    "ConsentLifecycleCoordinator",
    "ReconciliationReport",
    "ConsentManager",

    # Ledger
    "LedgerClient",
    "LedgerReceipt",

    # Audit
    "ActorRef",
    "AuditEvent",
    "AuditEventDeriver",
    "AuditTrail",
    "LedgerProof",
    "resolve_verifications",

    # Auth
    "IdentityService",
    "SessionRecoveryManager",
    "Session",

    "MedRelayError",
]

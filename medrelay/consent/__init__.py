"""
Consent lifecycle module for MedRelay
Procedure consents with store-first commits and best-effort ledger anchoring
"""

from .models import ConsentRecord, ConsentStatus, LedgerStatus, OwnerScope, can_transition
from .storage import ConsentStorage, InMemoryConsentStorage
from .coordinator import ConsentLifecycleCoordinator, ReconciliationReport, get_coordinator
from .manager import ConsentManager

__all__ = [
    "ConsentRecord",
    "ConsentStatus",
    "LedgerStatus",
    "OwnerScope",
    "can_transition",
    "ConsentStorage",
    "InMemoryConsentStorage",
    "ConsentLifecycleCoordinator",
    "ReconciliationReport",
    "get_coordinator",
    "ConsentManager",
]

"""
Audit Subpackage for MedRelay

Derives the consent audit trail from stored records, with ledger proofs,
filtering and CSV export.
"""

from .events import ActorRef, AuditEvent, LedgerProof
from .deriver import AuditEventDeriver, AuditTrail, resolve_verifications

__all__ = [
    "ActorRef",
    "AuditEvent",
    "LedgerProof",
    "AuditEventDeriver",
    "AuditTrail",
    "resolve_verifications",
]

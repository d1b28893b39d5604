"""
Audit event types for MedRelay
Events are derived from consent records on demand and never stored
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any

from ..consent.models import LedgerStatus


@dataclass(frozen=True)
class ActorRef:
    """Resolved identity of a clinician, signer or patient"""
    id: str
    name: str
    role: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "role": self.role}


@dataclass(frozen=True)
class LedgerProof:
    """
    Ledger evidence attached to an audit event.

    Attributes:
        tx_hash: Transaction hash anchoring the event
        ledger_status: Ledger status of the record at derivation time
        verified: True/False from a network lookup, None when not checked
    """
    tx_hash: str
    ledger_status: LedgerStatus
    verified: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "ledger_status": self.ledger_status.value,
            "verified": self.verified,
        }


@dataclass(frozen=True)
class AuditEvent:
    """
    A consent lifecycle event as shown in the audit trail.

    Attributes:
        event_id: Stable identifier, ``<record_id>:<kind>``
        record_id: Consent record the event was derived from
        kind: consent_created, consent_signed or consent_rejected
        actor: Who performed the action
        subject: Patient the consent concerns
        timestamp: When the action happened
        description: Human-readable summary
        ledger_proof: Ledger evidence, if the event was anchored
    """
    event_id: str
    record_id: str
    kind: str
    actor: ActorRef
    subject: ActorRef
    timestamp: datetime
    description: str
    ledger_proof: Optional[LedgerProof] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert audit event to dictionary for API responses"""
        return {
            "event_id": self.event_id,
            "record_id": self.record_id,
            "kind": self.kind,
            "actor": self.actor.to_dict(),
            "subject": self.subject.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "description": self.description,
            "ledger_proof": self.ledger_proof.to_dict() if self.ledger_proof else None,
        }

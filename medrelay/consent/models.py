"""
Consent data models for MedRelay
Procedure consent records on two independent axes: legal status and ledger anchoring
"""

from datetime import datetime, UTC
from enum import Enum
from typing import List, Optional, Dict, Any, FrozenSet
from pydantic import BaseModel, ConfigDict, Field

from ..constants import ConsentStatuses, LedgerStatuses


class ConsentStatus(str, Enum):
    """Legal status of a consent record"""
    PENDING = ConsentStatuses.PENDING
    SIGNED = ConsentStatuses.SIGNED        # terminal
    REJECTED = ConsentStatuses.REJECTED    # terminal

    @property
    def is_terminal(self) -> bool:
        return self in (ConsentStatus.SIGNED, ConsentStatus.REJECTED)


class LedgerStatus(str, Enum):
    """Ledger anchoring status; any value may follow any other"""
    UNANCHORED = LedgerStatuses.UNANCHORED
    ANCHOR_PENDING = LedgerStatuses.ANCHOR_PENDING
    ANCHORED = LedgerStatuses.ANCHORED
    ANCHOR_FAILED = LedgerStatuses.ANCHOR_FAILED


ALLOWED_TRANSITIONS: Dict[ConsentStatus, FrozenSet[ConsentStatus]] = {
    ConsentStatus.PENDING: frozenset({ConsentStatus.SIGNED, ConsentStatus.REJECTED}),
    ConsentStatus.SIGNED: frozenset(),
    ConsentStatus.REJECTED: frozenset(),
}


def can_transition(current: ConsentStatus, new: ConsentStatus) -> bool:
    """Check whether a status transition is legal"""
    return new in ALLOWED_TRANSITIONS[current]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ConsentRecord(BaseModel):
    """Procedure consent record; updated only through the store's conditional writes"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Record identifier and ledger idempotency key")
    title: str
    description: str
    procedure_type: str
    patient_id: str = Field(..., description="Patient reference")
    issuer_id: str = Field(..., description="Issuing clinician reference")
    status: ConsentStatus = Field(default=ConsentStatus.PENDING)

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    signed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    # Authenticated actors
    signed_by: Optional[str] = None
    rejected_by: Optional[str] = None

    # Ledger axis
    ledger_status: LedgerStatus = Field(default=LedgerStatus.UNANCHORED)
    tx_hash: Optional[str] = Field(default=None, description="Active anchoring transaction")
    creation_tx_hash: Optional[str] = None
    chain_consent_id: Optional[int] = Field(default=None, description="Fixed at creation")
    ledger_updated_at: Optional[datetime] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def advisory(self) -> Optional[str]:
        """Non-blocking notice about ledger anchoring, if any"""
        if self.ledger_status == LedgerStatus.ANCHOR_FAILED:
            return "Ledger anchoring failed; the consent is recorded and will be re-anchored"
        if self.ledger_status == LedgerStatus.ANCHOR_PENDING:
            return "Ledger anchoring submitted and awaiting confirmation"
        if self.ledger_status == LedgerStatus.UNANCHORED:
            return "Ledger anchoring is disabled for this deployment"
        return None

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialise for API responses, including the ledger advisory"""
        data = self.model_dump(mode="json")
        data["advisory"] = self.advisory
        return data


class OwnerScope(BaseModel):
    """Filter describing which records a caller may list"""
    patient_id: Optional[str] = None
    issuer_id: Optional[str] = None
    statuses: List[ConsentStatus] = Field(default_factory=list)
    ledger_statuses: List[LedgerStatus] = Field(default_factory=list)
    limit: Optional[int] = Field(default=None, ge=1)

    def matches(self, record: ConsentRecord) -> bool:
        """Check whether a record falls inside this scope"""
        if self.patient_id and record.patient_id != self.patient_id:
            return False
        if self.issuer_id and record.issuer_id != self.issuer_id:
            return False
        if self.statuses and record.status not in self.statuses:
            return False
        if self.ledger_statuses and record.ledger_status not in self.ledger_statuses:
            return False
        return True

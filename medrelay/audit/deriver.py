"""
Audit trail derivation for MedRelay
Turns a snapshot of consent records into an ordered, filterable event trail
"""

import csv
import io
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple
import structlog

from .events import ActorRef, AuditEvent, LedgerProof
from ..constants import AuditEventKinds
from ..consent.models import ConsentRecord, ConsentStatus, LedgerStatus
from ..exceptions import LedgerError, ValidationError
from ..ledger.client import LedgerClient
from ..utils.validators import validate_event_kind

logger = structlog.get_logger(__name__)

UNKNOWN_CLINICIAN = "Unknown Clinician"
UNKNOWN_SIGNER = "Unknown Signer"
UNKNOWN_PATIENT = "Unknown Patient"

CSV_HEADER = ["Timestamp", "Event Type", "User", "Role", "Patient", "Description", "Blockchain Hash"]
CSV_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Tie-break order for events sharing a timestamp and record
KIND_RANK = {
    AuditEventKinds.CONSENT_CREATED: 0,
    AuditEventKinds.CONSENT_SIGNED: 1,
    AuditEventKinds.CONSENT_REJECTED: 2,
}


def _proof(tx_hash: Optional[str], record: ConsentRecord,
           verifications: Mapping[str, bool]) -> Optional[LedgerProof]:
    if not tx_hash:
        return None
    return LedgerProof(
        tx_hash=tx_hash,
        ledger_status=record.ledger_status,
        verified=verifications.get(tx_hash),
    )


class AuditEventDeriver:
    """Derives audit events from consent records and resolved identities"""

    def __init__(self, identities: Optional[Mapping[str, ActorRef]] = None,
                 verifications: Optional[Mapping[str, bool]] = None):
        self.identities = dict(identities or {})
        self.verifications = dict(verifications or {})

    def _resolve(self, actor_id: Optional[str], placeholder: str) -> ActorRef:
        ref = self.identities.get(actor_id) if actor_id else None
        if ref is not None:
            return ref
        return ActorRef(id=actor_id or "", name=placeholder)

    def events_for(self, record: ConsentRecord) -> List[AuditEvent]:
        """Events for one record, in lifecycle order"""
        subject = self._resolve(record.patient_id, UNKNOWN_PATIENT)
        creation_hash = record.creation_tx_hash
        if creation_hash is None and record.status == ConsentStatus.PENDING:
            creation_hash = record.tx_hash

        events = [AuditEvent(
            event_id=f"{record.id}:{AuditEventKinds.CONSENT_CREATED}",
            record_id=record.id,
            kind=AuditEventKinds.CONSENT_CREATED,
            actor=self._resolve(record.issuer_id, UNKNOWN_CLINICIAN),
            subject=subject,
            timestamp=record.created_at,
            description=f"Created consent form: {record.title}",
            ledger_proof=_proof(creation_hash, record, self.verifications),
        )]

        # The active hash belongs to the terminal action once it differs from creation
        terminal_hash = record.tx_hash if record.tx_hash != record.creation_tx_hash else None

        if record.status == ConsentStatus.SIGNED:
            events.append(AuditEvent(
                event_id=f"{record.id}:{AuditEventKinds.CONSENT_SIGNED}",
                record_id=record.id,
                kind=AuditEventKinds.CONSENT_SIGNED,
                actor=self._resolve(record.signed_by, UNKNOWN_SIGNER),
                subject=subject,
                timestamp=record.signed_at or record.updated_at,
                description=f"Signed consent form: {record.title}",
                ledger_proof=_proof(terminal_hash, record, self.verifications),
            ))
        elif record.status == ConsentStatus.REJECTED:
            events.append(AuditEvent(
                event_id=f"{record.id}:{AuditEventKinds.CONSENT_REJECTED}",
                record_id=record.id,
                kind=AuditEventKinds.CONSENT_REJECTED,
                actor=self._resolve(record.rejected_by, UNKNOWN_SIGNER),
                subject=subject,
                timestamp=record.rejected_at or record.updated_at,
                description=f"Rejected consent form: {record.title}",
                ledger_proof=_proof(terminal_hash, record, self.verifications),
            ))

        return events

    def derive(self, records: Iterable[ConsentRecord]) -> "AuditTrail":
        """Build an audit trail over a snapshot of records"""
        return AuditTrail(self, tuple(records))


class AuditTrail:
    """
    Lazily evaluated, restartable sequence of audit events.

    Every iteration recomputes from the record snapshot, newest first.
    Filters return a new trail and leave this one untouched.
    """

    def __init__(
        self,
        deriver: AuditEventDeriver,
        records: Tuple[ConsentRecord, ...],
        search: Optional[str] = None,
        kinds: Optional[Sequence[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        self._deriver = deriver
        self._records = records
        self.search_term = search.strip().lower() if search and search.strip() else None
        self.kinds = frozenset(kinds) if kinds else None
        self.start = start
        self.end = end

    def _with(self, **changes) -> "AuditTrail":
        params = {
            "search": self.search_term,
            "kinds": self.kinds,
            "start": self.start,
            "end": self.end,
        }
        params.update(changes)
        return AuditTrail(self._deriver, self._records, **params)

    def search(self, term: Optional[str]) -> "AuditTrail":
        """Case-insensitive match on description, actor name or patient name"""
        return self._with(search=term)

    def of_kind(self, *kinds: str) -> "AuditTrail":
        return self._with(kinds=[validate_event_kind(kind) for kind in kinds] or None)

    def between(self, start: Optional[datetime] = None,
                end: Optional[datetime] = None) -> "AuditTrail":
        """Keep events with start <= timestamp <= end"""
        if start and end and start > end:
            raise ValidationError("start must not be after end", field="start")
        return self._with(start=start, end=end)

    def _matches(self, event: AuditEvent) -> bool:
        if self.kinds and event.kind not in self.kinds:
            return False
        if self.start and event.timestamp < self.start:
            return False
        if self.end and event.timestamp > self.end:
            return False
        if self.search_term:
            haystack = (event.description, event.actor.name, event.subject.name)
            return any(self.search_term in text.lower() for text in haystack)
        return True

    def __iter__(self) -> Iterator[AuditEvent]:
        events = [
            event
            for record in self._records
            for event in self._deriver.events_for(record)
            if self._matches(event)
        ]
        # Stable sorts, least significant key first
        events.sort(key=lambda e: (e.record_id, KIND_RANK[e.kind]))
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return iter(events)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def to_dicts(self) -> List[Dict]:
        return [event.to_dict() for event in self]

    def export_csv(self) -> str:
        """Render the trail as CSV for download"""
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_HEADER)
        for event in self:
            writer.writerow([
                event.timestamp.strftime(CSV_TIMESTAMP_FORMAT),
                event.kind,
                event.actor.name,
                event.actor.role or "",
                event.subject.name,
                event.description,
                event.ledger_proof.tx_hash if event.ledger_proof else "",
            ])
        return buffer.getvalue()


def resolve_verifications(records: Iterable[ConsentRecord],
                          ledger: LedgerClient) -> Dict[str, bool]:
    """
    Look up each distinct transaction hash on the ledger.

    Hashes that cannot be checked are left out so the trail shows them as
    unverified rather than failing.
    """
    verifications: Dict[str, bool] = {}
    if not ledger.enabled:
        return verifications

    hashes = []
    for record in records:
        if record.ledger_status == LedgerStatus.UNANCHORED:
            continue
        for tx_hash in (record.creation_tx_hash, record.tx_hash):
            if tx_hash and tx_hash not in hashes:
                hashes.append(tx_hash)

    for tx_hash in hashes:
        try:
            verifications[tx_hash] = ledger.verify_transaction(tx_hash)
        except (LedgerError, ValidationError) as e:
            logger.info("Could not verify transaction", tx_hash=tx_hash, error=e.error_code)

    return verifications

"""
Consent lifecycle coordinator for MedRelay
Create, sign and reject consent records across the store and the ledger

The relational store is the system of record: every operation commits
there first (or, for creation, commits once with whatever ledger outcome
was reached) and the ledger is anchored best-effort. Ledger failures are
folded into ``ledger_status`` and never fail or roll back an operation.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import structlog

from .models import (
    ConsentRecord,
    ConsentStatus,
    LedgerStatus,
    OwnerScope,
    can_transition,
    utc_now,
)
from .storage import ConsentStorage
from ..config import MedRelayConfig, get_config
from ..constants import FieldLimits
from ..exceptions import (
    InvalidStateTransition,
    LedgerError,
    LedgerUnconfigured,
    StoreError,
)
from ..ledger.client import LedgerClient, LedgerReceipt
from ..utils.ids import generate_consent_id
from ..utils.validators import validate_reference, validate_text

logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationReport:
    """Summary of one reconciliation pass"""
    examined: int = 0
    anchored: int = 0
    pending: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "examined": self.examined,
            "anchored": self.anchored,
            "pending": self.pending,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def _receipt_status(receipt: LedgerReceipt) -> LedgerStatus:
    return LedgerStatus.ANCHORED if receipt.confirmed else LedgerStatus.ANCHOR_PENDING


def _creation_status(receipt: LedgerReceipt) -> LedgerStatus:
    # Later writes need the on-chain id, so creation is only anchored once it is known
    if receipt.confirmed and receipt.consent_id is not None:
        return LedgerStatus.ANCHORED
    return LedgerStatus.ANCHOR_PENDING


def _failure_status(error: LedgerError) -> LedgerStatus:
    if isinstance(error, LedgerUnconfigured):
        return LedgerStatus.UNANCHORED
    return LedgerStatus.ANCHOR_FAILED


class ConsentLifecycleCoordinator:
    """Sole writer of consent status; applies ledger outcomes to records"""

    def __init__(
        self,
        storage: ConsentStorage,
        ledger: LedgerClient,
        config: Optional[MedRelayConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.ledger = ledger
        self.config = config or get_config()
        self.clock = clock

    # ==================== Lifecycle ====================

    def create_consent(self, patient_id: str, procedure_type: str, description: str,
                       issuer_id: str, title: Optional[str] = None) -> str:
        """
        Create a pending consent record.

        The ledger is tried first so the record is written once with its
        final ledger outcome; the store insert is the commit point and the
        only failure that fails the call.

        Returns:
            The new record id
        """
        patient_id = validate_reference(patient_id, "patient_id")
        issuer_id = validate_reference(issuer_id, "issuer_id")
        procedure_type = validate_text(procedure_type, "procedure_type", FieldLimits.PROCEDURE_TYPE_MAX)
        description = validate_text(description, "description", FieldLimits.DESCRIPTION_MAX)
        title = validate_text(title, "title", FieldLimits.TITLE_MAX, required=False)

        record_id = generate_consent_id()
        ledger_fields: Dict[str, Any] = {}

        try:
            receipt = self.ledger.create_on_chain(patient_id, procedure_type, description)
            ledger_status = _creation_status(receipt)
            ledger_fields = {
                "tx_hash": receipt.tx_hash,
                "creation_tx_hash": receipt.tx_hash,
                "chain_consent_id": receipt.consent_id,
                "ledger_updated_at": self.clock(),
            }
        except LedgerError as e:
            ledger_status = _failure_status(e)
            self._log_ledger_advisory("create", record_id, e)

        now = self.clock()
        record = ConsentRecord(
            id=record_id,
            title=title or f"{procedure_type} Procedure Consent",
            description=description,
            procedure_type=procedure_type,
            patient_id=patient_id,
            issuer_id=issuer_id,
            status=ConsentStatus.PENDING,
            created_at=now,
            updated_at=now,
            ledger_status=ledger_status,
            **ledger_fields,
        )

        try:
            self.storage.insert_record(record)
        except StoreError:
            if ledger_fields:
                logger.error("Consent anchored on ledger but not stored",
                             record_id=record_id, tx_hash=ledger_fields["tx_hash"],
                             chain_consent_id=ledger_fields["chain_consent_id"])
            raise

        logger.info("Created consent", record_id=record_id, patient_id=patient_id,
                    issuer_id=issuer_id, ledger_status=ledger_status.value)
        return record_id

    def sign_consent(self, record_id: str, signer_id: str) -> ConsentRecord:
        """
        Sign a pending consent.

        The signature is committed before the ledger is contacted, so legal
        effect is recorded even during a ledger outage.
        """
        signer_id = validate_reference(signer_id, "signer_id")
        record = self._require_transition(record_id, ConsentStatus.SIGNED)

        fields: Dict[str, Any] = {"signed_at": self.clock(), "signed_by": signer_id}
        anchor = self._plan_anchor(record, fields)

        self._commit_transition(record, ConsentStatus.SIGNED, fields)
        logger.info("Consent signed", record_id=record.id, signer_id=signer_id)

        if anchor:
            self._anchor(record.id, "sign", lambda: self.ledger.sign_on_chain(record.chain_consent_id))
        return self.storage.fetch_by_id(record.id)

    def reject_consent(self, record_id: str, signer_id: str) -> ConsentRecord:
        """
        Reject a pending consent.

        Only affirmative consent is anchored unless the ``anchor_rejections``
        policy is enabled.
        """
        signer_id = validate_reference(signer_id, "signer_id")
        record = self._require_transition(record_id, ConsentStatus.REJECTED)

        fields: Dict[str, Any] = {"rejected_at": self.clock(), "rejected_by": signer_id}
        anchor = self.config.anchor_rejections and self._plan_anchor(record, fields)

        self._commit_transition(record, ConsentStatus.REJECTED, fields)
        logger.info("Consent rejected", record_id=record.id, signer_id=signer_id)

        if anchor:
            self._anchor(record.id, "reject", lambda: self.ledger.reject_on_chain(record.chain_consent_id))
        return self.storage.fetch_by_id(record.id)

    def get_consent(self, record_id: str) -> ConsentRecord:
        return self.storage.fetch_by_id(validate_reference(record_id, "record_id"))

    def list_consents(self, scope: Optional[OwnerScope] = None) -> List[ConsentRecord]:
        return self.storage.list_by_filter(scope or OwnerScope())

    # ==================== Internals ====================

    def _require_transition(self, record_id: str, new_status: ConsentStatus) -> ConsentRecord:
        record = self.storage.fetch_by_id(validate_reference(record_id, "record_id"))
        if not can_transition(record.status, new_status):
            logger.info("Rejected status transition", record_id=record.id,
                        current_status=record.status.value, requested_status=new_status.value)
            raise InvalidStateTransition(record.id, record.status.value, new_status.value)
        return record

    def _commit_transition(self, record: ConsentRecord, new_status: ConsentStatus,
                           fields: Dict[str, Any]) -> None:
        """Compare-and-swap on the expected pending status; losers get InvalidStateTransition"""
        if not self.storage.update_status(record.id, record.status, new_status, fields):
            current = self.storage.fetch_by_id(record.id)
            raise InvalidStateTransition(record.id, current.status.value, new_status.value)

    def _plan_anchor(self, record: ConsentRecord, fields: Dict[str, Any]) -> bool:
        """
        Decide the ledger status written together with a transition.

        Returns True when a ledger call should follow the commit. The
        record is marked anchor_pending first so an abandoned call leaves
        a record reconciliation will pick up. With the ledger disabled the
        ledger axis is left as it is.
        """
        if not self.ledger.enabled:
            return False

        fields["ledger_updated_at"] = self.clock()
        if record.chain_consent_id is None:
            # creation never reached the chain; reconciliation creates then signs
            fields["ledger_status"] = LedgerStatus.ANCHOR_FAILED
            return False

        fields["ledger_status"] = LedgerStatus.ANCHOR_PENDING
        return True

    def _anchor(self, record_id: str, action: str, write: Callable[[], LedgerReceipt]) -> None:
        """Run one best-effort ledger write and fold its outcome into the record"""
        try:
            receipt = write()
        except LedgerError as e:
            self._log_ledger_advisory(action, record_id, e)
            self._apply_ledger(record_id, LedgerStatus.ANCHOR_PENDING, _failure_status(e), {})
            return

        self._apply_ledger(record_id, LedgerStatus.ANCHOR_PENDING, _receipt_status(receipt),
                           {"tx_hash": receipt.tx_hash})

    def _apply_ledger(self, record_id: str, expected: LedgerStatus, new: LedgerStatus,
                      fields: Dict[str, Any]) -> bool:
        applied = self.storage.update_ledger(record_id, expected, new, fields)
        if not applied:
            logger.info("Ledger outcome superseded by a newer write",
                        record_id=record_id, ledger_status=new.value)
        return applied

    def _log_ledger_advisory(self, action: str, record_id: str, error: LedgerError) -> None:
        if isinstance(error, LedgerUnconfigured):
            logger.debug("Ledger disabled, consent left unanchored", action=action, record_id=record_id)
        else:
            logger.warning("Ledger anchoring deferred", action=action, record_id=record_id,
                           error_code=error.error_code, reason=error.details.get("reason"))

    # ==================== Reconciliation ====================

    def reconcile_anchors(self, limit: Optional[int] = None) -> ReconciliationReport:
        """
        Retry anchoring for records left anchor_failed or anchor_pending.

        Each record is re-read and the chain is checked before any write,
        so a consent is never created or signed on-chain twice. Meant to be
        run by a single scheduled worker at a time.
        """
        report = ReconciliationReport()
        records = self.storage.list_by_filter(OwnerScope(
            ledger_statuses=[LedgerStatus.ANCHOR_FAILED, LedgerStatus.ANCHOR_PENDING],
            limit=limit or self.config.reconcile_batch_size,
        ))

        for candidate in records:
            report.examined += 1
            if not self.ledger.enabled:
                report.skipped += 1
                continue

            record = self.storage.fetch_by_id(candidate.id)
            try:
                outcome = self._reconcile_record(record)
            except LedgerError as e:
                self._log_ledger_advisory("reconcile", record.id, e)
                outcome = self._mark_failed(record.id)

            if outcome == LedgerStatus.ANCHORED:
                report.anchored += 1
            elif outcome == LedgerStatus.ANCHOR_PENDING:
                report.pending += 1
            elif outcome == LedgerStatus.ANCHOR_FAILED:
                report.failed += 1
            else:
                report.skipped += 1

        logger.info("Reconciliation pass complete", **report.to_dict())
        return report

    def _mark_failed(self, record_id: str) -> Optional[LedgerStatus]:
        current = self.storage.fetch_by_id(record_id)
        if current.ledger_status == LedgerStatus.ANCHOR_FAILED:
            return LedgerStatus.ANCHOR_FAILED
        if current.ledger_status != LedgerStatus.ANCHOR_PENDING:
            return None
        if self._apply_ledger(record_id, LedgerStatus.ANCHOR_PENDING, LedgerStatus.ANCHOR_FAILED, {}):
            return LedgerStatus.ANCHOR_FAILED
        return None

    def _claim_is_fresh(self, record: ConsentRecord) -> bool:
        if record.ledger_status != LedgerStatus.ANCHOR_PENDING or record.ledger_updated_at is None:
            return False
        age = self.clock() - record.ledger_updated_at
        return age < timedelta(seconds=self.config.reconcile_claim_timeout_seconds)

    def _settle(self, record: ConsentRecord, new_status: LedgerStatus,
                fields: Dict[str, Any]) -> Optional[LedgerStatus]:
        if self._apply_ledger(record.id, record.ledger_status, new_status, fields):
            return new_status
        return None

    def _reconcile_record(self, record: ConsentRecord) -> Optional[LedgerStatus]:
        """Bring one record's ledger axis up to date; returns the status written"""
        id_just_resolved = False
        if record.chain_consent_id is None:
            created = self._reconcile_creation(record)
            if created is None:
                return None
            if created.get("chain_consent_id") is None:
                return self._settle(record, LedgerStatus.ANCHOR_PENDING, created)
            if not self._terminal_write_due(record):
                return self._settle(record, LedgerStatus.ANCHORED, created)

            # Persist the on-chain id before the terminal write so a failed
            # write is retried against the same consent
            if self._settle(record, LedgerStatus.ANCHOR_PENDING, created) is None:
                return None
            record = self.storage.fetch_by_id(record.id)
            id_just_resolved = True

        if not self._terminal_write_due(record):
            # Pending, or rejected without rejection anchoring: the creation
            # anchor with a known on-chain id is all that is owed
            return self._settle(record, LedgerStatus.ANCHORED, {})

        signed = record.status == ConsentStatus.SIGNED
        if signed and self.ledger.get_consent_status(record.chain_consent_id):
            return self._settle(record, LedgerStatus.ANCHORED, {})
        if not id_just_resolved and self._terminal_write_in_flight(record):
            return None

        if signed:
            receipt = self.ledger.sign_on_chain(record.chain_consent_id)
        else:
            receipt = self.ledger.reject_on_chain(record.chain_consent_id)
        return self._settle(record, _receipt_status(receipt), {"tx_hash": receipt.tx_hash})

    def _reconcile_creation(self, record: ConsentRecord) -> Optional[Dict[str, Any]]:
        """
        Establish the on-chain consent for a record that has no on-chain id.

        A record that already carries a creation transaction is never
        created again; its id is read back from that transaction. Returns
        None while the creation transaction is not mined.
        """
        if record.creation_tx_hash:
            consent_id = self.ledger.resolve_consent_id(record.creation_tx_hash)
            if consent_id is None:
                return None
            return {"chain_consent_id": consent_id}

        receipt = self.ledger.create_on_chain(
            record.patient_id, record.procedure_type, record.description
        )
        return {
            "tx_hash": receipt.tx_hash,
            "creation_tx_hash": receipt.tx_hash,
            "chain_consent_id": receipt.consent_id,
        }

    def _terminal_write_due(self, record: ConsentRecord) -> bool:
        if record.status == ConsentStatus.SIGNED:
            return True
        return record.status == ConsentStatus.REJECTED and self.config.anchor_rejections

    def _terminal_write_in_flight(self, record: ConsentRecord) -> bool:
        """A recent claim, or a submitted sign or reject the network still knows about"""
        if self._claim_is_fresh(record):
            return True
        submitted = record.tx_hash and record.tx_hash != record.creation_tx_hash
        return bool(submitted) and self.ledger.verify_transaction(record.tx_hash)


# Global coordinator instance
_coordinator: Optional[ConsentLifecycleCoordinator] = None


def get_coordinator() -> ConsentLifecycleCoordinator:
    """Get the global coordinator, wired from configuration on first use"""
    global _coordinator
    if _coordinator is None:
        config = get_config()
        _coordinator = ConsentLifecycleCoordinator(
            storage=ConsentStorage(config.database_url),
            ledger=LedgerClient.from_config(config),
            config=config,
        )
    return _coordinator

"""
Consent storage adapters for MedRelay
Relational persistence for consent records with atomic conditional updates
"""

from typing import Optional, List, Dict, Any
from datetime import datetime, UTC
from enum import Enum
import json
import threading
import structlog
from sqlalchemy import create_engine, Column, String, DateTime, Text, BigInteger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from .models import ConsentRecord, ConsentStatus, LedgerStatus, OwnerScope, utc_now
from ..exceptions import ConsentNotFoundError, StoreConflict, StoreUnavailable, ValidationError

logger = structlog.get_logger(__name__)

Base = declarative_base()

# Columns each conditional update may touch besides its own axis
STATUS_UPDATE_FIELDS = frozenset({
    "signed_at", "signed_by", "rejected_at", "rejected_by",
    "ledger_status", "ledger_updated_at",
})
LEDGER_UPDATE_FIELDS = frozenset({"tx_hash", "creation_tx_hash", "chain_consent_id"})


class ConsentRecordDB(Base):
    """SQLAlchemy model for consent records"""
    __tablename__ = "consent_records"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    procedure_type = Column(String, nullable=False)
    patient_id = Column(String, nullable=False, index=True)
    issuer_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    signed_at = Column(DateTime(timezone=True))
    rejected_at = Column(DateTime(timezone=True))

    signed_by = Column(String)
    rejected_by = Column(String)

    ledger_status = Column(String, nullable=False, index=True)
    tx_hash = Column(String)
    creation_tx_hash = Column(String)
    chain_consent_id = Column(BigInteger)
    ledger_updated_at = Column(DateTime(timezone=True))

    consent_metadata = Column(Text)  # JSON string


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; all stored timestamps are UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _check_fields(fields: Dict[str, Any], allowed: frozenset) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(
            f"Fields not updatable here: {', '.join(sorted(unknown))}",
            field="fields"
        )


class ConsentStorage:
    """Storage adapter for consent records"""

    def __init__(self, database_url: Optional[str] = None):
        # Default to SQLite for development
        self.database_url = database_url or "sqlite:///medrelay.db"
        connect_args: Dict[str, Any] = {}
        if self.database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(self.database_url, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine)

        # Create tables
        Base.metadata.create_all(bind=self.engine)

    def _to_db_model(self, record: ConsentRecord) -> ConsentRecordDB:
        """Convert ConsentRecord to database model"""
        return ConsentRecordDB(
            id=record.id,
            title=record.title,
            description=record.description,
            procedure_type=record.procedure_type,
            patient_id=record.patient_id,
            issuer_id=record.issuer_id,
            status=record.status.value,
            created_at=record.created_at,
            updated_at=record.updated_at,
            signed_at=record.signed_at,
            rejected_at=record.rejected_at,
            signed_by=record.signed_by,
            rejected_by=record.rejected_by,
            ledger_status=record.ledger_status.value,
            tx_hash=record.tx_hash,
            creation_tx_hash=record.creation_tx_hash,
            chain_consent_id=record.chain_consent_id,
            ledger_updated_at=record.ledger_updated_at,
            consent_metadata=json.dumps(record.metadata) if record.metadata else None
        )

    def _from_db_model(self, row: ConsentRecordDB) -> ConsentRecord:
        """Convert database model to ConsentRecord"""
        metadata = {}
        if row.consent_metadata:
            try:
                metadata = json.loads(row.consent_metadata)
            except json.JSONDecodeError:
                logger.warning("Invalid metadata JSON", record_id=row.id)

        return ConsentRecord(
            id=row.id,
            title=row.title,
            description=row.description,
            procedure_type=row.procedure_type,
            patient_id=row.patient_id,
            issuer_id=row.issuer_id,
            status=ConsentStatus(row.status),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            signed_at=_aware(row.signed_at),
            rejected_at=_aware(row.rejected_at),
            signed_by=row.signed_by,
            rejected_by=row.rejected_by,
            ledger_status=LedgerStatus(row.ledger_status),
            tx_hash=row.tx_hash,
            creation_tx_hash=row.creation_tx_hash,
            chain_consent_id=row.chain_consent_id,
            ledger_updated_at=_aware(row.ledger_updated_at),
            metadata=metadata
        )

    def insert_record(self, record: ConsentRecord) -> str:
        """Insert a new consent record; this is the commit point of creation"""
        try:
            with self.SessionLocal() as session:
                session.add(self._to_db_model(record))
                session.commit()
        except IntegrityError as e:
            logger.warning("Consent record already exists", record_id=record.id, error=str(e))
            raise StoreConflict("Consent record already exists", record_id=record.id)
        except SQLAlchemyError as e:
            logger.error("Failed to insert consent record", record_id=record.id, error=str(e))
            raise StoreUnavailable(reason=str(e))

        logger.info("Stored consent record", record_id=record.id,
                    patient_id=record.patient_id, ledger_status=record.ledger_status.value)
        return record.id

    def update_status(self, record_id: str, expected_status: ConsentStatus,
                      new_status: ConsentStatus, fields: Optional[Dict[str, Any]] = None) -> bool:
        """
        Compare-and-swap the legal status of a record.

        Returns:
            True when the row still had ``expected_status`` and was updated,
            False when another writer got there first.

        Raises:
            ConsentNotFoundError: If the record does not exist
            StoreUnavailable: If the store cannot be reached
        """
        fields = dict(fields or {})
        _check_fields(fields, STATUS_UPDATE_FIELDS)

        values = {key: _column_value(value) for key, value in fields.items()}
        values["status"] = new_status.value
        values["updated_at"] = utc_now()

        try:
            with self.SessionLocal() as session:
                updated = session.query(ConsentRecordDB).filter(
                    ConsentRecordDB.id == record_id,
                    ConsentRecordDB.status == expected_status.value
                ).update(values, synchronize_session=False)
                session.commit()

                if updated == 0 and session.get(ConsentRecordDB, record_id) is None:
                    raise ConsentNotFoundError(record_id)
        except SQLAlchemyError as e:
            logger.error("Failed to update consent status", record_id=record_id, error=str(e))
            raise StoreUnavailable(reason=str(e))

        if updated:
            logger.info("Updated consent status", record_id=record_id,
                        from_status=expected_status.value, to_status=new_status.value)
        else:
            logger.info("Consent status update lost race", record_id=record_id,
                        expected_status=expected_status.value)
        return updated == 1

    def update_ledger(self, record_id: str, expected_ledger_status: LedgerStatus,
                      new_ledger_status: LedgerStatus,
                      fields: Optional[Dict[str, Any]] = None) -> bool:
        """Compare-and-swap the ledger axis of a record; never touches status"""
        fields = dict(fields or {})
        _check_fields(fields, LEDGER_UPDATE_FIELDS)

        now = utc_now()
        values = dict(fields)
        values["ledger_status"] = new_ledger_status.value
        values["ledger_updated_at"] = now
        values["updated_at"] = now

        try:
            with self.SessionLocal() as session:
                updated = session.query(ConsentRecordDB).filter(
                    ConsentRecordDB.id == record_id,
                    ConsentRecordDB.ledger_status == expected_ledger_status.value
                ).update(values, synchronize_session=False)
                session.commit()

                if updated == 0 and session.get(ConsentRecordDB, record_id) is None:
                    raise ConsentNotFoundError(record_id)
        except SQLAlchemyError as e:
            logger.error("Failed to update ledger status", record_id=record_id, error=str(e))
            raise StoreUnavailable(reason=str(e))

        logger.debug("Ledger status update", record_id=record_id, applied=updated == 1,
                     to_status=new_ledger_status.value)
        return updated == 1

    def fetch_by_id(self, record_id: str) -> ConsentRecord:
        """Get a specific consent record by ID"""
        try:
            with self.SessionLocal() as session:
                row = session.get(ConsentRecordDB, record_id)
                if row is None:
                    raise ConsentNotFoundError(record_id)
                return self._from_db_model(row)
        except SQLAlchemyError as e:
            logger.error("Failed to get consent", record_id=record_id, error=str(e))
            raise StoreUnavailable(reason=str(e))

    def list_by_filter(self, scope: Optional[OwnerScope] = None) -> List[ConsentRecord]:
        """List consent records inside an owner scope, newest first"""
        scope = scope or OwnerScope()
        try:
            with self.SessionLocal() as session:
                query = session.query(ConsentRecordDB)
                if scope.patient_id:
                    query = query.filter(ConsentRecordDB.patient_id == scope.patient_id)
                if scope.issuer_id:
                    query = query.filter(ConsentRecordDB.issuer_id == scope.issuer_id)
                if scope.statuses:
                    query = query.filter(
                        ConsentRecordDB.status.in_([s.value for s in scope.statuses])
                    )
                if scope.ledger_statuses:
                    query = query.filter(
                        ConsentRecordDB.ledger_status.in_([s.value for s in scope.ledger_statuses])
                    )
                query = query.order_by(ConsentRecordDB.created_at.desc(), ConsentRecordDB.id)
                if scope.limit:
                    query = query.limit(scope.limit)
                return [self._from_db_model(row) for row in query.all()]
        except SQLAlchemyError as e:
            logger.error("Failed to list consents", error=str(e))
            raise StoreUnavailable(reason=str(e))


class InMemoryConsentStorage(ConsentStorage):
    """In-memory storage for testing; a lock stands in for row-level atomicity"""

    def __init__(self):
        self.records: Dict[str, ConsentRecord] = {}
        self._lock = threading.Lock()

    def insert_record(self, record: ConsentRecord) -> str:
        with self._lock:
            if record.id in self.records:
                raise StoreConflict("Consent record already exists", record_id=record.id)
            self.records[record.id] = record
        return record.id

    def update_status(self, record_id: str, expected_status: ConsentStatus,
                      new_status: ConsentStatus, fields: Optional[Dict[str, Any]] = None) -> bool:
        fields = dict(fields or {})
        _check_fields(fields, STATUS_UPDATE_FIELDS)

        with self._lock:
            record = self.records.get(record_id)
            if record is None:
                raise ConsentNotFoundError(record_id)
            if record.status != expected_status:
                return False
            self.records[record_id] = record.model_copy(
                update={**fields, "status": new_status, "updated_at": utc_now()}
            )
            return True

    def update_ledger(self, record_id: str, expected_ledger_status: LedgerStatus,
                      new_ledger_status: LedgerStatus,
                      fields: Optional[Dict[str, Any]] = None) -> bool:
        fields = dict(fields or {})
        _check_fields(fields, LEDGER_UPDATE_FIELDS)

        with self._lock:
            record = self.records.get(record_id)
            if record is None:
                raise ConsentNotFoundError(record_id)
            if record.ledger_status != expected_ledger_status:
                return False
            now = utc_now()
            self.records[record_id] = record.model_copy(update={
                **fields,
                "ledger_status": new_ledger_status,
                "ledger_updated_at": now,
                "updated_at": now,
            })
            return True

    def fetch_by_id(self, record_id: str) -> ConsentRecord:
        record = self.records.get(record_id)
        if record is None:
            raise ConsentNotFoundError(record_id)
        return record

    def list_by_filter(self, scope: Optional[OwnerScope] = None) -> List[ConsentRecord]:
        scope = scope or OwnerScope()
        with self._lock:
            matched = [r for r in self.records.values() if scope.matches(r)]
        matched.sort(key=lambda r: r.id)
        matched.sort(key=lambda r: r.created_at, reverse=True)
        return matched[:scope.limit] if scope.limit else matched

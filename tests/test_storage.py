"""
Tests for consent storage adapters
"""

import threading
from datetime import datetime, timedelta, UTC

import pytest

from medrelay.consent.models import ConsentRecord, ConsentStatus, LedgerStatus, OwnerScope
from medrelay.consent.storage import ConsentStorage, InMemoryConsentStorage
from medrelay.exceptions import ConsentNotFoundError, StoreConflict, ValidationError


def make_record(record_id: str, patient_id: str = "patient_001", minutes_ago: int = 0, **overrides):
    created = datetime.now(UTC) - timedelta(minutes=minutes_ago)
    params = dict(
        id=record_id,
        title="Appendectomy Procedure Consent",
        description="Laparoscopic removal of the appendix",
        procedure_type="Appendectomy",
        patient_id=patient_id,
        issuer_id="user_doctor",
        created_at=created,
        updated_at=created,
        ledger_status=LedgerStatus.ANCHORED,
        tx_hash="0x" + "ab" * 32,
        creation_tx_hash="0x" + "ab" * 32,
        chain_consent_id=7,
        metadata={"ward": "B"},
    )
    params.update(overrides)
    return ConsentRecord(**params)


class StorageContract:
    """Behaviour shared by every storage adapter"""

    storage: ConsentStorage

    def test_insert_and_fetch(self):
        record = make_record("consent_1")
        assert self.storage.insert_record(record) == "consent_1"

        fetched = self.storage.fetch_by_id("consent_1")
        assert fetched.id == "consent_1"
        assert fetched.status == ConsentStatus.PENDING
        assert fetched.ledger_status == LedgerStatus.ANCHORED
        assert fetched.chain_consent_id == 7
        assert fetched.metadata == {"ward": "B"}
        assert fetched.created_at == record.created_at
        assert fetched.created_at.tzinfo is not None

    def test_duplicate_insert_conflicts(self):
        self.storage.insert_record(make_record("consent_1"))
        with pytest.raises(StoreConflict):
            self.storage.insert_record(make_record("consent_1"))

    def test_fetch_missing_record(self):
        with pytest.raises(ConsentNotFoundError):
            self.storage.fetch_by_id("consent_missing")

    def test_update_status_compare_and_swap(self):
        self.storage.insert_record(make_record("consent_1"))
        signed_at = datetime.now(UTC)

        assert self.storage.update_status(
            "consent_1", ConsentStatus.PENDING, ConsentStatus.SIGNED,
            {"signed_at": signed_at, "signed_by": "user_poa", "ledger_status": LedgerStatus.ANCHOR_PENDING}
        )
        assert not self.storage.update_status(
            "consent_1", ConsentStatus.PENDING, ConsentStatus.REJECTED, {"rejected_by": "user_poa"}
        )

        record = self.storage.fetch_by_id("consent_1")
        assert record.status == ConsentStatus.SIGNED
        assert record.signed_by == "user_poa"
        assert record.rejected_by is None
        assert record.ledger_status == LedgerStatus.ANCHOR_PENDING

    def test_update_status_missing_record(self):
        with pytest.raises(ConsentNotFoundError):
            self.storage.update_status("consent_missing", ConsentStatus.PENDING, ConsentStatus.SIGNED)

    def test_update_status_rejects_foreign_fields(self):
        self.storage.insert_record(make_record("consent_1"))
        with pytest.raises(ValidationError):
            self.storage.update_status(
                "consent_1", ConsentStatus.PENDING, ConsentStatus.SIGNED, {"tx_hash": "0x00"}
            )
        assert self.storage.fetch_by_id("consent_1").status == ConsentStatus.PENDING

    def test_update_ledger_compare_and_swap(self):
        self.storage.insert_record(make_record("consent_1", ledger_status=LedgerStatus.ANCHOR_FAILED))
        new_hash = "0x" + "cd" * 32

        assert not self.storage.update_ledger(
            "consent_1", LedgerStatus.ANCHOR_PENDING, LedgerStatus.ANCHORED, {"tx_hash": new_hash}
        )
        assert self.storage.update_ledger(
            "consent_1", LedgerStatus.ANCHOR_FAILED, LedgerStatus.ANCHORED, {"tx_hash": new_hash}
        )

        record = self.storage.fetch_by_id("consent_1")
        assert record.ledger_status == LedgerStatus.ANCHORED
        assert record.tx_hash == new_hash
        assert record.status == ConsentStatus.PENDING
        assert record.ledger_updated_at is not None

    def test_update_ledger_cannot_touch_status(self):
        self.storage.insert_record(make_record("consent_1"))
        with pytest.raises(ValidationError):
            self.storage.update_ledger(
                "consent_1", LedgerStatus.ANCHORED, LedgerStatus.ANCHORED, {"status": "signed"}
            )

    def test_list_by_filter(self):
        self.storage.insert_record(make_record("consent_old", minutes_ago=10))
        self.storage.insert_record(make_record("consent_new", minutes_ago=1))
        self.storage.insert_record(make_record("consent_other", patient_id="patient_002", minutes_ago=5,
                                               ledger_status=LedgerStatus.ANCHOR_FAILED))

        assert [r.id for r in self.storage.list_by_filter()] == [
            "consent_new", "consent_other", "consent_old"
        ]
        assert [r.id for r in self.storage.list_by_filter(OwnerScope(patient_id="patient_001"))] == [
            "consent_new", "consent_old"
        ]
        failed = self.storage.list_by_filter(OwnerScope(ledger_statuses=[LedgerStatus.ANCHOR_FAILED]))
        assert [r.id for r in failed] == ["consent_other"]
        assert len(self.storage.list_by_filter(OwnerScope(limit=1))) == 1

    def test_racing_status_updates_have_one_winner(self):
        self.storage.insert_record(make_record("consent_1"))
        barrier = threading.Barrier(6)
        results = []

        def race(new_status):
            barrier.wait()
            results.append(self.storage.update_status("consent_1", ConsentStatus.PENDING, new_status))

        threads = [
            threading.Thread(target=race, args=(ConsentStatus.SIGNED if i % 2 else ConsentStatus.REJECTED,))
            for i in range(6)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1


class TestInMemoryConsentStorage(StorageContract):
    """Lock-protected in-memory adapter"""

    def setup_method(self):
        self.storage = InMemoryConsentStorage()


class TestSQLiteConsentStorage(StorageContract):
    """SQLAlchemy adapter on a SQLite file"""

    @pytest.fixture(autouse=True)
    def _storage(self, tmp_path):
        self.storage = ConsentStorage(f"sqlite:///{tmp_path / 'consents.db'}")
        yield
        self.storage.engine.dispose()

    def test_records_survive_a_new_adapter(self, tmp_path):
        self.storage.insert_record(make_record("consent_1"))

        reopened = ConsentStorage(self.storage.database_url)
        try:
            assert reopened.fetch_by_id("consent_1").patient_id == "patient_001"
        finally:
            reopened.engine.dispose()

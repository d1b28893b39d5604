"""Tests for the consent service HTTP endpoints."""

from __future__ import annotations

import csv
import io
from typing import Dict

import pytest
from fastapi.testclient import TestClient

import medrelay.main as main_mod
from medrelay.auth import IdentityService, SessionRecoveryManager
from medrelay.config import MedRelayConfig
from medrelay.consent.coordinator import ConsentLifecycleCoordinator
from medrelay.consent.manager import ConsentManager
from medrelay.consent.storage import InMemoryConsentStorage
from medrelay.exceptions import LedgerUnavailable

from fakes import FakeLedgerClient

PASSWORD = "correct horse battery"


class TestConsentEndpoints:
    """End-to-end flows through the FastAPI app with injected services."""

    @pytest.fixture(autouse=True)
    def _services(self, tmp_path, monkeypatch):
        config = MedRelayConfig(jwt_secret_key="api-test-secret", bcrypt_rounds=4)
        self.ledger = FakeLedgerClient()
        self.storage = InMemoryConsentStorage()
        coordinator = ConsentLifecycleCoordinator(self.storage, self.ledger, config)
        identity = IdentityService(f"sqlite:///{tmp_path / 'identity.db'}", config=config)

        self.doctor_id = identity.register_user("doctor@example.org", PASSWORD, "Dr. Amara Okafor", "doctor")
        self.poa_id = identity.register_user("poa@example.org", PASSWORD, "Jonas Lindqvist", "poa")
        self.nurse_id = identity.register_user("nurse@example.org", PASSWORD, "Priya Nair", "nurse")
        self.admin_id = identity.register_user("admin@example.org", PASSWORD, "Sam Admin", "admin")
        self.patient_id = identity.register_patient("Mei Tanaka", patient_id="patient_001")

        monkeypatch.setattr(main_mod, "consent_manager", ConsentManager(coordinator))
        monkeypatch.setattr(main_mod, "identity_service", identity)
        monkeypatch.setattr(
            main_mod, "session_recovery",
            SessionRecoveryManager(identity=identity, config=config, sleep=lambda _: None),
        )

        self.client = TestClient(main_mod.app)
        yield
        identity.engine.dispose()

    def _auth(self, email: str) -> Dict[str, str]:
        response = self.client.post("/auth/sign-in", json={"email": email, "password": PASSWORD})
        assert response.status_code == 200
        return {"Authorization": f"Bearer {response.json()['session_token']}"}

    def _create(self, headers: Dict[str, str]) -> Dict:
        response = self.client.post(
            "/consents",
            json={
                "patient_id": self.patient_id,
                "procedure_type": "Appendectomy",
                "description": "Laparoscopic removal of the appendix",
            },
            headers=headers,
        )
        assert response.status_code == 201
        return response.json()

    def test_health_and_root(self) -> None:
        health = self.client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["components"]["consent_manager"] is True
        assert self.client.get("/").json()["status"] == "operational"

    def test_sign_in_returns_profile(self) -> None:
        response = self.client.post("/auth/sign-in", json={"email": "poa@example.org", "password": PASSWORD})

        data = response.json()
        assert data["user_id"] == self.poa_id
        assert data["role"] == "poa"
        assert data["name"] == "Jonas Lindqvist"
        assert data["session_token"]

    def test_sign_in_rejects_bad_password(self) -> None:
        response = self.client.post("/auth/sign-in", json={"email": "poa@example.org", "password": "nope"})

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "AUTH_REJECTED"

    def test_create_and_sign_consent(self) -> None:
        record = self._create(self._auth("doctor@example.org"))

        assert record["status"] == "pending"
        assert record["issuer_id"] == self.doctor_id
        assert record["ledger_status"] == "anchored"
        assert record["advisory"] is None

        response = self.client.post(f"/consents/{record['id']}/sign", headers=self._auth("poa@example.org"))

        assert response.status_code == 200
        signed = response.json()
        assert signed["status"] == "signed"
        assert signed["signed_by"] == self.poa_id

    def test_create_during_ledger_outage_returns_advisory(self) -> None:
        self.ledger.fail("createConsent", LedgerUnavailable("createConsent"))

        record = self._create(self._auth("doctor@example.org"))

        assert record["status"] == "pending"
        assert record["ledger_status"] == "anchor_failed"
        assert record["advisory"]

    def test_create_requires_authentication(self) -> None:
        response = self.client.post("/consents", json={"patient_id": "patient_001"})
        assert response.status_code == 401

    def test_create_validation_error(self) -> None:
        response = self.client.post(
            "/consents",
            json={"patient_id": self.patient_id, "procedure_type": "MRI", "description": ""},
            headers=self._auth("doctor@example.org"),
        )

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "VALIDATION_ERROR"

    def test_nurse_cannot_create_or_sign(self) -> None:
        nurse = self._auth("nurse@example.org")
        record = self._create(self._auth("doctor@example.org"))

        assert self.client.post("/consents", json={}, headers=nurse).status_code == 403
        assert self.client.post(f"/consents/{record['id']}/sign", headers=nurse).status_code == 403

    def test_double_sign_conflicts(self) -> None:
        record = self._create(self._auth("doctor@example.org"))
        poa = self._auth("poa@example.org")

        assert self.client.post(f"/consents/{record['id']}/sign", headers=poa).status_code == 200
        response = self.client.post(f"/consents/{record['id']}/reject", headers=poa)

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "INVALID_STATE_TRANSITION"
        assert self.ledger.count("signConsent") == 1

    def test_get_and_list_consents(self) -> None:
        doctor = self._auth("doctor@example.org")
        record = self._create(doctor)

        assert self.client.get(f"/consents/{record['id']}", headers=doctor).json()["id"] == record["id"]
        listing = self.client.get("/consents", params={"patient_id": self.patient_id}, headers=doctor).json()
        assert listing["count"] == 1
        assert self.client.get("/consents", params={"status": "signed"}, headers=doctor).json()["count"] == 0

    def test_get_unknown_consent(self) -> None:
        response = self.client.get("/consents/consent_missing", headers=self._auth("doctor@example.org"))
        assert response.status_code == 404

    def test_list_rejects_unknown_status(self) -> None:
        response = self.client.get("/consents", params={"status": "archived"},
                                   headers=self._auth("doctor@example.org"))
        assert response.status_code == 422

    def test_audit_trail_json_and_csv(self) -> None:
        doctor = self._auth("doctor@example.org")
        record = self._create(doctor)
        self.client.post(f"/consents/{record['id']}/sign", headers=self._auth("poa@example.org"))

        events = self.client.get("/audit", headers=doctor).json()["events"]
        assert [e["kind"] for e in events] == ["consent_signed", "consent_created"]
        assert events[0]["actor"]["name"] == "Jonas Lindqvist"
        assert events[0]["subject"]["name"] == "Mei Tanaka"

        filtered = self.client.get("/audit", params={"kind": "consent_created", "search": "okafor"},
                                   headers=doctor).json()
        assert filtered["count"] == 1

        response = self.client.get("/audit", params={"format": "csv", "verify": "true"}, headers=doctor)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0][0] == "Timestamp"
        assert len(rows) == 3

    def test_reconcile_requires_admin(self) -> None:
        self.ledger.fail("createConsent", LedgerUnavailable("createConsent"))
        self._create(self._auth("doctor@example.org"))
        self.ledger.fail("createConsent", None)

        assert self.client.post("/ledger/reconcile", headers=self._auth("doctor@example.org")).status_code == 403

        report = self.client.post("/ledger/reconcile", headers=self._auth("admin@example.org")).json()
        assert report["examined"] == 1
        assert report["anchored"] == 1

    def test_returns_503_when_manager_missing(self, monkeypatch) -> None:
        headers = self._auth("doctor@example.org")
        monkeypatch.setattr(main_mod, "consent_manager", None)

        response = self.client.get("/consents/consent_1", headers=headers)

        assert response.status_code == 503

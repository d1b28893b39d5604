from typing import Any, Dict, List, Optional
import asyncio

import structlog
import pydantic
from pydantic import BaseModel, Field

from .models import ConsentStatus, LedgerStatus, OwnerScope
from .coordinator import ConsentLifecycleCoordinator, get_coordinator
from ..exceptions import ValidationError


logger = structlog.get_logger(__name__)


class ConsentCreateRequest(BaseModel):
    patient_id: str
    procedure_type: str
    description: str
    title: Optional[str] = None


class ConsentListQuery(BaseModel):
    patient_id: Optional[str] = None
    issuer_id: Optional[str] = None
    status: Optional[ConsentStatus] = None
    ledger_status: Optional[LedgerStatus] = None
    limit: Optional[int] = Field(default=None, ge=1, le=1000)

    def to_scope(self) -> OwnerScope:
        return OwnerScope(
            patient_id=self.patient_id,
            issuer_id=self.issuer_id,
            statuses=[self.status] if self.status else [],
            ledger_statuses=[self.ledger_status] if self.ledger_status else [],
            limit=self.limit,
        )


def _parse(model: type, data: Dict[str, Any]) -> Any:
    try:
        return model(**data)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        logger.info("Invalid consent payload", field=field, error=first.get("msg"))
        raise ValidationError(f"{field}: {first.get('msg')}", field=field or None)


class ConsentManager:
    """Async facade over the coordinator; ledger waits run in worker threads"""

    def __init__(self, coordinator: Optional[ConsentLifecycleCoordinator] = None):
        self.coordinator = coordinator or get_coordinator()

    async def create_consent(self, issuer_id: str, consent_data: Dict[str, Any]) -> Dict[str, Any]:
        payload = _parse(ConsentCreateRequest, consent_data)
        record_id = await asyncio.to_thread(
            self.coordinator.create_consent,
            patient_id=payload.patient_id,
            procedure_type=payload.procedure_type,
            description=payload.description,
            issuer_id=issuer_id,
            title=payload.title,
        )
        record = await asyncio.to_thread(self.coordinator.get_consent, record_id)
        return record.to_public_dict()

    async def sign_consent(self, record_id: str, signer_id: str) -> Dict[str, Any]:
        record = await asyncio.to_thread(self.coordinator.sign_consent, record_id, signer_id)
        return record.to_public_dict()

    async def reject_consent(self, record_id: str, signer_id: str) -> Dict[str, Any]:
        record = await asyncio.to_thread(self.coordinator.reject_consent, record_id, signer_id)
        return record.to_public_dict()

    async def get_consent(self, record_id: str) -> Dict[str, Any]:
        record = await asyncio.to_thread(self.coordinator.get_consent, record_id)
        return record.to_public_dict()

    async def list_consents(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = _parse(ConsentListQuery, filters or {})
        records = await asyncio.to_thread(self.coordinator.list_consents, query.to_scope())
        consents: List[Dict[str, Any]] = [r.to_public_dict() for r in records]
        return {"consents": consents, "count": len(consents)}

    async def reconcile(self, limit: Optional[int] = None) -> Dict[str, Any]:
        report = await asyncio.to_thread(self.coordinator.reconcile_anchors, limit)
        return report.to_dict()

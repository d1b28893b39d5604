"""
MedRelay Consent Ledger - FastAPI Application
Consent lifecycle, ledger anchoring and audit trail endpoints
"""

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional
import asyncio
import structlog

from pydantic import BaseModel

from .config import get_config
from .constants import ActorRoles, SERVICE_NAME, SERVICE_VERSION
from .exceptions import (
    AuthRejected,
    ConsentNotFoundError,
    InvalidStateTransition,
    MedRelayError,
    StoreConflict,
    StoreUnavailable,
    ValidationError,
)
from .audit import ActorRef, AuditEventDeriver, resolve_verifications
from .auth import IdentityService, SessionRecoveryManager
from .consent.manager import ConsentManager
from .crypto.jwt import extract_bearer_token

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Global settings
settings = get_config()

# Initialize services
consent_manager: Optional[ConsentManager] = None
identity_service: Optional[IdentityService] = None
session_recovery: Optional[SessionRecoveryManager] = None

CREATOR_ROLES = (ActorRoles.CLINICIAN, ActorRoles.ADMINISTRATOR)
SIGNER_ROLES = (ActorRoles.CONSENT_SIGNER, ActorRoles.CLINICIAN, ActorRoles.ADMINISTRATOR)


class SignInRequest(BaseModel):
    email: str
    password: str


def _http_error(error: MedRelayError) -> HTTPException:
    """Map a domain error onto an HTTP status"""
    if isinstance(error, ValidationError):
        status_code = 422
    elif isinstance(error, ConsentNotFoundError):
        status_code = 404
    elif isinstance(error, (InvalidStateTransition, StoreConflict)):
        status_code = 409
    elif isinstance(error, AuthRejected):
        status_code = 401
    elif isinstance(error, StoreUnavailable):
        status_code = 503
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=error.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global consent_manager, identity_service, session_recovery

    logger.info("Starting MedRelay consent service", version=SERVICE_VERSION,
                ledger_enabled=settings.ledger_enabled)

    # Initialize services only if not already provided (for testing/injection)
    if consent_manager is None:
        consent_manager = ConsentManager()
    if identity_service is None:
        identity_service = IdentityService(config=settings)
    if session_recovery is None:
        session_recovery = SessionRecoveryManager(identity=identity_service, config=settings)

    logger.info("Consent services initialized")

    yield

    logger.info("Shutting down MedRelay consent service")

# Create FastAPI app
app = FastAPI(
    title="MedRelay Consent Ledger",
    description="Procedure consent lifecycle with ledger anchoring and audit trail",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_consent_manager() -> ConsentManager:
    if not consent_manager:
        raise HTTPException(status_code=503, detail="Consent manager not available")
    return consent_manager


def _require_identity_service() -> IdentityService:
    if not identity_service:
        raise HTTPException(status_code=503, detail="Identity service not available")
    return identity_service


async def current_actor(authorization: Optional[str] = Header(default=None)) -> ActorRef:
    """Authenticated actor from the bearer session token"""
    identity = _require_identity_service()
    try:
        return identity.verify_session(extract_bearer_token(authorization))
    except AuthRejected as e:
        raise _http_error(e)


def _require_role(actor: ActorRef, roles: tuple) -> None:
    if actor.role not in roles:
        logger.warning("Actor role not permitted", actor_id=actor.id, role=actor.role)
        raise HTTPException(
            status_code=403,
            detail={"error": "FORBIDDEN", "message": f"Role '{actor.role}' may not perform this action"},
        )


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "components": {
            "consent_manager": consent_manager is not None,
            "identity_service": identity_service is not None,
            "session_recovery": session_recovery is not None,
            "ledger_enabled": (
                consent_manager.coordinator.ledger.enabled if consent_manager else False
            ),
        },
    }


# =============================================================================
# SESSIONS
# =============================================================================

@app.post("/auth/sign-in")
async def sign_in(request: SignInRequest):
    """Sign in and receive a session token"""
    if not session_recovery:
        raise HTTPException(status_code=503, detail="Session service not available")

    try:
        session = await asyncio.to_thread(
            session_recovery.establish_session, request.email, request.password
        )
    except (AuthRejected, ValidationError) as e:
        raise _http_error(e)
    except MedRelayError as e:
        logger.error("Sign-in failed after retries", error=e.error_code)
        raise HTTPException(status_code=503, detail=e.to_dict())

    return session.to_dict()


# =============================================================================
# CONSENTS
# =============================================================================

@app.post("/consents", status_code=201)
async def create_consent(consent_data: dict, actor: ActorRef = Depends(current_actor)):
    """Create a pending procedure consent"""
    manager = _require_consent_manager()
    _require_role(actor, CREATOR_ROLES)

    try:
        record = await manager.create_consent(actor.id, consent_data)
    except MedRelayError as e:
        logger.error("Failed to create consent", issuer_id=actor.id, error=e.error_code)
        raise _http_error(e)

    logger.info("Consent created", record_id=record["id"], issuer_id=actor.id)
    return record


@app.get("/consents")
async def list_consents(
    patient_id: Optional[str] = None,
    issuer_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: Optional[int] = None,
    actor: ActorRef = Depends(current_actor),
):
    """List consents, newest first"""
    manager = _require_consent_manager()
    filters = {
        "patient_id": patient_id,
        "issuer_id": issuer_id,
        "status": status,
        "limit": limit,
    }
    try:
        return await manager.list_consents({k: v for k, v in filters.items() if v is not None})
    except MedRelayError as e:
        raise _http_error(e)


@app.get("/consents/{record_id}")
async def get_consent(record_id: str, actor: ActorRef = Depends(current_actor)):
    """Get a single consent with its ledger advisory"""
    manager = _require_consent_manager()
    try:
        return await manager.get_consent(record_id)
    except MedRelayError as e:
        raise _http_error(e)


@app.post("/consents/{record_id}/sign")
async def sign_consent(record_id: str, actor: ActorRef = Depends(current_actor)):
    """Sign a pending consent as the authenticated actor"""
    manager = _require_consent_manager()
    _require_role(actor, SIGNER_ROLES)

    try:
        return await manager.sign_consent(record_id, actor.id)
    except MedRelayError as e:
        logger.info("Sign request refused", record_id=record_id, signer_id=actor.id, error=e.error_code)
        raise _http_error(e)


@app.post("/consents/{record_id}/reject")
async def reject_consent(record_id: str, actor: ActorRef = Depends(current_actor)):
    """Reject a pending consent as the authenticated actor"""
    manager = _require_consent_manager()
    _require_role(actor, SIGNER_ROLES)

    try:
        return await manager.reject_consent(record_id, actor.id)
    except MedRelayError as e:
        logger.info("Reject request refused", record_id=record_id, signer_id=actor.id, error=e.error_code)
        raise _http_error(e)


# =============================================================================
# AUDIT
# =============================================================================

@app.get("/audit")
async def audit_trail(
    search: Optional[str] = None,
    kind: Optional[List[str]] = Query(default=None),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    verify: bool = False,
    format: str = "json",
    actor: ActorRef = Depends(current_actor),
):
    """Derived audit trail as JSON or a CSV download"""
    manager = _require_consent_manager()
    identity = _require_identity_service()
    if format not in ("json", "csv"):
        raise HTTPException(status_code=422, detail={"error": "VALIDATION_ERROR",
                                                     "message": "format must be json or csv"})

    coordinator = manager.coordinator
    try:
        records = await asyncio.to_thread(coordinator.list_consents)
        ids = set()
        for record in records:
            ids.update({record.patient_id, record.issuer_id, record.signed_by, record.rejected_by})
        identities = await asyncio.to_thread(identity.resolve_identities, ids)

        verifications: Dict[str, bool] = {}
        if verify:
            verifications = await asyncio.to_thread(resolve_verifications, records, coordinator.ledger)

        trail = AuditEventDeriver(identities, verifications).derive(records).search(search)
        if kind:
            trail = trail.of_kind(*kind)
        if start or end:
            trail = trail.between(start, end)
    except MedRelayError as e:
        raise _http_error(e)

    if format == "csv":
        filename = f"medrelay_audit_log_{datetime.now(UTC).strftime('%Y-%m-%d')}.csv"
        return Response(
            content=trail.export_csv(),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    events: List[Dict[str, Any]] = trail.to_dicts()
    return {"events": events, "count": len(events)}


# =============================================================================
# LEDGER
# =============================================================================

@app.post("/ledger/reconcile")
async def reconcile_ledger(limit: Optional[int] = None, actor: ActorRef = Depends(current_actor)):
    """Retry anchoring for records whose ledger write failed or is unconfirmed"""
    manager = _require_consent_manager()
    _require_role(actor, (ActorRoles.ADMINISTRATOR,))

    try:
        report = await manager.reconcile(limit)
    except MedRelayError as e:
        logger.error("Reconciliation failed", error=e.error_code)
        raise _http_error(e)

    logger.info("Reconciliation requested", actor_id=actor.id, **report)
    return report


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "MedRelay Consent Ledger",
        "version": SERVICE_VERSION,
        "status": "operational",
        "features": {
            "consent_lifecycle": True,
            "ledger_anchoring": settings.ledger_enabled,
            "audit_trail": True,
        }
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

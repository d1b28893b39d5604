"""
Identity service for MedRelay
Staff accounts, patients and session tokens backed by the relational store
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional
import structlog
from sqlalchemy import create_engine, Column, String, DateTime
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from ..audit.events import ActorRef
from ..config import MedRelayConfig, get_config
from ..constants import ActorRoles
from ..consent.models import utc_now
from ..crypto.hash import fingerprint, hash_password, verify_password
from ..crypto.jwt import create_session_token, verify_session_token
from ..exceptions import AuthRejected, AuthTransientError, ValidationError
from ..utils.ids import generate_patient_id, generate_user_id, validate_id
from ..utils.validators import validate_email, validate_reference, validate_text

logger = structlog.get_logger(__name__)

Base = declarative_base()


class UserAccountDB(Base):
    """SQLAlchemy model for staff accounts"""
    __tablename__ = "user_accounts"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=False)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class PatientDB(Base):
    """SQLAlchemy model for patients"""
    __tablename__ = "patients"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


@dataclass(frozen=True)
class SignInResult:
    user_id: str
    session_token: str


@dataclass(frozen=True)
class Profile:
    role: str
    name: str


class IdentityService:
    """Authenticates staff and resolves actor references for the audit trail"""

    def __init__(self, database_url: Optional[str] = None,
                 config: Optional[MedRelayConfig] = None):
        self.config = config or get_config()
        self.database_url = database_url or self.config.database_url
        connect_args = {}
        if self.database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(self.database_url, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine)

        Base.metadata.create_all(bind=self.engine)

    # ==================== Registration ====================

    def register_user(self, email: str, password: str, name: str, role: str) -> str:
        """Create a staff account and return its id"""
        email = validate_email(email)
        name = validate_text(name, "name", 256)
        if not password or len(password) < 8:
            raise ValidationError("password must be at least 8 characters", field="password")
        if role not in ActorRoles.STAFF:
            raise ValidationError(f"Unknown role: {role}", field="role")

        user_id = generate_user_id()
        account = UserAccountDB(
            id=user_id,
            email=email,
            password_hash=hash_password(password, rounds=self.config.bcrypt_rounds),
            name=name,
            role=role,
            created_at=utc_now(),
        )
        try:
            with self.SessionLocal() as session:
                session.add(account)
                session.commit()
        except IntegrityError:
            raise ValidationError("email is already registered", field="email")
        except SQLAlchemyError as e:
            logger.error("Failed to register user", error=str(e))
            raise AuthTransientError(reason=str(e))

        logger.info("Registered user", user_id=user_id, role=role)
        return user_id

    def register_patient(self, name: str, patient_id: Optional[str] = None) -> str:
        """Create a patient entry and return its id"""
        name = validate_text(name, "name", 256)
        patient_id = validate_reference(patient_id, "patient_id") if patient_id else generate_patient_id()

        try:
            with self.SessionLocal() as session:
                session.add(PatientDB(id=patient_id, name=name, created_at=utc_now()))
                session.commit()
        except IntegrityError:
            raise ValidationError("patient_id is already registered", field="patient_id")
        except SQLAlchemyError as e:
            logger.error("Failed to register patient", error=str(e))
            raise AuthTransientError(reason=str(e))

        logger.info("Registered patient", patient_id=patient_id)
        return patient_id

    # ==================== Sessions ====================

    def sign_in(self, email: str, password: str) -> SignInResult:
        """
        Check credentials and issue a session token.

        Raises:
            AuthRejected: Unknown email or wrong password
            AuthTransientError: The identity store could not be reached
        """
        email = validate_email(email)
        try:
            with self.SessionLocal() as session:
                account = session.query(UserAccountDB).filter(UserAccountDB.email == email).first()
                if account is not None:
                    session.expunge(account)
        except SQLAlchemyError as e:
            logger.warning("Identity store unavailable during sign-in", error=str(e))
            raise AuthTransientError(reason=str(e))

        if account is None or not verify_password(password or "", account.password_hash):
            logger.warning("Sign-in rejected", email_hash=fingerprint(email))
            raise AuthRejected()

        token = create_session_token(account.id, account.role, account.name, self.config.jwt_secret_key)
        logger.info("User signed in", user_id=account.id)
        return SignInResult(user_id=account.id, session_token=token)

    def fetch_profile(self, user_id: str) -> Profile:
        """Load the role and display name for a signed-in user"""
        if not validate_id(user_id, "user"):
            raise AuthRejected("Profile not found")
        try:
            with self.SessionLocal() as session:
                account = session.get(UserAccountDB, user_id)
                if account is None:
                    raise AuthRejected("Profile not found")
                return Profile(role=account.role, name=account.name)
        except SQLAlchemyError as e:
            logger.warning("Identity store unavailable fetching profile", user_id=user_id, error=str(e))
            raise AuthTransientError(reason=str(e))

    def verify_session(self, token: str) -> ActorRef:
        """Turn a bearer token into the authenticated actor"""
        claims = verify_session_token(token, self.config.jwt_secret_key)
        return ActorRef(id=claims["user_id"], name=claims.get("name") or "", role=claims.get("role"))

    # ==================== Lookup ====================

    def resolve_identities(self, ids: Iterable[str]) -> Dict[str, ActorRef]:
        """Map user and patient ids to actor references; unknown ids are omitted"""
        wanted = {i for i in ids if i}
        if not wanted:
            return {}

        try:
            with self.SessionLocal() as session:
                accounts = session.query(UserAccountDB).filter(UserAccountDB.id.in_(wanted)).all()
                patients = session.query(PatientDB).filter(PatientDB.id.in_(wanted)).all()
                resolved = {a.id: ActorRef(id=a.id, name=a.name, role=a.role) for a in accounts}
                resolved.update({
                    p.id: ActorRef(id=p.id, name=p.name, role=ActorRoles.PATIENT) for p in patients
                })
        except SQLAlchemyError as e:
            logger.warning("Identity store unavailable resolving identities", error=str(e))
            raise AuthTransientError(reason=str(e))

        return resolved

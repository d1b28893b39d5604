"""
JWT utilities for MedRelay
Session token creation and verification
"""

import jwt
from datetime import datetime, timedelta, UTC
from typing import Dict, Any, Optional
import structlog

from ..config import get_config
from ..constants import SERVICE_NAME
from ..exceptions import AuthRejected

logger = structlog.get_logger(__name__)


def create_jwt(payload: Dict[str, Any], secret_key: str,
               algorithm: Optional[str] = None,
               expires_in_minutes: Optional[int] = None) -> str:
    """
    Create a JWT token

    Args:
        payload: Token payload data
        secret_key: Secret key for signing
        algorithm: JWT algorithm (default from config)
        expires_in_minutes: Token expiry (default from config)

    Returns:
        Encoded JWT token string
    """
    config = get_config()
    algorithm = algorithm or config.jwt_algorithm
    expires_in_minutes = expires_in_minutes or config.jwt_expiry_minutes

    now = datetime.now(UTC)
    token_payload = {
        **payload,
        'iat': now,
        'exp': now + timedelta(minutes=expires_in_minutes),
        'iss': SERVICE_NAME,
    }

    token = jwt.encode(token_payload, secret_key, algorithm=algorithm)
    logger.info("Created session token", subject=payload.get('sub'), expires_in=expires_in_minutes)
    return token


def verify_jwt(token: str, secret_key: str,
               algorithm: Optional[str] = None) -> Dict[str, Any]:
    """
    Verify and decode a JWT token

    Raises:
        AuthRejected: If the token is expired, tampered with or malformed
    """
    algorithm = algorithm or get_config().jwt_algorithm

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            issuer=SERVICE_NAME,
            options={
                'verify_signature': True,
                'verify_exp': True,
                'require': ['exp', 'iat', 'sub'],
            }
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Session token expired")
        raise AuthRejected("Session has expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Session token invalid", error=str(e))
        raise AuthRejected("Invalid session token")

    logger.debug("Session token verified", subject=payload.get('sub'))
    return payload


def create_session_token(user_id: str, role: str, name: str, secret_key: str,
                         expires_in_minutes: Optional[int] = None) -> str:
    """Create a session token carrying the actor's identity"""
    payload = {
        'sub': user_id,
        'role': role,
        'name': name,
        'type': 'session',
    }
    return create_jwt(payload, secret_key, expires_in_minutes=expires_in_minutes)


def verify_session_token(token: str, secret_key: str) -> Dict[str, Any]:
    """Verify a session token and return the actor claims"""
    payload = verify_jwt(token, secret_key)

    if payload.get('type') != 'session':
        raise AuthRejected("Not a session token")

    return {
        'user_id': payload['sub'],
        'role': payload.get('role'),
        'name': payload.get('name'),
        'expires_at': payload.get('exp'),
    }


def extract_bearer_token(authorization_header: Optional[str]) -> str:
    """Extract JWT token from Authorization header"""
    if not authorization_header:
        raise AuthRejected("No authorization header")

    if not authorization_header.startswith('Bearer '):
        raise AuthRejected("Invalid authorization header format")

    return authorization_header[7:]  # Remove 'Bearer ' prefix

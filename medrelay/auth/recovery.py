"""
Session recovery for MedRelay
Bounded retry of transient failures while establishing a session
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar
import structlog

from .identity import IdentityService
from ..config import MedRelayConfig, get_config
from ..exceptions import AuthTransientError, StoreUnavailable
from ..utils.validators import validate_retry_parameters

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    AuthTransientError,
    StoreUnavailable,
    ConnectionError,
    TimeoutError,
)


@dataclass(frozen=True)
class Session:
    """An authenticated session"""
    user_id: str
    session_token: str
    role: str
    name: str

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "session_token": self.session_token,
            "role": self.role,
            "name": self.name,
        }


class SessionRecoveryManager:
    """
    Retries session operations that fail transiently.

    Only errors listed in ``transient_errors`` are retried; anything else,
    including rejected credentials and validation errors, propagates on
    the first attempt.
    """

    def __init__(
        self,
        identity: Optional[IdentityService] = None,
        config: Optional[MedRelayConfig] = None,
        transient_errors: Tuple[Type[BaseException], ...] = DEFAULT_TRANSIENT_ERRORS,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.identity = identity
        self.config = config or get_config()
        self.transient_errors = transient_errors
        self.sleep = sleep

    def _parameters(self, max_attempts: Optional[int],
                    backoff_seconds: Optional[float]) -> Tuple[int, float]:
        if max_attempts is None:
            max_attempts = self.config.session_retry_max_attempts
        if backoff_seconds is None:
            backoff_seconds = self.config.session_retry_backoff_seconds
        validate_retry_parameters(max_attempts, backoff_seconds)
        return max_attempts, backoff_seconds

    def with_retry(self, operation: Callable[[], T], max_attempts: Optional[int] = None,
                   backoff_seconds: Optional[float] = None) -> T:
        """
        Invoke ``operation`` up to ``max_attempts`` times.

        Sleeps ``backoff_seconds`` between attempts (not after the last) and
        re-raises the final transient error once attempts are exhausted.
        """
        max_attempts, backoff_seconds = self._parameters(max_attempts, backoff_seconds)

        attempt = 1
        while True:
            try:
                return operation()
            except self.transient_errors as e:
                if attempt >= max_attempts:
                    logger.warning("Retry budget exhausted", attempts=attempt, error=str(e))
                    raise
                logger.info("Transient failure, retrying", attempt=attempt,
                            max_attempts=max_attempts, error=str(e))
            self.sleep(backoff_seconds)
            attempt += 1

    async def with_retry_async(self, operation: Callable[[], Awaitable[T]],
                               max_attempts: Optional[int] = None,
                               backoff_seconds: Optional[float] = None) -> T:
        """Coroutine version of :meth:`with_retry`"""
        max_attempts, backoff_seconds = self._parameters(max_attempts, backoff_seconds)

        attempt = 1
        while True:
            try:
                return await operation()
            except self.transient_errors as e:
                if attempt >= max_attempts:
                    logger.warning("Retry budget exhausted", attempts=attempt, error=str(e))
                    raise
                logger.info("Transient failure, retrying", attempt=attempt,
                            max_attempts=max_attempts, error=str(e))
            await asyncio.sleep(backoff_seconds)
            attempt += 1

    def establish_session(self, email: str, password: str) -> Session:
        """Sign in, then load the profile, each under its own retry budget"""
        if self.identity is None:
            raise RuntimeError("SessionRecoveryManager has no identity service")

        result = self.with_retry(lambda: self.identity.sign_in(email, password))
        profile = self.with_retry(lambda: self.identity.fetch_profile(result.user_id))

        logger.info("Session established", user_id=result.user_id, role=profile.role)
        return Session(
            user_id=result.user_id,
            session_token=result.session_token,
            role=profile.role,
            name=profile.name,
        )

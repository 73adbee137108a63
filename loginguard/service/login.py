from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from loginguard.config import ONE_DAY_MILLIS
from loginguard.logging import get_correlation_id, get_logger, mask_address
from loginguard.service.blacklist import TokenBlacklistService
from loginguard.service.credentials import CredentialGate
from loginguard.service.errors import AuthenticationError, CredentialChangedError, CredentialNotFoundError
from loginguard.service.messaging import MessagingType
from loginguard.service.otp import OtpService
from loginguard.service.revocation_worker import (
    DEFAULT_CONCURRENCY,
    DEFAULT_QUEUE_SIZE,
    RevocationOutcome,
    SessionRevocationWorker,
)
from loginguard.service.tokens import TokenService
from loginguard.storage.models import LoginSession


class SessionStore(Protocol):
    def create_login(self, session: LoginSession) -> LoginSession: ...

    def get_login_by_hash(self, token_hash: str) -> Optional[LoginSession]: ...

    def list_active_logins(self, account_id: int) -> List[LoginSession]: ...

    def revoke_login(self, token_hash: str, revoked_at: datetime) -> bool: ...


@dataclass
class PasswordPhase:
    """First phase: identify the account and ask for a challenge."""

    phone_number: str
    channel: Union[str, MessagingType] = MessagingType.SMS
    locale: Optional[str] = None


@dataclass
class ChallengePhase:
    """Second phase: answer the challenge issued in the first one."""

    mfa_token: str
    verification_code: str


LoginRequest = Union[PasswordPhase, ChallengePhase]


@dataclass
class ChallengeIssued:
    mfa_token: str
    delivery_id: Optional[str] = None


@dataclass
class Authenticated:
    access_token: str
    session: LoginSession

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at


LoginOutcome = Union[ChallengeIssued, Authenticated]


@dataclass
class AuthContext:
    account_id: int
    username: str
    session_hash: str
    expires_at: datetime
    claims: Dict[str, Any]


class LoginService:
    """Two-phase MFA login, logout and single-session enforcement.

    The first phase never yields a token; it only issues a challenge. The
    second phase verifies the challenge, mints a signed token, records a
    session for it and hands sibling-session revocation to the background
    worker. Failures surface as ``ServiceError`` subclasses.
    """

    def __init__(
        self,
        store: SessionStore,
        gate: CredentialGate,
        otp: OtpService,
        tokens: TokenService,
        blacklist: TokenBlacklistService,
        *,
        session_ttl_ms: int = ONE_DAY_MILLIS,
        worker_concurrency: int = DEFAULT_CONCURRENCY,
        worker_queue_size: int = DEFAULT_QUEUE_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.otp = otp
        self.tokens = tokens
        self.blacklist = blacklist
        self.session_ttl = timedelta(milliseconds=session_ttl_ms)
        self._clock = clock
        self.revocation_worker = SessionRevocationWorker(
            self.enforce_single_session,
            concurrency=worker_concurrency,
            queue_size=worker_queue_size,
        )
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @staticmethod
    def hash(access_token: str) -> str:
        return hashlib.sha256(access_token.encode()).hexdigest()

    def find_by_access_token(self, access_token: str) -> Optional[LoginSession]:
        if not access_token:
            return None
        return self.store.get_login_by_hash(self.hash(access_token))

    async def login(self, request: LoginRequest, *, trace_id: Optional[str] = None) -> LoginOutcome:
        if isinstance(request, ChallengePhase):
            return await self._verify_challenge(request, trace_id=trace_id)
        if isinstance(request, PasswordPhase):
            return await self._issue_challenge(request)
        raise TypeError(f"unsupported login request: {type(request).__name__}")

    async def _issue_challenge(self, request: PasswordPhase) -> ChallengeIssued:
        credential = self.gate.resolve(request.phone_number)
        challenge = self.otp.create(credential.username, request.channel)
        delivery_id = await self.otp.send(challenge, request.channel, request.locale)
        self.logger.info(
            "login_challenge_issued",
            account_id=credential.account_id,
            to=mask_address(credential.username),
        )
        return ChallengeIssued(mfa_token=challenge.token, delivery_id=delivery_id)

    async def _verify_challenge(
        self, request: ChallengePhase, *, trace_id: Optional[str]
    ) -> Authenticated:
        challenge = self.otp.verify(request.mfa_token, request.verification_code)
        try:
            credential = self.gate.resolve(challenge.address)
        except CredentialNotFoundError:
            self.logger.warning("login_credential_changed", to=mask_address(challenge.address))
            raise CredentialChangedError("credential changed during login") from None

        issued = self.tokens.issue(credential.account_id, credential.username)
        session = LoginSession.new(
            credential.account_id,
            issued.access_token,
            self.hash(issued.access_token),
            now=issued.issued_at,
            ttl=self.session_ttl,
        )
        self.store.create_login(session)

        trace_id = trace_id or get_correlation_id() or uuid.uuid4().hex
        self.revocation_worker.submit(session, trace_id)
        self.logger.info(
            "login_succeeded",
            account_id=credential.account_id,
            kid=issued.kid,
            trace_id=trace_id,
        )
        return Authenticated(access_token=issued.access_token, session=session)

    async def logout(self, access_token: str) -> Optional[LoginSession]:
        """Revoke the session for a token and blacklist it until it expires.

        Returns None when no session matches. Logging out an already revoked
        session keeps its revocation time and only repeats the blacklist write.
        """
        session = self.find_by_access_token(access_token)
        if session is None:
            return None

        now = self._now()
        if session.revoked:
            # A previous logout may have stopped before the blacklist write
            await self._blacklist_until_expiry(session.access_token, now)
            return session
        if not self.store.revoke_login(session.hash, now):
            # Lost a race with another revocation; report what is stored now
            return self.store.get_login_by_hash(session.hash) or session
        session.revoked_at = now

        ttl = await self._blacklist_until_expiry(session.access_token, now)
        self.logger.info(
            "logout_succeeded",
            account_id=session.account_id,
            blacklist_ttl_seconds=max(0, ttl),
        )
        return session

    async def _blacklist_until_expiry(self, access_token: str, now: datetime) -> int:
        exp = self.tokens.peek_expiry(access_token)
        ttl = exp - int(now.timestamp()) if exp is not None else 0
        if ttl > 0:
            await self.blacklist.add(access_token, ttl)
        return ttl

    async def enforce_single_session(self, session: LoginSession, trace_id: str) -> RevocationOutcome:
        siblings = [
            other
            for other in self.store.list_active_logins(session.account_id)
            if other.hash != session.hash
        ]
        outcome = RevocationOutcome()
        for sibling in siblings:
            outcome.attempted += 1
            try:
                await self.logout(sibling.access_token)
                outcome.revoked += 1
            except Exception as exc:
                outcome.failed += 1
                self.logger.error(
                    "logout_previous_session_failed",
                    trace_id=trace_id,
                    account_id=session.account_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        self.logger.info(
            "logout_previous_sessions",
            trace_id=trace_id,
            account_id=session.account_id,
            additional_logout_count=outcome.revoked,
            attempted=outcome.attempted,
            failed=outcome.failed,
        )
        return outcome

    async def authenticate(self, access_token: str) -> Optional[AuthContext]:
        """Resolve a bearer token to its account, or None if it is not usable."""
        if not access_token:
            return None
        try:
            claims = self.tokens.decode(access_token)
        except AuthenticationError:
            return None
        if await self.blacklist.contains(access_token):
            self.logger.info("auth_token_blacklisted")
            return None
        session = self.find_by_access_token(access_token)
        if session is None or session.revoked:
            return None
        return AuthContext(
            account_id=session.account_id,
            username=str(claims.get("name", "")),
            session_hash=session.hash,
            expires_at=session.expires_at,
            claims=claims,
        )

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import jwt

from loginguard.config import ONE_DAY_MILLIS
from loginguard.logging import get_logger
from loginguard.service.errors import AuthenticationError
from loginguard.service.keys import RSAKeyProvider

ALGORITHM = "RS256"
SUBJECT_TYPE_USER = "USER"


@dataclass
class IssuedToken:
    access_token: str
    kid: str
    jti: str
    issued_at: datetime
    expires_at: datetime


class TokenService:
    """Mints and checks RS256 access tokens.

    Timestamps are whole seconds. Expiry and issued-at are checked against
    the injected clock rather than by PyJWT so that they follow the same
    notion of "now" as the rest of the login flow.
    """

    def __init__(
        self,
        keys: RSAKeyProvider,
        *,
        issuer: str = "loginguard",
        ttl_ms: int = ONE_DAY_MILLIS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.keys = keys
        self.issuer = issuer
        self.ttl_seconds = ttl_ms // 1000
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def issue(self, account_id: int, address: str) -> IssuedToken:
        key = self.keys.signing_key()
        iat = int(self._now().timestamp())
        exp = iat + self.ttl_seconds
        jti = uuid.uuid4().hex
        payload = {
            "sub": str(account_id),
            "name": address,
            "subject_type": SUBJECT_TYPE_USER,
            "iss": self.issuer,
            "jti": jti,
            "iat": iat,
            "exp": exp,
        }
        token = jwt.encode(payload, key.private_key, algorithm=ALGORITHM, headers={"kid": key.id})
        return IssuedToken(
            access_token=token,
            kid=key.id,
            jti=jti,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def decode(self, token: str) -> Dict[str, Any]:
        """Verify signature, issuer and expiry; raise AuthenticationError otherwise."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise AuthenticationError("invalid access token") from exc
        public_key = self.keys.verification_key(header.get("kid") or "")
        if public_key is None:
            self.logger.info("token_unknown_kid", kid=header.get("kid"))
            raise AuthenticationError("invalid access token")
        try:
            claims = jwt.decode(
                token,
                public_key,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["exp", "iat", "sub", "iss", "jti"],
                },
            )
        except jwt.PyJWTError as exc:
            self.logger.info("token_rejected", reason=type(exc).__name__)
            raise AuthenticationError("invalid access token") from exc
        if int(claims["exp"]) <= int(self._now().timestamp()):
            raise AuthenticationError("access token expired")
        return claims

    @staticmethod
    def peek_expiry(token: str) -> Optional[int]:
        """Read ``exp`` without verifying anything; None if the token is unreadable."""
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError:
            return None
        exp = claims.get("exp")
        return int(exp) if isinstance(exp, (int, float)) else None

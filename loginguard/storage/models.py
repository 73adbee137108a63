from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass
class AccountCredential:
    account_id: int
    username: str
    created_at: Optional[datetime] = None


@dataclass
class OtpChallenge:
    token: str
    code: str
    address: str
    expires_at: datetime
    created_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass
class LoginSession:
    """One issued access token, keyed by the digest of that token."""

    hash: str
    account_id: int
    access_token: str
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        account_id: int,
        access_token: str,
        token_hash: str,
        *,
        now: datetime,
        ttl: timedelta,
    ) -> "LoginSession":
        return cls(
            hash=token_hash,
            account_id=account_id,
            access_token=access_token,
            created_at=now,
            expires_at=now + ttl,
        )

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class SigningKey:
    id: str
    private_key: str
    public_key: str
    created_at: datetime
    expires_at: datetime
    algorithm: str = "RS256"

    def can_sign(self, now: datetime) -> bool:
        return self.expires_at > now

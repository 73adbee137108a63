from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from loginguard.logging import get_logger
from loginguard.storage.models import SigningKey


class KeyStore(Protocol):
    def save_key(self, key: SigningKey) -> SigningKey: ...

    def get_key(self, key_id: str) -> Optional[SigningKey]: ...

    def list_keys(self) -> List[SigningKey]: ...

    def list_keys_expiring_before(self, cutoff: datetime, limit: int = 100) -> List[SigningKey]: ...

    def delete_key(self, key_id: str) -> bool: ...


def generate_rsa_keypair(key_bits: int = 2048) -> tuple[str, str]:
    """Return a fresh (private PEM, public PEM) pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


class RSAKeyProvider:
    """Store-backed RS256 key provider with time-based rotation.

    The newest unexpired key signs. Older keys keep verifying until
    ``purge_expired_keys`` removes them, which only happens once every
    token they could have signed has expired.
    """

    def __init__(
        self,
        store: KeyStore,
        *,
        key_bits: int = 2048,
        rotation_days: int = 30,
        token_ttl: timedelta = timedelta(days=1),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.key_bits = key_bits
        self.rotation = timedelta(days=rotation_days)
        self.token_ttl = token_ttl
        self._clock = clock
        self._rotation_lock = threading.Lock()
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _current_key(self, now: datetime) -> Optional[SigningKey]:
        for key in self.store.list_keys():
            if key.can_sign(now):
                return key
        return None

    def signing_key(self) -> SigningKey:
        now = self._now()
        key = self._current_key(now)
        if key is not None:
            return key
        with self._rotation_lock:
            # Another caller may have rotated while we waited
            key = self._current_key(now)
            if key is not None:
                return key
            private_pem, public_pem = generate_rsa_keypair(self.key_bits)
            key = SigningKey(
                id=uuid.uuid4().hex,
                private_key=private_pem,
                public_key=public_pem,
                created_at=now,
                expires_at=now + self.rotation,
            )
            self.store.save_key(key)
            self.logger.info(
                "signing_key_generated",
                kid=key.id,
                key_bits=self.key_bits,
                expires_at=key.expires_at.isoformat(),
            )
            return key

    def verification_key(self, kid: str) -> Optional[str]:
        key = self.store.get_key(kid) if kid else None
        return key.public_key if key else None

    def purge_expired_keys(self, limit: int = 100) -> int:
        cutoff = self._now() - self.token_ttl
        purged = 0
        for key in self.store.list_keys_expiring_before(cutoff, limit=limit):
            if self.store.delete_key(key.id):
                purged += 1
        if purged:
            self.logger.info("signing_keys_purged", count=purged, cutoff=cutoff.isoformat())
        return purged

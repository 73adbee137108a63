from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Protocol

from loginguard.logging import get_logger, mask_address
from loginguard.service.errors import ChallengeNotFoundError, CodeMismatchError
from loginguard.service.messaging import (
    Message,
    MessagingServiceProvider,
    MessagingType,
    render_verification,
)
from loginguard.storage.models import OtpChallenge


class OtpStore(Protocol):
    def save_otp(self, challenge: OtpChallenge) -> OtpChallenge: ...

    def get_otp(self, token: str) -> Optional[OtpChallenge]: ...

    def consume_otp(self, token: str, consumed_at: datetime) -> bool: ...


class OtpService:
    """Creates, dispatches and verifies one-time-password challenges.

    A challenge is a random opaque token plus a numeric code. The token goes
    back to the caller, the code goes to the address over the requested
    channel. Addresses listed as test addresses never receive a message and
    accept any code.
    """

    def __init__(
        self,
        store: OtpStore,
        messaging: MessagingServiceProvider,
        *,
        ttl_seconds: int = 300,
        code_length: int = 6,
        test_addresses: Iterable[str] = (),
        default_locale: str = "en",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.messaging = messaging
        self.ttl = timedelta(seconds=ttl_seconds)
        self.code_length = code_length
        self.test_addresses = frozenset(addr.strip().lower() for addr in test_addresses)
        self.default_locale = default_locale
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def is_test_address(self, address: str) -> bool:
        return address.lower() in self.test_addresses

    def generate_code(self) -> str:
        return "".join(str(secrets.randbelow(10)) for _ in range(self.code_length))

    def create(self, address: str, channel: "str | MessagingType" = MessagingType.SMS) -> OtpChallenge:
        channel_type = MessagingType.parse(channel)
        now = self._now()
        challenge = OtpChallenge(
            token=secrets.token_urlsafe(32),
            code=self.generate_code(),
            address=address,
            expires_at=now + self.ttl,
            created_at=now,
        )
        self.store.save_otp(challenge)
        self.logger.info(
            "otp_created",
            to=mask_address(address),
            channel=channel_type.value,
            expires_at=challenge.expires_at.isoformat(),
        )
        return challenge

    async def send(
        self,
        challenge: OtpChallenge,
        channel: "str | MessagingType" = MessagingType.SMS,
        locale: Optional[str] = None,
    ) -> Optional[str]:
        """Deliver the challenge code; returns the delivery id.

        Test addresses short-circuit to ``None`` before the channel is looked
        up, so they never touch a real sender.
        """
        if self.is_test_address(challenge.address):
            self.logger.info("otp_send_skipped_test_address", to=mask_address(challenge.address))
            return None
        service = self.messaging.get(channel)
        subject, body = render_verification(
            challenge.code, locale, default_locale=self.default_locale
        )
        delivery_id = await service.send(
            Message(recipient=challenge.address, subject=subject, body=body)
        )
        self.logger.info(
            "otp_sent",
            to=mask_address(challenge.address),
            channel=MessagingType.parse(channel).value,
            delivery_id=delivery_id,
        )
        return delivery_id

    def verify(self, token: str, code: str) -> OtpChallenge:
        challenge = self.store.get_otp(token) if token else None
        now = self._now()
        if challenge is None or challenge.consumed or challenge.is_expired(now):
            self.logger.info("otp_verification_failed", reason="expired")
            raise ChallengeNotFoundError("verification code expired")

        if not self.is_test_address(challenge.address) and not hmac.compare_digest(
            challenge.code.encode(), (code or "").encode()
        ):
            self.logger.info("otp_verification_failed", reason="mismatch")
            raise CodeMismatchError("verification code not valid")

        # Compare-and-set: a concurrent verification of the same token loses here
        if not self.store.consume_otp(challenge.token, now):
            self.logger.info("otp_verification_failed", reason="consumed")
            raise ChallengeNotFoundError("verification code expired")
        challenge.consumed_at = now
        self.logger.info("otp_verified", to=mask_address(challenge.address))
        return challenge

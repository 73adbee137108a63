"""Unit tests for the OTP engine.

Covers challenge creation, dispatch through the messaging provider,
test-address bypass, expiry and single-use verification.
"""

from datetime import timedelta

import pytest

from conftest import REAL_PHONE, TEST_PHONE
from loginguard.service.errors import (
    ChallengeNotFoundError,
    CodeMismatchError,
    UnsupportedChannelError,
)


class TestCreate:
    def test_challenge_has_numeric_code_and_ttl(self, otp_service, clock):
        challenge = otp_service.create(REAL_PHONE, "sms")

        assert len(challenge.code) == 6
        assert challenge.code.isdigit()
        assert challenge.expires_at == clock() + timedelta(seconds=300)
        assert len(challenge.token) >= 32

    def test_tokens_are_unique(self, otp_service):
        tokens = {otp_service.create(REAL_PHONE).token for _ in range(20)}
        assert len(tokens) == 20

    def test_challenge_is_persisted(self, otp_service, store):
        challenge = otp_service.create(REAL_PHONE)
        assert store.get_otp(challenge.token).code == challenge.code

    def test_unknown_channel_is_rejected_before_persisting(self, otp_service, store):
        with pytest.raises(UnsupportedChannelError) as exc_info:
            otp_service.create(REAL_PHONE, "PIGEON")

        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "channel_not_supported"
        assert store.otps == {}


class TestSend:
    async def test_sends_localized_message(self, otp_service, recorder):
        challenge = otp_service.create(REAL_PHONE)

        delivery_id = await otp_service.send(challenge, "SMS", "fr-CA")

        assert delivery_id == "msg-1"
        message = recorder.sent[0]
        assert message.recipient == REAL_PHONE
        assert message.subject == "Code de vérification"
        assert challenge.code in message.body

    async def test_test_address_is_never_messaged(self, otp_service, recorder):
        challenge = otp_service.create(TEST_PHONE)

        assert await otp_service.send(challenge, "SMS") is None
        assert recorder.sent == []

    async def test_test_address_match_ignores_case(self, otp_service, recorder):
        challenge = otp_service.create("QA@Example.COM", "EMAIL")

        assert await otp_service.send(challenge, "EMAIL") is None
        assert recorder.sent == []

    async def test_unknown_channel_fails(self, otp_service):
        challenge = otp_service.create(REAL_PHONE)

        with pytest.raises(UnsupportedChannelError):
            await otp_service.send(challenge, "FAX")


class TestVerify:
    def test_correct_code_verifies(self, otp_service):
        challenge = otp_service.create(REAL_PHONE)

        verified = otp_service.verify(challenge.token, challenge.code)

        assert verified.address == REAL_PHONE
        assert verified.consumed

    def test_wrong_code_is_rejected(self, otp_service):
        challenge = otp_service.create(REAL_PHONE)
        wrong = "1" * 6 if challenge.code != "1" * 6 else "2" * 6

        with pytest.raises(CodeMismatchError) as exc_info:
            otp_service.verify(challenge.token, wrong)
        assert exc_info.value.status_code == 409
        assert exc_info.value.error_code == "otp_not_valid"

    def test_wrong_code_does_not_consume(self, otp_service):
        challenge = otp_service.create(REAL_PHONE)
        wrong = "1" * 6 if challenge.code != "1" * 6 else "2" * 6

        with pytest.raises(CodeMismatchError):
            otp_service.verify(challenge.token, wrong)

        assert otp_service.verify(challenge.token, challenge.code).consumed

    def test_test_address_accepts_any_code(self, otp_service):
        challenge = otp_service.create(TEST_PHONE)

        assert otp_service.verify(challenge.token, "000000").address == TEST_PHONE

    def test_unknown_token_looks_expired(self, otp_service):
        with pytest.raises(ChallengeNotFoundError) as exc_info:
            otp_service.verify("no-such-token", "123456")
        assert exc_info.value.status_code == 404
        assert exc_info.value.error_code == "otp_expired"

    def test_verification_at_expiry_still_succeeds(self, otp_service, clock):
        challenge = otp_service.create(REAL_PHONE)
        clock.advance(seconds=300)

        assert otp_service.verify(challenge.token, challenge.code).consumed

    def test_expired_challenge_is_rejected(self, otp_service, clock):
        challenge = otp_service.create(TEST_PHONE)
        clock.advance(milliseconds=300_001)

        with pytest.raises(ChallengeNotFoundError):
            otp_service.verify(challenge.token, challenge.code)

    def test_challenge_is_single_use(self, otp_service):
        challenge = otp_service.create(REAL_PHONE)
        otp_service.verify(challenge.token, challenge.code)

        with pytest.raises(ChallengeNotFoundError):
            otp_service.verify(challenge.token, challenge.code)

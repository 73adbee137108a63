import pytest

from loginguard.service.credentials import CredentialGate, normalize_identifier
from loginguard.service.errors import CredentialNotFoundError


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("  +1 (415) 555-0100 ", "+14155550100"),
        ("+237.670.00.00.01", "+237670000001"),
        ("4155550100", "4155550100"),
        ("  Ray.Sponsible@Example.COM ", "ray.sponsible@example.com"),
    ],
)
def test_normalize_identifier(raw, expected):
    assert normalize_identifier(raw) == expected


class TestCredentialGate:
    def test_resolve_uses_normalized_identifier(self, store):
        store.create_credential(11, "+14155550100")
        gate = CredentialGate(store)

        credential = gate.resolve("+1 415 555 0100")

        assert credential.account_id == 11
        assert credential.username == "+14155550100"

    def test_unknown_identifier_is_not_found(self, store):
        gate = CredentialGate(store)

        with pytest.raises(CredentialNotFoundError) as exc_info:
            gate.resolve("+19999999999")
        assert exc_info.value.status_code == 404
        assert exc_info.value.error_code == "credential_not_found"

    def test_blank_identifier_is_not_found(self, store):
        with pytest.raises(CredentialNotFoundError):
            CredentialGate(store).resolve("   ")

    def test_resolve_reads_store_every_time(self, store):
        gate = CredentialGate(store)
        store.create_credential(3, "+15550001111")
        assert gate.resolve("+15550001111").account_id == 3

        store.delete_credential("+15550001111")

        with pytest.raises(CredentialNotFoundError):
            gate.resolve("+15550001111")

from __future__ import annotations

import re
from typing import Optional, Protocol

from loginguard.logging import get_logger, mask_address
from loginguard.service.errors import CredentialNotFoundError
from loginguard.storage.models import AccountCredential

logger = get_logger(__name__)

_PHONE_SEPARATORS = re.compile(r"[\s\-.()]")


class CredentialStore(Protocol):
    def find_credential_by_username(self, username: str) -> Optional[AccountCredential]: ...


def normalize_identifier(identifier: str) -> str:
    """Canonical form of a login identifier.

    E-mail addresses are lowercased; phone numbers lose separators but keep
    a leading ``+``.
    """
    value = (identifier or "").strip()
    if "@" in value:
        return value.lower()
    return _PHONE_SEPARATORS.sub("", value)


class CredentialGate:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def normalize(self, identifier: str) -> str:
        return normalize_identifier(identifier)

    def resolve(self, identifier: str) -> AccountCredential:
        username = self.normalize(identifier)
        credential = self.store.find_credential_by_username(username) if username else None
        if credential is None:
            logger.info("credential_not_found", identifier=mask_address(username))
            raise CredentialNotFoundError("credential not found")
        return credential

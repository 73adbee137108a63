from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from loginguard.logging import get_logger
from loginguard.storage.errors import ConstraintViolation
from loginguard.storage.models import (
    AccountCredential,
    LoginSession,
    OtpChallenge,
    SigningKey,
)


class MemoryStore:
    """In-memory backing store for credentials, challenges, sessions and keys.

    Every operation runs under a single re-entrant lock so that per-row
    updates (challenge consumption, session revocation) are atomic. When a
    state directory is given the whole store is mirrored to a JSON file after
    each write. The file is the shared copy: another store on the same
    directory (a seeding script, for instance) may rewrite it, so each
    operation first reloads the file when it changed since this store last
    read or wrote it.
    """

    def __init__(
        self,
        state_dir: str | None = None,
        *,
        key_encryption_secret: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.credentials: Dict[str, AccountCredential] = {}
        self.otps: Dict[str, OtpChallenge] = {}
        self.logins: Dict[str, LoginSession] = {}
        self.keys: Dict[str, SigningKey] = {}
        # RLock so that nested helpers can re-acquire within the same thread
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        self._disk_stamp: Optional[tuple] = None
        if self.state_dir:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        self._key_cipher = self._build_key_cipher(key_encryption_secret)
        self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_key_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("KEY_ENCRYPTION_SECRET")
        if not material and self.state_dir:
            secret_path = self.state_dir / ".key_secret"
            try:
                material = secret_path.read_text().strip()
            except FileNotFoundError:
                material = secrets.token_urlsafe(64)
                try:
                    secret_path.write_text(material)
                    os.chmod(secret_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist key encryption secret") from exc
        if not material:
            # Nothing is written to disk, so an ephemeral secret is enough
            material = secrets.token_urlsafe(64)
        try:
            return Fernet(self._derive_cipher_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize key cipher") from exc

    # credentials
    def create_credential(self, account_id: int, username: str) -> AccountCredential:
        with self._data_lock:
            self._sync_from_disk()
            if username in self.credentials:
                raise ConstraintViolation(
                    "credential already exists", {"field": "username"}
                )
            credential = AccountCredential(
                account_id=account_id, username=username, created_at=datetime.now(timezone.utc)
            )
            self.credentials[username] = credential
            self._persist_state()
            return replace(credential)

    def find_credential_by_username(self, username: str) -> Optional[AccountCredential]:
        with self._data_lock:
            self._sync_from_disk()
            credential = self.credentials.get(username)
            return replace(credential) if credential else None

    def delete_credential(self, username: str) -> bool:
        with self._data_lock:
            self._sync_from_disk()
            if self.credentials.pop(username, None) is None:
                return False
            self._persist_state()
            return True

    # otp
    def save_otp(self, challenge: OtpChallenge) -> OtpChallenge:
        with self._data_lock:
            self._sync_from_disk()
            if challenge.token in self.otps:
                raise ConstraintViolation("otp token already exists", {"field": "token"})
            self.otps[challenge.token] = replace(challenge)
            self._persist_state()
            return challenge

    def get_otp(self, token: str) -> Optional[OtpChallenge]:
        with self._data_lock:
            self._sync_from_disk()
            challenge = self.otps.get(token)
            return replace(challenge) if challenge else None

    def consume_otp(self, token: str, consumed_at: datetime) -> bool:
        """Mark a challenge consumed; False if it is missing or was already used."""
        with self._data_lock:
            self._sync_from_disk()
            challenge = self.otps.get(token)
            if not challenge or challenge.consumed_at is not None:
                return False
            challenge.consumed_at = consumed_at
            self._persist_state()
            return True

    # login sessions
    def create_login(self, session: LoginSession) -> LoginSession:
        with self._data_lock:
            self._sync_from_disk()
            if session.hash in self.logins:
                raise ConstraintViolation("session already exists", {"field": "hash"})
            self.logins[session.hash] = replace(session)
            self._persist_state()
            return session

    def get_login_by_hash(self, token_hash: str) -> Optional[LoginSession]:
        with self._data_lock:
            self._sync_from_disk()
            session = self.logins.get(token_hash)
            return replace(session) if session else None

    def list_active_logins(self, account_id: int) -> List[LoginSession]:
        with self._data_lock:
            self._sync_from_disk()
            active = [
                replace(sess)
                for sess in self.logins.values()
                if sess.account_id == account_id and sess.revoked_at is None
            ]
        return sorted(active, key=lambda sess: sess.created_at)

    def revoke_login(self, token_hash: str, revoked_at: datetime) -> bool:
        """Set the revocation timestamp once; False if missing or already revoked."""
        with self._data_lock:
            self._sync_from_disk()
            session = self.logins.get(token_hash)
            if not session or session.revoked_at is not None:
                return False
            session.revoked_at = revoked_at
            self._persist_state()
            return True

    # signing keys
    def save_key(self, key: SigningKey) -> SigningKey:
        with self._data_lock:
            self._sync_from_disk()
            if key.id in self.keys:
                raise ConstraintViolation("signing key already exists", {"field": "id"})
            self.keys[key.id] = replace(key)
            self._persist_state()
            return key

    def get_key(self, key_id: str) -> Optional[SigningKey]:
        with self._data_lock:
            self._sync_from_disk()
            key = self.keys.get(key_id)
            return replace(key) if key else None

    def list_keys(self) -> List[SigningKey]:
        """All keys, newest first."""
        with self._data_lock:
            self._sync_from_disk()
            keys = [replace(key) for key in self.keys.values()]
        return sorted(keys, key=lambda key: key.created_at, reverse=True)

    def list_keys_expiring_before(self, cutoff: datetime, limit: int = 100) -> List[SigningKey]:
        with self._data_lock:
            self._sync_from_disk()
            expired = [replace(key) for key in self.keys.values() if key.expires_at < cutoff]
        return sorted(expired, key=lambda key: key.expires_at)[:limit]

    def delete_key(self, key_id: str) -> bool:
        with self._data_lock:
            self._sync_from_disk()
            if self.keys.pop(key_id, None) is None:
                return False
            self._persist_state()
            return True

    # persistence
    def _state_path(self) -> Optional[Path]:
        if not self.state_dir:
            return None
        return self.state_dir / "loginguard_state.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _encrypt_private_key(self, pem: str) -> str:
        return self._key_cipher.encrypt(pem.encode()).decode()

    def _decrypt_private_key(self, token: str) -> str:
        try:
            return self._key_cipher.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise RuntimeError("signing key cannot be decrypted with the configured secret") from exc

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "credentials": [
                {
                    "account_id": cred.account_id,
                    "username": cred.username,
                    "created_at": self._serialize_datetime(cred.created_at),
                }
                for cred in self.credentials.values()
            ],
            "otps": [
                {
                    "token": otp.token,
                    "code": otp.code,
                    "address": otp.address,
                    "expires_at": self._serialize_datetime(otp.expires_at),
                    "created_at": self._serialize_datetime(otp.created_at),
                    "consumed_at": self._serialize_datetime(otp.consumed_at),
                }
                for otp in self.otps.values()
            ],
            "logins": [
                {
                    "hash": sess.hash,
                    "account_id": sess.account_id,
                    "access_token": sess.access_token,
                    "created_at": self._serialize_datetime(sess.created_at),
                    "expires_at": self._serialize_datetime(sess.expires_at),
                    "revoked_at": self._serialize_datetime(sess.revoked_at),
                }
                for sess in self.logins.values()
            ],
            "keys": [
                {
                    "id": key.id,
                    "private_key": self._encrypt_private_key(key.private_key),
                    "public_key": key.public_key,
                    "algorithm": key.algorithm,
                    "created_at": self._serialize_datetime(key.created_at),
                    "expires_at": self._serialize_datetime(key.expires_at),
                }
                for key in self.keys.values()
            ],
        }
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
            self._disk_stamp = self._file_stamp(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    @staticmethod
    def _file_stamp(path: Path) -> tuple:
        stat = path.stat()
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def _sync_from_disk(self) -> None:
        path = self._state_path()
        if path is None:
            return
        try:
            stamp = self._file_stamp(path)
        except FileNotFoundError:
            return
        if stamp != self._disk_stamp:
            self._load_state()

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            stamp = self._file_stamp(path)
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self._disk_stamp = stamp
        self.credentials = {
            entry["username"]: AccountCredential(
                account_id=entry["account_id"],
                username=entry["username"],
                created_at=self._deserialize_datetime(entry.get("created_at")),
            )
            for entry in data.get("credentials", [])
        }
        self.otps = {
            entry["token"]: OtpChallenge(
                token=entry["token"],
                code=entry["code"],
                address=entry["address"],
                expires_at=self._deserialize_datetime(entry["expires_at"]),
                created_at=self._deserialize_datetime(entry.get("created_at")),
                consumed_at=self._deserialize_datetime(entry.get("consumed_at")),
            )
            for entry in data.get("otps", [])
        }
        self.logins = {
            entry["hash"]: LoginSession(
                hash=entry["hash"],
                account_id=entry["account_id"],
                access_token=entry["access_token"],
                created_at=self._deserialize_datetime(entry["created_at"]),
                expires_at=self._deserialize_datetime(entry["expires_at"]),
                revoked_at=self._deserialize_datetime(entry.get("revoked_at")),
            )
            for entry in data.get("logins", [])
        }
        self.keys = {
            entry["id"]: SigningKey(
                id=entry["id"],
                private_key=self._decrypt_private_key(entry["private_key"]),
                public_key=entry["public_key"],
                algorithm=entry.get("algorithm", "RS256"),
                created_at=self._deserialize_datetime(entry["created_at"]),
                expires_at=self._deserialize_datetime(entry["expires_at"]),
            )
            for entry in data.get("keys", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            credentials=len(self.credentials),
            sessions=len(self.logins),
            keys=len(self.keys),
        )
        return True

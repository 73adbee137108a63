import importlib.util
from datetime import datetime, timedelta, timezone
from pathlib import Path

from loginguard.storage.memory import MemoryStore
from loginguard.storage.models import SigningKey

SCRIPTS = Path(__file__).resolve().parent.parent / "scripts"


def _load(name):
    spec = importlib.util.spec_from_file_location(name, SCRIPTS / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_create_credential_normalizes_and_is_idempotent(tmp_path, monkeypatch):
    monkeypatch.setenv("KEY_ENCRYPTION_SECRET", "script-secret")
    script = _load("create_credential")

    first = script.create_credential(9, "+1 (415) 555-0199", str(tmp_path))
    second = script.create_credential(10, "+14155550199", str(tmp_path))

    assert first["status"] == "created"
    assert first["username"] == "+14155550199"
    assert second == {"account_id": 9, "username": "+14155550199", "status": "exists"}
    assert MemoryStore(str(tmp_path)).find_credential_by_username("+14155550199").account_id == 9


def test_purge_keys_removes_only_stale_keys(tmp_path, monkeypatch):
    monkeypatch.setenv("KEY_ENCRYPTION_SECRET", "script-secret")
    store = MemoryStore(str(tmp_path))
    now = datetime.now(timezone.utc)
    store.save_key(
        SigningKey(
            id="stale",
            private_key="pem",
            public_key="pub",
            created_at=now - timedelta(days=40),
            expires_at=now - timedelta(days=10),
        )
    )
    store.save_key(
        SigningKey(
            id="recent",
            private_key="pem",
            public_key="pub",
            created_at=now - timedelta(days=30),
            expires_at=now - timedelta(hours=1),
        )
    )

    purged = _load("purge_keys").purge_keys(str(tmp_path), limit=100)

    assert purged == 1
    remaining = MemoryStore(str(tmp_path))
    assert remaining.get_key("stale") is None
    assert remaining.get_key("recent") is not None

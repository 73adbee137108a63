"""Integration tests for the login API.

Runs the full two-phase flow through FastAPI, including the error
envelope, logout and single-session enforcement.
"""

import jwt
import pytest
from fastapi.testclient import TestClient

from conftest import REAL_PHONE, TEST_PHONE
from loginguard import app as app_module
from loginguard.service.runtime import get_runtime


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def account():
    return get_runtime().store.create_credential(501, TEST_PHONE)


def _request_challenge(client, phone=TEST_PHONE, **extra):
    return client.post("/v1/auth/login", json={"phone_number": phone, **extra})


def _login(client, phone=TEST_PHONE, code="000000"):
    first = _request_challenge(client, phone)
    mfa_token = first.json()["error"]["details"]["mfa_token"]
    return client.post(
        "/v1/auth/login",
        json={"phone_number": phone, "mfa_token": mfa_token, "verification_code": code},
    )


def _drain(client):
    client.portal.call(get_runtime().login.revocation_worker.drain)


class TestLoginFlow:
    def test_first_phase_answers_mfa_required(self, client, account):
        resp = _request_challenge(client)

        assert resp.status_code == 403
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "mfa_required"
        assert body["error"]["details"]["mfa_token"]

    def test_second_phase_returns_token(self, client, account):
        resp = _login(client)

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["token_type"] == "Bearer"
        assert data["account_id"] == 501
        assert data["access_token"].count(".") == 2

    def test_unknown_phone_is_404(self, client):
        resp = _request_challenge(client, "+19998887777")

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "credential_not_found"

    def test_unknown_channel_is_400(self, client, account):
        resp = _request_challenge(client, channel="FAX")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "channel_not_supported"

    def test_missing_phone_is_400(self, client):
        resp = client.post("/v1/auth/login", json={})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_wrong_code_is_409(self, client):
        get_runtime().store.create_credential(777, REAL_PHONE)
        first = _request_challenge(client, REAL_PHONE)
        mfa_token = first.json()["error"]["details"]["mfa_token"]
        code = get_runtime().store.get_otp(mfa_token).code
        wrong = "1" * 6 if code != "1" * 6 else "2" * 6

        resp = client.post(
            "/v1/auth/login",
            json={"phone_number": REAL_PHONE, "mfa_token": mfa_token, "verification_code": wrong},
        )

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "otp_not_valid"

    def test_unknown_mfa_token_is_404(self, client, account):
        resp = client.post(
            "/v1/auth/login",
            json={"phone_number": TEST_PHONE, "mfa_token": "bogus", "verification_code": "000000"},
        )

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "otp_expired"

    def test_request_id_is_echoed(self, client, account):
        resp = client.post(
            "/v1/auth/login",
            json={"phone_number": TEST_PHONE},
            headers={"X-Request-ID": "req-123"},
        )

        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"


class TestSessionEndpoints:
    def test_me_and_logout(self, client, account):
        token = _login(client).json()["data"]["access_token"]
        headers = {"Authorization": f"Bearer {token}"}

        me = client.get("/v1/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["data"]["account_id"] == 501
        assert me.json()["data"]["username"] == TEST_PHONE

        logout = client.post("/v1/auth/logout", headers=headers)
        assert logout.status_code == 200
        assert logout.json()["data"]["revoked"] is True
        assert logout.json()["data"]["account_id"] == 501

        after = client.get("/v1/auth/me", headers=headers)
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "unauthorized"

    def test_logout_unknown_token(self, client):
        resp = client.post("/v1/auth/logout", headers={"Authorization": "Bearer nope"})

        assert resp.status_code == 200
        assert resp.json()["data"] == {"revoked": False, "account_id": None, "revoked_at": None}

    def test_logout_requires_bearer(self, client):
        assert client.post("/v1/auth/logout").status_code == 401

    def test_new_login_revokes_previous_session(self, client, account):
        old = _login(client).json()["data"]["access_token"]
        _drain(client)
        new = _login(client).json()["data"]["access_token"]
        _drain(client)

        assert client.get("/v1/auth/me", headers={"Authorization": f"Bearer {old}"}).status_code == 401
        assert client.get("/v1/auth/me", headers={"Authorization": f"Bearer {new}"}).status_code == 200

    def test_public_key_lookup(self, client, account):
        token = _login(client).json()["data"]["access_token"]
        kid = jwt.get_unverified_header(token)["kid"]
        resp = client.get(f"/v1/auth/keys/{kid}")

        assert resp.status_code == 200
        pem = resp.json()["data"]["public_key"]
        assert pem.startswith("-----BEGIN PUBLIC KEY-----")
        claims = jwt.decode(token, pem, algorithms=["RS256"], issuer="loginguard")
        assert claims["sub"] == "501"

        assert client.get("/v1/auth/keys/unknown").status_code == 404


def test_healthz(client):
    resp = client.get("/healthz")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"

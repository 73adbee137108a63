from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from loginguard.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MeResponse,
    PublicKeyResponse,
)
from loginguard.logging import get_correlation_id, get_logger
from loginguard.service.errors import (
    AuthenticationError,
    BadRequestError,
    MfaRequiredError,
    NotFoundError,
)
from loginguard.service.login import (
    AuthContext,
    Authenticated,
    ChallengePhase,
    PasswordPhase,
)
from loginguard.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        return ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.login.authenticate(_bearer_token(authorization))
    if not ctx:
        raise AuthenticationError("invalid access token")
    return ctx


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Run one phase of the MFA login.

    Without ``mfa_token`` a challenge is sent and the call fails with 403
    ``mfa_required`` carrying the token in ``details.mfa_token``. With it,
    the code is verified and an access token returned.
    """
    runtime = get_runtime()
    if body.is_challenge_phase:
        request = ChallengePhase(
            mfa_token=body.mfa_token.strip(),
            verification_code=(body.verification_code or "").strip(),
        )
    else:
        if not body.phone_number.strip():
            raise BadRequestError("phone_number is required", detail={"field": "phone_number"})
        request = PasswordPhase(
            phone_number=body.phone_number,
            channel=body.channel,
            locale=body.locale,
        )

    outcome = await runtime.login.login(request, trace_id=get_correlation_id())
    if not isinstance(outcome, Authenticated):
        raise MfaRequiredError(
            "verification required",
            detail={"mfa_token": outcome.mfa_token},
        )
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=outcome.access_token,
            account_id=outcome.session.account_id,
            expires_at=outcome.expires_at,
        ).model_dump(mode="json"),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    session = await runtime.login.logout(token)
    if session is None:
        return Envelope(status="ok", data=LogoutResponse(revoked=False).model_dump(mode="json"))
    return Envelope(
        status="ok",
        data=LogoutResponse(
            revoked=True,
            account_id=session.account_id,
            revoked_at=session.revoked_at,
        ).model_dump(mode="json"),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=MeResponse(
            account_id=principal.account_id,
            username=principal.username,
            expires_at=principal.expires_at,
        ).model_dump(mode="json"),
    )


@router.get("/auth/keys/{kid}", response_model=Envelope, tags=["auth"])
async def public_key(kid: str):
    runtime = get_runtime()
    pem = runtime.keys.verification_key(kid)
    if pem is None:
        raise NotFoundError("signing key not found", detail={"kid": kid})
    return Envelope(
        status="ok",
        data=PublicKeyResponse(kid=kid, public_key=pem).model_dump(mode="json"),
    )

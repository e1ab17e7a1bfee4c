from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Header

from consentmanager.api.schemas import (
    Envelope,
    LogoutRequestBody,
    OtpMetaResponse,
    OtpPermitRequestBody,
    OtpVerificationRequestBody,
    OtpVerificationResponseBody,
    SessionRequestBody,
    SessionResponse,
)
from consentmanager.service.errors import AuthenticationError
from consentmanager.service.runtime import get_runtime
from consentmanager.service.session import (
    LogoutRequest,
    OtpPermitRequest,
    OtpVerificationRequest,
    SessionRequest,
)
from consentmanager.storage.models import Session

router = APIRouter(prefix="/v1")


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _session_response(session: Session) -> SessionResponse:
    return SessionResponse(**asdict(session))


@router.post("/sessions", response_model=Envelope, tags=["sessions"])
async def create_session(body: SessionRequestBody):
    """Log in with username and password.

    Raises:
        401: If credentials are missing or invalid, or the account is locked
    """
    runtime = get_runtime()
    session = await runtime.sessions.for_new(
        SessionRequest(username=body.username, password=body.password)
    )
    return Envelope(status="ok", data=_session_response(session))


@router.post("/logout", response_model=Envelope, tags=["sessions"])
async def logout(
    body: LogoutRequestBody,
    authorization: Optional[str] = Header(None),
):
    access_token = _extract_bearer(authorization)
    if not access_token:
        raise AuthenticationError("missing bearer token")
    runtime = get_runtime()
    await runtime.sessions.logout(
        access_token, LogoutRequest(refresh_token=body.refresh_token)
    )
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/otpsession/verify", response_model=Envelope, tags=["otp"])
async def send_otp(body: OtpVerificationRequestBody):
    """Send an OTP to the user's registered phone.

    The returned session_id must be presented with the code to
    ``/otpsession/permit`` before ``meta.communication_expiry`` seconds pass.
    """
    runtime = get_runtime()
    response = await runtime.sessions.send_otp(
        OtpVerificationRequest(username=body.username)
    )
    return Envelope(
        status="ok",
        data=OtpVerificationResponseBody(
            session_id=response.session_id,
            meta=OtpMetaResponse(**asdict(response.meta)),
        ),
    )


@router.post("/otpsession/permit", response_model=Envelope, tags=["otp"])
async def validate_otp(body: OtpPermitRequestBody):
    runtime = get_runtime()
    session = await runtime.sessions.validate_otp(
        OtpPermitRequest(
            username=body.username, session_id=body.session_id, otp=body.otp
        )
    )
    return Envelope(status="ok", data=_session_response(session))

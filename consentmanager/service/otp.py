from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from consentmanager.logging import get_logger, mask_phone
from consentmanager.service.errors import InvalidOtpError, UpstreamServiceError

logger = get_logger(__name__)

MOBILE = "MOBILE"


@dataclass
class OtpCommunicationData:
    mode: str
    value: str


@dataclass
class OtpRequest:
    session_id: str
    communication: OtpCommunicationData

    def to_payload(self) -> dict:
        return {
            "sessionId": self.session_id,
            "communication": {
                "mode": self.communication.mode,
                "value": self.communication.value,
            },
        }


class OtpServiceClient:
    """Client for the external OTP service.

    The service generates the code, delivers it over the requested channel
    and later verifies it against the same session id. Delivery is
    fire-and-forget from our side: a 2xx only means the request was
    accepted.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
        )

    async def send(self, request: OtpRequest) -> None:
        try:
            async with self._client() as client:
                response = await client.post("/otp", json=request.to_payload())
        except httpx.HTTPError as exc:
            logger.error(
                "otp_send_transport_failed",
                session_id=request.session_id,
                error=str(exc),
            )
            raise UpstreamServiceError("otp service unavailable") from exc

        if response.is_error:
            logger.error(
                "otp_send_rejected",
                session_id=request.session_id,
                status_code=response.status_code,
            )
            raise UpstreamServiceError(
                "otp service rejected request",
                detail={"status_code": response.status_code},
            )
        logger.info(
            "otp_sent",
            session_id=request.session_id,
            mode=request.communication.mode,
            hint=mask_phone(request.communication.value),
        )

    async def verify(self, session_id: str, otp: str) -> None:
        """Check ``otp`` against the code issued for ``session_id``.

        Raises InvalidOtpError when the service rejects the code and
        UpstreamServiceError for anything else that is not a 2xx.
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    f"/otp/{session_id}/verify", json={"value": otp}
                )
        except httpx.HTTPError as exc:
            logger.error(
                "otp_verify_transport_failed", session_id=session_id, error=str(exc)
            )
            raise UpstreamServiceError("otp service unavailable") from exc

        if response.status_code in (400, 401, 403):
            logger.warning(
                "otp_verify_rejected",
                session_id=session_id,
                status_code=response.status_code,
            )
            raise InvalidOtpError()
        if response.is_error:
            logger.error(
                "otp_verify_failed",
                session_id=session_id,
                status_code=response.status_code,
            )
            raise UpstreamServiceError(
                "otp service rejected request",
                detail={"status_code": response.status_code},
            )

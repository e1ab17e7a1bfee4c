from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Optional

from consentmanager.config import Settings
from consentmanager.logging import get_logger, mask_phone
from consentmanager.service.errors import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    InvalidPasswordError,
    InvalidUsernameError,
    NotFoundError,
    ServerError,
)
from consentmanager.service.lockout import LockedUserService
from consentmanager.service.otp import (
    MOBILE,
    OtpCommunicationData,
    OtpRequest,
    OtpServiceClient,
)
from consentmanager.service.tokens import TokenService
from consentmanager.service.users import UserDirectory
from consentmanager.storage.cache import CacheAdapter
from consentmanager.storage.models import Session

logger = get_logger(__name__)


@dataclass
class SessionRequest:
    username: Optional[str]
    password: Optional[str]


@dataclass
class LogoutRequest:
    refresh_token: str


@dataclass
class OtpVerificationRequest:
    username: str


@dataclass
class OtpPermitRequest:
    username: Optional[str]
    session_id: str
    otp: Optional[str]


@dataclass
class OtpMeta:
    communication_expiry: str
    communication_hint: str
    communication_medium: str = MOBILE


@dataclass
class OtpVerificationResponse:
    session_id: str
    meta: OtpMeta


class SessionService:
    """Session establishment, logout and OTP login.

    Failures are normalised so callers cannot tell an unknown username from
    a wrong password, or an expired OTP session from one issued to someone
    else.
    """

    def __init__(
        self,
        token_service: TokenService,
        blacklisted_tokens: CacheAdapter,
        unverified_sessions: CacheAdapter,
        locked_user_service: LockedUserService,
        user_directory: UserDirectory,
        otp_client: OtpServiceClient,
        settings: Settings,
    ) -> None:
        self.token_service = token_service
        self.blacklisted_tokens = blacklisted_tokens
        self.unverified_sessions = unverified_sessions
        self.locked_user_service = locked_user_service
        self.user_directory = user_directory
        self.otp_client = otp_client
        self.settings = settings

    async def for_new(self, request: SessionRequest) -> Session:
        if not request.username or not request.password:
            raise AuthenticationError("username and password are required")

        username = request.username
        if await self.locked_user_service.is_locked(username):
            logger.warning("login_rejected_locked", username=username)
            raise AccountLockedError()

        try:
            session = await self.token_service.token_for_user(username, request.password)
        except (InvalidPasswordError, InvalidUsernameError) as exc:
            await self._record_failed_login(username)
            logger.warning(
                "login_failed", username=username, reason=type(exc).__name__
            )
            raise AuthenticationError("invalid username or password") from exc

        await self.locked_user_service.remove_user(username)
        return session

    async def _record_failed_login(self, username: str) -> None:
        locked_user = await self.locked_user_service.user_for(username)
        if locked_user is None:
            await self.locked_user_service.create_user(username)
        else:
            await self.locked_user_service.update_user(locked_user)

    async def logout(self, access_token: str, logout_request: LogoutRequest) -> None:
        await asyncio.gather(
            self.blacklisted_tokens.put(self.settings.blacklist_key(access_token), ""),
            self.token_service.revoke(logout_request.refresh_token),
        )
        logger.info("logout_completed")

    async def send_otp(self, request: OtpVerificationRequest) -> OtpVerificationResponse:
        user = await self.user_directory.user_with(request.username)
        if user is None:
            raise NotFoundError("user not found")

        session_id = str(uuid.uuid4())
        otp_request = OtpRequest(
            session_id=session_id,
            communication=OtpCommunicationData(mode=MOBILE, value=user.phone),
        )
        try:
            await self.otp_client.send(otp_request)
        except Exception as exc:
            logger.error(
                "otp_dispatch_failed",
                username=request.username,
                session_id=session_id,
                error_type=type(exc).__name__,
            )
            raise ServerError("unknown error occurred") from exc

        expiry_seconds = self.settings.otp_expiry_seconds
        await self.unverified_sessions.put(
            session_id, request.username, ttl_seconds=expiry_seconds
        )
        return OtpVerificationResponse(
            session_id=session_id,
            meta=OtpMeta(
                communication_expiry=str(expiry_seconds),
                communication_hint=mask_phone(user.phone),
            ),
        )

    async def validate_otp(self, request: OtpPermitRequest) -> Session:
        username = await self.unverified_sessions.get(request.session_id)
        # Unknown and mismatched sessions are deliberately indistinguishable
        if username is None or username != request.username:
            logger.warning("otp_session_invalid", session_id=request.session_id)
            raise BadRequestError("invalid session")

        session = await self.token_service.token_for_otp_user(
            username, request.session_id, request.otp
        )
        await self.unverified_sessions.invalidate(request.session_id)
        return session

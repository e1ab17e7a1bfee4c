from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from consentmanager.config import Settings
from consentmanager.logging import get_logger
from consentmanager.service.errors import (
    AuthenticationError,
    InvalidPasswordError,
    InvalidUsernameError,
)
from consentmanager.service.otp import OtpServiceClient
from consentmanager.storage.cache import CacheAdapter
from consentmanager.storage.models import Session, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def get_user(self, username: str) -> Optional[User]: ...

    def save_password(
        self, username: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, username: str) -> Optional[tuple[str, str]]: ...


class TokenService:
    """Issues and revokes HS256 bearer tokens.

    Two grants are supported: username/password checked against the stored
    argon2 hash, and OTP where the code is verified by the OTP service for
    the session it was issued under. Revoked refresh tokens are remembered
    by jti in ``revoked_refresh_tokens`` until they would have expired.
    """

    def __init__(
        self,
        store: CredentialStore,
        revoked_refresh_tokens: CacheAdapter,
        otp_client: OtpServiceClient,
        settings: Settings,
    ) -> None:
        self.store = store
        self.revoked_refresh_tokens = revoked_refresh_tokens
        self.otp_client = otp_client
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def token_for_user(self, username: str, password: str) -> Session:
        user = await asyncio.to_thread(self.store.get_user, username)
        if not user:
            # Spend a hash verification so unknown usernames take as long
            await asyncio.to_thread(self._verify_dummy, password)
            raise InvalidUsernameError()
        if not await asyncio.to_thread(self.verify_password, username, password):
            raise InvalidPasswordError()
        logger.info("password_grant_issued", username=username)
        return self._issue_tokens(user, grant="password")

    async def token_for_otp_user(
        self, username: str, session_id: str, otp: str
    ) -> Session:
        await self.otp_client.verify(session_id, otp)
        user = await asyncio.to_thread(self.store.get_user, username)
        if not user:
            raise InvalidUsernameError()
        logger.info("otp_grant_issued", username=username, session_id=session_id)
        return self._issue_tokens(user, grant="otp")

    async def revoke(self, refresh_token: str) -> None:
        payload = self._decode_jwt(refresh_token)
        if not payload or payload.get("token_type") != "refresh":
            raise AuthenticationError("invalid refresh token")
        jti = payload.get("jti")
        if not jti:
            raise AuthenticationError("invalid refresh token")
        ttl = max(int(float(payload["exp"]) - self._now().timestamp()), 1)
        await self.revoked_refresh_tokens.put(jti, "1", ttl_seconds=ttl)
        logger.info("refresh_token_revoked", username=payload.get("sub"), jti=jti)

    async def is_refresh_revoked(self, jti: str) -> bool:
        return await self.revoked_refresh_tokens.get(jti) is not None

    def decode_token(self, token: str) -> Optional[dict[str, Any]]:
        """Validate signature, issuer, audience and expiry; None if invalid."""
        return self._decode_jwt(token)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _verify_dummy(self, password: str) -> bool:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            return self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            return False

    def verify_password(self, username: str, password: str) -> bool:
        """Check ``password`` against the stored hash. Blocks; run off the loop."""
        record = self.store.get_password_record(username)
        if not record:
            logger.warning("password_record_missing", username=username)
            self._verify_dummy(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", username=username, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", username=username)
            return False

    def save_password(self, username: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(username, pwd_hash, algo)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # Compare bytes; str comparison rejects non-ASCII input with TypeError
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def _issue_tokens(self, user: User, *, grant: str) -> Session:
        now = self._now()
        access_ttl = self.settings.access_token_ttl_minutes * 60
        refresh_ttl = self.settings.refresh_token_ttl_minutes * 60
        base_claims = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.username,
            "grant": grant,
            "iat": int(now.timestamp()),
        }
        access_payload = {
            **base_claims,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "exp": int((now + timedelta(seconds=access_ttl)).timestamp()),
        }
        refresh_payload = {
            **base_claims,
            "token_type": "refresh",
            "jti": str(uuid.uuid4()),
            "exp": int((now + timedelta(seconds=refresh_ttl)).timestamp()),
        }
        return Session(
            access_token=self._encode_jwt(access_payload),
            refresh_token=self._encode_jwt(refresh_payload),
            expires_in=access_ttl,
            refresh_expires_in=refresh_ttl,
        )

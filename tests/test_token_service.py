"""Unit tests for TokenService.

Tests for:
- Password hashing and verification
- JWT issuance and validation
- OTP grant delegation
- Refresh token revocation
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from consentmanager.config import Settings
from consentmanager.service.errors import (
    AuthenticationError,
    InvalidOtpError,
    InvalidPasswordError,
    InvalidUsernameError,
)
from consentmanager.service.tokens import PASSWORD_ALGO, TokenService
from consentmanager.storage.cache import MemoryCacheAdapter
from consentmanager.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def otp_client():
    client = MagicMock()
    client.verify = AsyncMock()
    return client


@pytest.fixture
def revoked_refresh_tokens():
    return MemoryCacheAdapter(prefix="refresh_revoked:", expiry_seconds=60)


@pytest.fixture
def token_service(memory_store, revoked_refresh_tokens, otp_client, settings):
    return TokenService(memory_store, revoked_refresh_tokens, otp_client, settings)


@pytest.fixture
def test_user(memory_store, token_service):
    user = memory_store.create_user("alice", "9876543210")
    token_service.save_password("alice", "TestPassword123!")
    return user


class TestPasswordHashing:
    def test_hash_uses_argon2id(self, token_service):
        pwd_hash, algo = token_service._hash_password("TestPassword123!")

        assert algo == PASSWORD_ALGO
        assert pwd_hash.startswith("$argon2id$")
        assert "TestPassword123!" not in pwd_hash

    def test_same_password_produces_different_hashes(self, token_service):
        hash1, _ = token_service._hash_password("TestPassword123!")
        hash2, _ = token_service._hash_password("TestPassword123!")

        assert hash1 != hash2

    def test_verify_password(self, token_service, test_user):
        assert token_service.verify_password("alice", "TestPassword123!") is True
        assert token_service.verify_password("alice", "WrongPassword") is False

    def test_verify_without_record(self, token_service, memory_store):
        memory_store.create_user("bob", "123")

        assert token_service.verify_password("bob", "anything") is False

    def test_verify_rejects_foreign_algorithm(self, token_service, memory_store, test_user):
        memory_store.save_password("alice", "plain", "plaintext")

        assert token_service.verify_password("alice", "plain") is False


class TestPasswordGrant:
    async def test_unknown_user(self, token_service):
        with pytest.raises(InvalidUsernameError):
            await token_service.token_for_user("ghost", "TestPassword123!")

    async def test_wrong_password(self, token_service, test_user):
        with pytest.raises(InvalidPasswordError):
            await token_service.token_for_user("alice", "nope")

    async def test_issues_access_and_refresh(self, token_service, test_user, settings):
        session = await token_service.token_for_user("alice", "TestPassword123!")

        assert session.token_type == "bearer"
        assert session.expires_in == 15 * 60
        assert session.refresh_expires_in == 24 * 60 * 60

        access = token_service.decode_token(session.access_token)
        refresh = token_service.decode_token(session.refresh_token)
        assert access["sub"] == "alice"
        assert access["token_type"] == "access"
        assert access["grant"] == "password"
        assert access["iss"] == settings.jwt_issuer
        assert access["aud"] == settings.jwt_audience
        assert refresh["token_type"] == "refresh"
        assert access["jti"] != refresh["jti"]

    async def test_unknown_user_still_verifies_a_hash(self, token_service):
        hasher = MagicMock(wraps=token_service._pwd_hasher)
        token_service._pwd_hasher = hasher

        with pytest.raises(InvalidUsernameError):
            await token_service.token_for_user("ghost", "TestPassword123!")

        hasher.verify.assert_called_once()
        assert hasher.verify.call_args.args[1] == "TestPassword123!"

    async def test_store_and_hash_run_off_the_event_loop(self, token_service, test_user):
        calls = []
        real_to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            calls.append(getattr(func, "__name__", repr(func)))
            return await real_to_thread(func, *args, **kwargs)

        with patch("consentmanager.service.tokens.asyncio.to_thread", recording_to_thread):
            await token_service.token_for_user("alice", "TestPassword123!")

        assert calls == ["get_user", "verify_password"]


class TestOtpGrant:
    async def test_verifies_then_issues(self, token_service, test_user, otp_client):
        session = await token_service.token_for_otp_user("alice", "sid-1", "123456")

        otp_client.verify.assert_awaited_once_with("sid-1", "123456")
        assert token_service.decode_token(session.access_token)["grant"] == "otp"

    async def test_rejected_otp_propagates(self, token_service, test_user, otp_client):
        otp_client.verify.side_effect = InvalidOtpError()

        with pytest.raises(InvalidOtpError):
            await token_service.token_for_otp_user("alice", "sid-1", "000000")

    async def test_user_removed_after_otp_sent(self, token_service):
        with pytest.raises(InvalidUsernameError):
            await token_service.token_for_otp_user("ghost", "sid-1", "123456")


class TestJWTValidation:
    def test_garbage_token(self, token_service):
        assert token_service.decode_token("invalid.token.here") is None
        assert token_service.decode_token("not-a-jwt") is None

    async def test_tampered_signature(self, token_service, test_user):
        session = await token_service.token_for_user("alice", "TestPassword123!")
        header, payload, signature = session.access_token.split(".")
        tampered = f"{header}.{payload}.{signature[:-2]}xx"

        assert token_service.decode_token(tampered) is None

    async def test_other_secret_rejected(
        self, token_service, test_user, memory_store, revoked_refresh_tokens, otp_client
    ):
        session = await token_service.token_for_user("alice", "TestPassword123!")
        other = TokenService(
            memory_store,
            revoked_refresh_tokens,
            otp_client,
            Settings(jwt_secret="a-completely-different-secret-value"),
        )

        assert other.decode_token(session.access_token) is None

    def test_expired_token_rejected(self, token_service):
        token = token_service._encode_jwt(
            {
                "iss": token_service.settings.jwt_issuer,
                "aud": token_service.settings.jwt_audience,
                "sub": "alice",
                "exp": int(time.time()) - 3600,
            }
        )

        assert token_service.decode_token(token) is None

    def test_wrong_audience_rejected(self, token_service):
        token = token_service._encode_jwt(
            {
                "iss": token_service.settings.jwt_issuer,
                "aud": "someone-else",
                "sub": "alice",
                "exp": int(time.time()) + 3600,
            }
        )

        assert token_service.decode_token(token) is None


    def test_non_ascii_signature_rejected(self, token_service):
        assert token_service.decode_token("eyJhbGciOiJIUzI1NiJ9.e30.\u00e9") is None


class TestRevoke:
    async def test_revoke_records_refresh_jti(self, token_service, test_user):
        session = await token_service.token_for_user("alice", "TestPassword123!")
        jti = token_service.decode_token(session.refresh_token)["jti"]
        assert await token_service.is_refresh_revoked(jti) is False

        await token_service.revoke(session.refresh_token)

        assert await token_service.is_refresh_revoked(jti) is True

    async def test_revoke_rejects_access_token(self, token_service, test_user):
        session = await token_service.token_for_user("alice", "TestPassword123!")

        with pytest.raises(AuthenticationError):
            await token_service.revoke(session.access_token)

    async def test_revoke_rejects_garbage(self, token_service):
        with pytest.raises(AuthenticationError):
            await token_service.revoke("garbage")

    async def test_revoke_rejects_non_ascii_token(self, token_service):
        with pytest.raises(AuthenticationError):
            await token_service.revoke("eyJhbGciOiJIUzI1NiJ9.e30.\u00e9")

"""Unit tests for the auth service.

Tests for:
- PBKDF2 password hashing and verification
- Bearer header parsing
- Token issuance, expiry and tamper detection
- Registration and login flows
"""

import base64
import json
import time

import pytest

from tasklane.config import Settings
from tasklane.service.auth import (
    DUMMY_PASSWORD_HASH,
    AuthService,
    extract_bearer,
    hash_password,
    verify_password,
)
from tasklane.service.errors import AuthenticationError, ConflictError, NotFoundError
from tasklane.storage.memory import MemoryStore
from tasklane.storage.models import User


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        test_mode=True,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(memory_store, settings)


@pytest.fixture
def user():
    return User(id=7, email="a@x.com", name="A", password_hash="unused")


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestPasswordHashing:
    def test_hash_format_is_salt_and_key_hex(self):
        stored = hash_password("password123", iterations=100_000)
        salt_hex, key_hex = stored.split(":")
        assert len(bytes.fromhex(salt_hex)) == 16
        assert len(bytes.fromhex(key_hex)) == 32

    def test_salts_differ_between_hashes(self):
        first = hash_password("password123", iterations=100_000)
        second = hash_password("password123", iterations=100_000)
        assert first != second

    def test_verify_roundtrip(self):
        stored = hash_password("password123", iterations=100_000)
        assert verify_password("password123", stored, iterations=100_000)
        assert not verify_password("password124", stored, iterations=100_000)

    def test_unparseable_hash_never_verifies(self):
        assert not verify_password("password123", "garbage", iterations=100_000)

    def test_dummy_hash_never_verifies(self):
        assert not verify_password("password123", DUMMY_PASSWORD_HASH, iterations=100_000)


class TestBearerHeader:
    @pytest.mark.parametrize(
        "header, message",
        [
            (None, "Authorization header is required"),
            ("", "Authorization header is required"),
            ("Basic abc", "Authorization header must use Bearer scheme"),
            ("Bearer", "Bearer token is empty"),
            ("Bearer    ", "Bearer token is empty"),
        ],
    )
    def test_rejections(self, header, message):
        with pytest.raises(AuthenticationError) as exc_info:
            extract_bearer(header)
        assert exc_info.value.message == message

    def test_scheme_case_insensitive(self):
        assert extract_bearer("bearer abc.def.ghi") == "abc.def.ghi"


class TestTokens:
    def test_issue_and_verify(self, auth_service, user):
        token = auth_service.issue_token(user)
        ctx = auth_service.verify_token(token)
        assert (ctx.user_id, ctx.email, ctx.name) == (7, "a@x.com", "A")

    def test_expired_token(self, auth_service, user):
        token = auth_service.issue_token(user, now=time.time() - 3600)
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.verify_token(token)
        assert exc_info.value.message == "Token has expired"

    def test_tampered_payload_rejected(self, auth_service, user):
        header, _, signature = auth_service.issue_token(user).split(".")
        forged = _b64({"userId": 1, "email": "x@x.com", "name": "X", "iss": "tasklane",
                       "exp": int(time.time()) + 60})
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.verify_token(f"{header}.{forged}.{signature}")
        assert exc_info.value.message == "Invalid token"

    def test_other_secret_rejected(self, auth_service, user):
        other = AuthService(
            MemoryStore(),
            Settings(jwt_secret="another-secret-that-is-long-enough-to-pass", test_mode=True),
        )
        with pytest.raises(AuthenticationError):
            auth_service.verify_token(other.issue_token(user))

    def test_alg_none_rejected(self, auth_service):
        header = _b64({"alg": "none", "typ": "JWT"})
        payload = _b64({"userId": 1, "email": "a@x.com", "name": "A", "iss": "tasklane",
                        "exp": int(time.time()) + 60})
        with pytest.raises(AuthenticationError):
            auth_service.verify_token(f"{header}.{payload}.")

    @pytest.mark.parametrize("token", ["abc", "a.b", "a.b.c.d", "!!!.???.###"])
    def test_garbage_tokens(self, auth_service, token):
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.verify_token(token)
        assert exc_info.value.message == "Invalid token"

    @pytest.mark.parametrize(
        "claims",
        [
            {"userId": "7", "email": "a@x.com", "name": "A"},
            {"userId": True, "email": "a@x.com", "name": "A"},
            {"userId": 7, "email": None, "name": "A"},
            {"userId": 7, "email": "a@x.com"},
        ],
    )
    def test_malformed_claims_rejected(self, auth_service, claims):
        payload = {**claims, "iss": "tasklane", "exp": int(time.time()) + 60}
        token = auth_service._encode_jwt(payload)
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.verify_token(token)
        assert exc_info.value.message == "Invalid token"

    def test_wrong_issuer_rejected(self, auth_service):
        token = auth_service._encode_jwt(
            {"userId": 7, "email": "a@x.com", "name": "A", "iss": "elsewhere",
             "exp": int(time.time()) + 60}
        )
        with pytest.raises(AuthenticationError):
            auth_service.verify_token(token)


class TestAccountFlows:
    async def test_register_then_login(self, auth_service):
        user, token = await auth_service.register("a@x.com", "A", "password123")
        assert auth_service.verify_token(token).user_id == user.id
        assert user.password_hash != "password123"

        logged_in, _ = await auth_service.login("a@x.com", "password123")
        assert logged_in.id == user.id

    async def test_duplicate_email_conflicts(self, auth_service):
        await auth_service.register("a@x.com", "A", "password123")
        with pytest.raises(ConflictError) as exc_info:
            await auth_service.register("A@X.com", "B", "password123")
        assert exc_info.value.message == "An account with this email already exists"

    async def test_login_failures_are_indistinguishable(self, auth_service):
        await auth_service.register("a@x.com", "A", "password123")
        with pytest.raises(AuthenticationError) as wrong_password:
            await auth_service.login("a@x.com", "wrong-password")
        with pytest.raises(AuthenticationError) as unknown_user:
            await auth_service.login("nobody@x.com", "password123")
        assert wrong_password.value.message == unknown_user.value.message
        assert unknown_user.value.message == "Invalid email or password"

    async def test_profile_for_missing_user(self, auth_service, user):
        ctx = auth_service.verify_token(auth_service.issue_token(user))
        with pytest.raises(NotFoundError):
            await auth_service.get_profile(ctx)


class TestSecretSettings:
    def test_short_secret_rejected(self):
        with pytest.raises(ValueError):
            Settings(jwt_secret="too-short", test_mode=True)

    def test_missing_secret_outside_test_mode(self):
        with pytest.raises(ValueError):
            Settings(jwt_secret=None, test_mode=False)

    def test_ephemeral_secret_in_test_mode(self):
        settings = Settings(jwt_secret=None, test_mode=True)
        assert settings.jwt_secret and len(settings.jwt_secret) >= 32

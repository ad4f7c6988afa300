from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

from tasklane.config import Settings
from tasklane.logging import get_logger
from tasklane.service.errors import AuthenticationError, ConflictError, NotFoundError
from tasklane.storage.errors import ConstraintViolation
from tasklane.storage.models import User

logger = get_logger(__name__)

PASSWORD_SALT_BYTES = 16
PASSWORD_KEY_BYTES = 32
# Verified when no account matches so both login failures cost the same
DUMMY_PASSWORD_HASH = "00" * PASSWORD_SALT_BYTES + ":" + "00" * PASSWORD_KEY_BYTES

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


class AuthStore(Protocol):
    async def create_user(self, email: str, name: str, password_hash: str) -> User: ...

    async def get_user(self, user_id: int) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...


@dataclass(frozen=True)
class AuthContext:
    """Identity of the caller, derived from a verified bearer token."""

    user_id: int
    email: str
    name: str


def hash_password(password: str, *, iterations: int, salt: Optional[bytes] = None) -> str:
    """Derive a PBKDF2-SHA256 hash stored as ``saltHex:hashHex``."""

    salt = salt if salt is not None else secrets.token_bytes(PASSWORD_SALT_BYTES)
    derived = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt, iterations, dklen=PASSWORD_KEY_BYTES
    )
    return f"{salt.hex()}:{derived.hex()}"


def verify_password(password: str, stored: str, *, iterations: int) -> bool:
    """Recompute the derivation with the stored salt and compare in constant time."""

    try:
        salt_hex, hash_hex = stored.split(":", 1)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except ValueError:
        logger.warning("password_hash_unparseable")
        salt, expected = bytes(PASSWORD_SALT_BYTES), b""
    derived = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt, iterations, dklen=PASSWORD_KEY_BYTES
    )
    return hmac.compare_digest(derived, expected)


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer`` header or raise 401."""

    if not header:
        raise AuthenticationError("Authorization header is required")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        raise AuthenticationError("Authorization header must use Bearer scheme")
    token = token.strip()
    if not token:
        raise AuthenticationError("Bearer token is empty")
    return token


class AuthService:
    """Password credentials and signed access tokens."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.iterations = settings.password_hash_iterations
        self.token_ttl_seconds = settings.access_token_ttl_minutes * 60

    # password helpers run off the event loop ---------------------------------
    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(hash_password, password, iterations=self.iterations)

    async def verify_password(self, password: str, stored: str) -> bool:
        return await asyncio.to_thread(
            verify_password, password, stored, iterations=self.iterations
        )

    # token helpers -----------------------------------------------------------
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
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

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise AuthenticationError("Invalid token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise AuthenticationError("Invalid token")
        # Reject anything but HS256 to prevent algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise AuthenticationError("Invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            raise AuthenticationError("Invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise AuthenticationError("Invalid token")
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            raise AuthenticationError("Invalid token")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise AuthenticationError("Invalid token")
        if exp <= time.time():
            raise AuthenticationError("Token has expired")
        return payload

    def issue_token(self, user: User, *, now: Optional[float] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            "userId": user.id,
            "email": user.email,
            "name": user.name,
            "iss": self.settings.jwt_issuer,
            "iat": issued_at,
            "exp": issued_at + self.token_ttl_seconds,
        }
        return self._encode_jwt(payload)

    def verify_token(self, token: str) -> AuthContext:
        """Verify signature and expiry, then re-validate every identity claim."""

        payload = self._decode_jwt(token)
        user_id = payload.get("userId")
        email = payload.get("email")
        name = payload.get("name")
        if (
            isinstance(user_id, bool)
            or not isinstance(user_id, int)
            or not isinstance(email, str)
            or not isinstance(name, str)
        ):
            logger.warning("jwt_payload_malformed")
            raise AuthenticationError("Invalid token")
        return AuthContext(user_id=user_id, email=email, name=name)

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        return self.verify_token(extract_bearer(authorization))

    # account flows -----------------------------------------------------------
    async def register(self, email: str, name: str, password: str) -> Tuple[User, str]:
        password_hash = await self.hash_password(password)
        try:
            user = await self.store.create_user(email, name, password_hash)
        except ConstraintViolation:
            raise ConflictError("An account with this email already exists")
        logger.info("user_registered", user_id=user.id)
        return user, self.issue_token(user)

    async def login(self, email: str, password: str) -> Tuple[User, str]:
        user = await self.store.get_user_by_email(email)
        stored = user.password_hash if user else DUMMY_PASSWORD_HASH
        # always derive so unknown accounts and wrong passwords take equally long
        valid = await self.verify_password(password, stored)
        if user is None or not valid:
            logger.warning("login_failed", reason="invalid_credentials")
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        logger.info("user_logged_in", user_id=user.id)
        return user, self.issue_token(user)

    async def get_profile(self, ctx: AuthContext) -> User:
        user = await self.store.get_user(ctx.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

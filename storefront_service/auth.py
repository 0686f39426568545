"""
auth.py — Credential and Session Token Service

Issues and verifies signed session tokens and resolves the caller's role.

Tokens carry nothing but the user's id. The role is looked up again on
every authorize() call, so promotions and demotions apply to sessions that
are already open.

Token format:
    base64url(JSON payload) "." base64url(HMAC-SHA256(payload, AUTH_SECRET))
"""

import base64
import hashlib
import hmac
import json
import logging
import os
import time
from typing import Iterable, Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError

from . import config
from .db import Database
from .enums import Role
from .exceptions import ValidationError, AuthenticationError, AuthorizationError, NotFoundError
from .models import UserView
from .tables import UserRecord

log = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password."
SESSION_EXPIRED = "Session expired. Please log in again."


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


# --- Password hashing ---

def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )


def hash_password(password: str, iterations: int | None = None, salt: bytes | None = None) -> str:
    """
    Derives a salted PBKDF2-SHA256 hash.

    Returns:
        str: "pbkdf2_sha256$<iterations>$<salt hex>$<hash hex>"
    """
    iterations = iterations or config.PASSWORD_HASH_ITERATIONS
    salt = salt or os.urandom(16)
    digest = _kdf(salt, iterations).derive(password.encode("utf-8"))
    return f"pbkdf2_sha256${iterations}${salt.hex()}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    """False for a wrong password and for a stored hash that does not parse."""
    try:
        algorithm, iterations, salt_hex, digest_hex = stored.split("$")
        rounds = int(iterations)
        if rounds < 1:
            return False
        kdf = _kdf(bytes.fromhex(salt_hex), rounds)
        expected = bytes.fromhex(digest_hex)
    except (ValueError, TypeError, AttributeError):
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    try:
        kdf.verify(password.encode("utf-8"), expected)
    except InvalidKey:
        return False
    return True


# Compared against when the email is unknown so both failure paths cost the same
_DUMMY_HASH = hash_password("not-a-real-password", salt=b"\x00" * 16)


# --- Session tokens ---

class TokenSigner:
    """Signs and verifies opaque user-reference tokens."""

    def __init__(self, secret: str, ttl_seconds: int = 0, clock=time.time):
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _signature(self, payload_part: str) -> str:
        mac = hmac.new(self._secret, payload_part.encode("ascii"), hashlib.sha256)
        return _b64encode(mac.digest())

    def sign(self, user_id: int) -> str:
        now = int(self._clock())
        payload = {"sub": str(user_id), "iat": now}
        if self.ttl_seconds > 0:
            payload["exp"] = now + self.ttl_seconds
        payload_part = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{payload_part}.{self._signature(payload_part)}"

    def verify(self, token: str) -> int:
        """
        Returns the user id carried by a valid token.

        Raises:
            AuthenticationError: If the token is malformed, tampered with or expired.
        """
        # Non-ASCII input fails the encode or the compare
        try:
            payload_part, signature = token.split(".")
            valid = hmac.compare_digest(signature, self._signature(payload_part))
        except (ValueError, TypeError, UnicodeError, AttributeError):
            raise AuthenticationError(SESSION_EXPIRED)
        if not valid:
            raise AuthenticationError(SESSION_EXPIRED)

        try:
            payload = json.loads(_b64decode(payload_part))
            user_id = int(payload["sub"])
        except (ValueError, KeyError, TypeError):
            raise AuthenticationError(SESSION_EXPIRED)

        expires_at = payload.get("exp")
        if expires_at is not None and self._clock() >= expires_at:
            raise AuthenticationError(SESSION_EXPIRED)
        return user_id


def parse_bearer(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    if header_value.startswith("Bearer "):
        return header_value[len("Bearer "):].strip() or None
    return header_value.strip() or None


# --- Service ---

class AuthService:
    """Registration, login, authorization and user administration."""

    def __init__(self, database: Database, signer: TokenSigner, min_password_length: int | None = None):
        self.db = database
        self.signer = signer
        self.min_password_length = min_password_length or config.MIN_PASSWORD_LENGTH

    async def register(self, email: str, password: str, name: str) -> tuple[str, UserView]:
        """
        Creates a customer account and returns a session token for it.

        Raises:
            ValidationError: Missing fields, short password or email already registered.
        """
        if not email or not password or not name:
            raise ValidationError("Email, password, and name are required.")
        if len(password) < self.min_password_length:
            raise ValidationError(f"Password must be at least {self.min_password_length} characters long.")

        email = email.strip().lower()
        async with self.db.session() as session:
            existing = await session.execute(select(UserRecord).where(UserRecord.email == email))
            if existing.scalar() is not None:
                raise ValidationError("Email already registered.")

            user = UserRecord(
                email=email,
                password_hash=hash_password(password),
                name=name.strip(),
                role=Role.CUSTOMER.value,
            )
            session.add(user)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ValidationError("Email already registered.")
            await session.refresh(user)

        log.info(f"[User: {user.id}] Registered new customer account.")
        return self.signer.sign(user.id), UserView.from_record(user)

    async def login(self, email: str, password: str) -> tuple[str, UserView]:
        """
        Raises:
            AuthenticationError: Same message for unknown email and wrong password.
        """
        if not email or not password:
            raise ValidationError("Email and password are required.")

        user = await self._get_by_email(email.strip().lower())
        if user is None:
            verify_password(password, _DUMMY_HASH)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not verify_password(password, user.password_hash):
            log.info(f"[User: {user.id}] Failed login attempt.")
            raise AuthenticationError(INVALID_CREDENTIALS)

        return self.signer.sign(user.id), UserView.from_record(user)

    async def authorize(self, token: Optional[str], allowed_roles: Iterable[Role] = ()) -> UserRecord:
        """
        Resolves a session token to the current user record.

        Args:
            token: Raw token (without the "Bearer " prefix).
            allowed_roles: Roles permitted for the operation. Empty means any
                authenticated user.

        Raises:
            AuthenticationError: Missing, invalid or expired token, or deleted user.
            AuthorizationError: The user's current role is not permitted.
        """
        if not token:
            raise AuthenticationError("Authentication required")

        user_id = self.signer.verify(token)
        async with self.db.session() as session:
            user = await session.get(UserRecord, user_id)
        if user is None:
            raise AuthenticationError(SESSION_EXPIRED)

        allowed = {Role(r).value for r in allowed_roles}
        if allowed and user.role not in allowed:
            raise AuthorizationError("Unauthorized access for your role.")
        return user

    async def _get_by_email(self, email: str) -> Optional[UserRecord]:
        async with self.db.session() as session:
            result = await session.execute(select(UserRecord).where(UserRecord.email == email))
            return result.scalar()

    async def get_user(self, email: str) -> UserView:
        user = await self._get_by_email(email.strip().lower())
        if user is None:
            raise NotFoundError("User not found")
        return UserView.from_record(user)

    async def list_users(self) -> list[UserView]:
        async with self.db.session() as session:
            result = await session.execute(select(UserRecord).order_by(UserRecord.id))
            return [UserView.from_record(u) for u in result.scalars().all()]

    async def list_user_records(self) -> list[UserRecord]:
        async with self.db.session() as session:
            result = await session.execute(select(UserRecord))
            return list(result.scalars().all())

    async def set_role(self, email: str, role: Role) -> UserView:
        async with self.db.session() as session:
            result = await session.execute(select(UserRecord).where(UserRecord.email == email.strip().lower()))
            user = result.scalar()
            if user is None:
                raise NotFoundError("User not found")
            previous = user.role
            user.role = Role(role).value
            await session.commit()
            log.info(f"[User: {user.id}] Role changed {previous} -> {user.role}.")
            return UserView.from_record(user)

    async def delete_user(self, email: str) -> None:
        async with self.db.session() as session:
            await session.execute(delete(UserRecord).where(UserRecord.email == email.strip().lower()))
            await session.commit()
        log.info(f"User {email} deleted.")

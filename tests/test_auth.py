"""
Unit Tests for AuthService and TokenSigner

Covers registration, login, token verification and role-scoped
authorization, including role changes while a session is open.
"""

import pytest

from storefront_service.auth import TokenSigner, hash_password, verify_password, parse_bearer
from storefront_service.enums import Role, STAFF_ROLES, DASHBOARD_ROLES
from storefront_service.exceptions import AuthenticationError, AuthorizationError, ValidationError


class TestPasswordHashing:
    """hash_password() / verify_password()."""

    def test_round_trip(self):
        stored = hash_password("secret123", iterations=1000)
        assert stored.startswith("pbkdf2_sha256$1000$")
        assert verify_password("secret123", stored)
        assert not verify_password("secret124", stored)

    def test_salted(self):
        assert hash_password("secret123", iterations=1000) != hash_password("secret123", iterations=1000)

    def test_garbage_hash_never_matches(self):
        assert not verify_password("secret123", "plaintext")

    @pytest.mark.parametrize("stored", [
        "pbkdf2_sha256$1000$zz$00",
        "pbkdf2_sha256$1000$00ff$not-hex",
        "pbkdf2_sha256$many$00ff$00ff",
        "pbkdf2_sha256$0$00ff$00ff",
        "pbkdf2_sha256$-5$00ff$00ff",
    ])
    def test_malformed_hash_returns_false(self, stored):
        assert verify_password("secret123", stored) is False

    def test_other_algorithm_never_matches(self):
        stored = hash_password("secret123", iterations=1000).replace("pbkdf2_sha256", "md5", 1)
        assert verify_password("secret123", stored) is False


class TestTokenSigner:
    """sign() / verify()."""

    def test_verify_returns_user_id(self):
        signer = TokenSigner("k")
        assert signer.verify(signer.sign(42)) == 42

    def test_tampered_token_rejected(self):
        signer = TokenSigner("k")
        payload, signature = signer.sign(42).split(".")
        with pytest.raises(AuthenticationError):
            signer.verify(f"{payload}.{signature[:-2]}xx")

    def test_foreign_secret_rejected(self):
        token = TokenSigner("k1").sign(42)
        with pytest.raises(AuthenticationError):
            TokenSigner("k2").verify(token)

    def test_malformed_token_rejected(self):
        with pytest.raises(AuthenticationError, match="Session expired"):
            TokenSigner("k").verify("not-a-token")

    @pytest.mark.parametrize("token", ["éé.abc", "abc.éé", "é.é"])
    def test_non_ascii_token_rejected(self, token):
        with pytest.raises(AuthenticationError, match="Session expired"):
            TokenSigner("k").verify(token)

    def test_non_string_token_rejected(self):
        with pytest.raises(AuthenticationError):
            TokenSigner("k").verify(None)

    def test_expiry(self):
        now = [1000.0]
        signer = TokenSigner("k", ttl_seconds=60, clock=lambda: now[0])
        token = signer.sign(7)
        assert signer.verify(token) == 7

        now[0] += 61
        with pytest.raises(AuthenticationError):
            signer.verify(token)

    def test_no_expiry_by_default(self):
        now = [1000.0]
        signer = TokenSigner("k", clock=lambda: now[0])
        token = signer.sign(7)
        now[0] += 10 ** 8
        assert signer.verify(token) == 7


class TestParseBearer:
    def test_variants(self):
        assert parse_bearer("Bearer abc") == "abc"
        assert parse_bearer("abc") == "abc"
        assert parse_bearer(None) is None
        assert parse_bearer("Bearer ") is None


class TestRegisterAndLogin:
    """AuthService.register() / login()."""

    @pytest.mark.asyncio
    async def test_register_creates_customer(self, auth_service):
        token, user = await auth_service.register("Jane@Example.com", "secret123", "Jane")

        assert user.email == "jane@example.com"
        assert user.role == Role.CUSTOMER
        record = await auth_service.authorize(token)
        assert record.email == "jane@example.com"

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, auth_service):
        await auth_service.register("jane@example.com", "secret123", "Jane")
        with pytest.raises(ValidationError, match="Email already registered"):
            await auth_service.register("JANE@example.com", "other-secret", "Jane 2")

    @pytest.mark.asyncio
    async def test_short_password_rejected(self, auth_service):
        with pytest.raises(ValidationError, match="at least 6"):
            await auth_service.register("jane@example.com", "12345", "Jane")

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("", "secret123", "Jane")

    @pytest.mark.asyncio
    async def test_login(self, auth_service):
        await auth_service.register("jane@example.com", "secret123", "Jane")
        token, user = await auth_service.login("jane@example.com", "secret123")
        assert user.name == "Jane"
        assert (await auth_service.authorize(token)).email == "jane@example.com"

    @pytest.mark.asyncio
    async def test_wrong_password_and_unknown_email_look_the_same(self, auth_service):
        await auth_service.register("jane@example.com", "secret123", "Jane")

        with pytest.raises(AuthenticationError) as wrong_password:
            await auth_service.login("jane@example.com", "wrong-pass")
        with pytest.raises(AuthenticationError) as unknown_email:
            await auth_service.login("nobody@example.com", "secret123")

        assert wrong_password.value.message == unknown_email.value.message == "Invalid email or password."


class TestAuthorize:
    """AuthService.authorize()."""

    @pytest.mark.asyncio
    async def test_missing_token(self, auth_service):
        with pytest.raises(AuthenticationError, match="Authentication required"):
            await auth_service.authorize(None)

    @pytest.mark.asyncio
    async def test_customer_denied_staff_operation(self, auth_service, customer_token):
        with pytest.raises(AuthorizationError):
            await auth_service.authorize(customer_token, STAFF_ROLES)

    @pytest.mark.asyncio
    async def test_role_change_applies_to_open_session(self, auth_service, customer_token):
        """A promotion and a later demotion both take effect without logging in again."""
        # Arrange
        with pytest.raises(AuthorizationError):
            await auth_service.authorize(customer_token, DASHBOARD_ROLES)

        # Act
        await auth_service.set_role("jane@example.com", Role.MANAGER)

        # Assert
        user = await auth_service.authorize(customer_token, DASHBOARD_ROLES)
        assert user.role == Role.MANAGER.value

        await auth_service.set_role("jane@example.com", Role.CUSTOMER)
        with pytest.raises(AuthorizationError):
            await auth_service.authorize(customer_token, DASHBOARD_ROLES)

    @pytest.mark.asyncio
    async def test_deleted_user_token_rejected(self, auth_service, customer_token):
        await auth_service.delete_user("jane@example.com")
        with pytest.raises(AuthenticationError):
            await auth_service.authorize(customer_token)

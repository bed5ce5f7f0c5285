"""Unit tests for the session issuer.

Tests for:
- Registration and duplicate handling
- Login error collapsing and deactivated accounts
- Refresh with token versions
- Bearer validation against the stored role
- Password change and admin role changes
"""

from datetime import timedelta

import pytest
from argon2 import PasswordHasher, Type

from recipehub.service.auth import AuthContext, AuthService
from recipehub.service.credentials import UserCredentials
from recipehub.service.errors import (
    AccountDeactivatedError,
    AuthenticationError,
    EmailAlreadyExistsError,
    ForbiddenError,
    IncorrectPasswordError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidRequestError,
    NotFoundError,
    PasswordMismatchError,
    UserNotFoundError,
)
from recipehub.service.tokens import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    AccessTokenClaims,
    TokenCodec,
)
from recipehub.storage.errors import ConstraintViolation
from recipehub.storage.memory import MemoryStore
from recipehub.storage.models import Role

PASSWORD = "Password1!"


def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def credentials(memory_store):
    return UserCredentials(memory_store, hasher=fast_hasher())


@pytest.fixture
def auth_service(credentials):
    access = TokenCodec("access-secret-unit", timedelta(minutes=15), issuer="recipehub", token_type=ACCESS_TOKEN)
    refresh = TokenCodec("refresh-secret-unit", timedelta(days=7), issuer="recipehub", token_type=REFRESH_TOKEN)
    return AuthService(credentials, access, refresh)


async def _register(auth_service, email="cook@example.com"):
    return await auth_service.register(
        email, PASSWORD, PASSWORD, first_name="Julia", last_name="Child"
    )


class TestRegister:
    async def test_register_returns_user_and_tokens(self, auth_service):
        user, tokens = await _register(auth_service)

        assert user.role == Role.USER
        assert user.is_active
        assert not user.is_email_verified
        assert user.last_login_at is not None
        assert tokens.token_type == "Bearer"
        assert tokens.expires_in == 15 * 60
        assert tokens.access_token != tokens.refresh_token

    async def test_register_password_mismatch(self, auth_service):
        with pytest.raises(PasswordMismatchError) as exc:
            await auth_service.register(
                "cook@example.com", PASSWORD, "Different1!", first_name="Ju", last_name="Ch"
            )
        assert exc.value.message == "Passwords do not match"
        assert exc.value.status_code == 400

    async def test_register_duplicate_email(self, auth_service):
        await _register(auth_service)
        with pytest.raises(EmailAlreadyExistsError) as exc:
            await _register(auth_service)
        assert exc.value.status_code == 409

    async def test_register_race_maps_constraint_violation(self, auth_service, credentials, monkeypatch):
        # The pre-check passes but the store reports the duplicate
        monkeypatch.setattr(credentials, "find_by_email", lambda email: None)

        def _raise(*args, **kwargs):
            raise ConstraintViolation("email already exists", {"field": "email"})

        monkeypatch.setattr(credentials, "create", _raise)
        with pytest.raises(EmailAlreadyExistsError):
            await _register(auth_service)

    async def test_password_is_hashed(self, auth_service, memory_store):
        user, _ = await _register(auth_service)
        stored_hash, algo = memory_store.get_password_record(user.id)
        assert algo == "argon2id"
        assert PASSWORD not in stored_hash


class TestLogin:
    async def test_login_success_updates_last_login(self, auth_service):
        registered, _ = await _register(auth_service)
        user, tokens = await auth_service.login("cook@example.com", PASSWORD)
        assert user.id == registered.id
        assert user.last_login_at >= registered.last_login_at
        assert tokens.access_token

    async def test_unknown_email_and_wrong_password_are_indistinguishable(self, auth_service):
        await _register(auth_service)
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login("cook@example.com", "Wrong1234!")

        assert unknown.value.message == wrong.value.message == "Invalid credentials"
        assert unknown.value.error_code == wrong.value.error_code

    async def test_unknown_email_still_runs_argon2(self, memory_store):
        class CountingHasher(PasswordHasher):
            verifications = 0

            def verify(self, hash, password):
                CountingHasher.verifications += 1
                return super().verify(hash, password)

        hasher = CountingHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
        service = AuthService(
            UserCredentials(memory_store, hasher=hasher),
            TokenCodec("a-secret", timedelta(minutes=15), issuer="recipehub", token_type=ACCESS_TOKEN),
            TokenCodec("r-secret", timedelta(days=7), issuer="recipehub", token_type=REFRESH_TOKEN),
        )
        await _register(service)

        with pytest.raises(InvalidCredentialsError):
            await service.login("nobody@example.com", PASSWORD)
        assert CountingHasher.verifications == 1

        with pytest.raises(InvalidCredentialsError):
            await service.login("cook@example.com", "Wrong1234!")
        assert CountingHasher.verifications == 2

    async def test_deactivated_account_rejected(self, auth_service, credentials):
        user, _ = await _register(auth_service)
        credentials.set_active(user.id, False)
        with pytest.raises(AccountDeactivatedError) as exc:
            await auth_service.login("cook@example.com", PASSWORD)
        assert exc.value.message == "Account is deactivated"


class TestRefresh:
    async def test_refresh_issues_new_pair(self, auth_service):
        _, tokens = await _register(auth_service)
        new_tokens = await auth_service.refresh(tokens.refresh_token)
        assert new_tokens.access_token
        assert new_tokens.expires_in == 15 * 60

    async def test_refresh_is_not_rotated(self, auth_service):
        _, tokens = await _register(auth_service)
        await auth_service.refresh(tokens.refresh_token)
        await auth_service.refresh(tokens.refresh_token)

    async def test_access_token_cannot_refresh(self, auth_service):
        _, tokens = await _register(auth_service)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(tokens.access_token)

    async def test_garbage_refresh_token(self, auth_service):
        with pytest.raises(InvalidRefreshTokenError) as exc:
            await auth_service.refresh("not.a.token")
        assert exc.value.message == "Invalid refresh token"

    async def test_inactive_user_cannot_refresh(self, auth_service, credentials):
        user, tokens = await _register(auth_service)
        credentials.set_active(user.id, False)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(tokens.refresh_token)

    async def test_token_version_bump_revokes_refresh(self, auth_service, credentials):
        user, tokens = await _register(auth_service)
        credentials.bump_token_version(user.id)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(tokens.refresh_token)


class TestValidateBearer:
    async def test_authenticate_returns_context(self, auth_service):
        user, tokens = await _register(auth_service)
        ctx = await auth_service.authenticate(f"Bearer {tokens.access_token}")
        assert isinstance(ctx, AuthContext)
        assert ctx.user_id == user.id
        assert ctx.role == Role.USER
        assert not ctx.is_admin

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer garbage"])
    async def test_authenticate_rejects_bad_headers(self, auth_service, header):
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.authenticate(header)
        assert exc.value.message == "invalid token"

    async def test_refresh_token_not_accepted_as_bearer(self, auth_service):
        _, tokens = await _register(auth_service)
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(f"Bearer {tokens.refresh_token}")

    async def test_role_comes_from_store_not_token(self, auth_service, credentials):
        user, tokens = await _register(auth_service)
        credentials.update_role(user.id, Role.ADMIN)
        ctx = await auth_service.authenticate(f"Bearer {tokens.access_token}")
        assert ctx.role == Role.ADMIN

        credentials.update_role(user.id, Role.USER)
        ctx = await auth_service.authenticate(f"Bearer {tokens.access_token}")
        assert ctx.role == Role.USER

    async def test_demoted_admin_token_loses_admin(self, auth_service, credentials):
        user, _ = await _register(auth_service)
        credentials.update_role(user.id, Role.ADMIN)
        _, tokens = await auth_service.login("cook@example.com", PASSWORD)
        credentials.update_role(user.id, Role.USER)

        claims = AccessTokenClaims.from_payload(auth_service.access_codec.verify(tokens.access_token))
        assert claims.role == Role.ADMIN
        assert auth_service.validate_bearer(claims).role == Role.USER

    async def test_missing_user(self, auth_service, memory_store):
        user, tokens = await _register(auth_service)
        memory_store.users.pop(user.id)
        with pytest.raises(UserNotFoundError) as exc:
            await auth_service.authenticate(f"Bearer {tokens.access_token}")
        assert exc.value.status_code == 401

    async def test_deactivated_user(self, auth_service, credentials):
        user, tokens = await _register(auth_service)
        credentials.set_active(user.id, False)
        with pytest.raises(AccountDeactivatedError):
            await auth_service.authenticate(f"Bearer {tokens.access_token}")


class TestChangePassword:
    async def test_change_password(self, auth_service):
        user, tokens = await _register(auth_service)
        result = await auth_service.change_password(user.id, PASSWORD, "NewPass9$")
        assert result == {"message": "Password changed successfully"}

        await auth_service.login("cook@example.com", "NewPass9$")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("cook@example.com", PASSWORD)

    async def test_change_password_revokes_refresh_tokens(self, auth_service):
        user, tokens = await _register(auth_service)
        await auth_service.change_password(user.id, PASSWORD, "NewPass9$")
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(tokens.refresh_token)

    async def test_wrong_current_password(self, auth_service):
        user, _ = await _register(auth_service)
        with pytest.raises(IncorrectPasswordError) as exc:
            await auth_service.change_password(user.id, "Wrong1234!", "NewPass9$")
        assert exc.value.message == "Current password is incorrect"

    async def test_unknown_or_inactive_user(self, auth_service, credentials):
        with pytest.raises(InvalidRequestError):
            await auth_service.change_password("missing", PASSWORD, "NewPass9$")
        user, _ = await _register(auth_service)
        credentials.set_active(user.id, False)
        with pytest.raises(InvalidRequestError):
            await auth_service.change_password(user.id, PASSWORD, "NewPass9$")


class TestLogoutAndAdmin:
    async def test_logout_is_stateless(self, auth_service):
        assert await auth_service.logout() == {"message": "Logout successful"}

    async def test_set_user_role_bumps_token_version(self, auth_service):
        admin, _ = await _register(auth_service, "admin@example.com")
        user, tokens = await _register(auth_service)

        updated = await auth_service.set_user_role(admin.id, user.id, Role.ADMIN)
        assert updated.role == Role.ADMIN
        assert updated.token_version == user.token_version + 1
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(tokens.refresh_token)

    async def test_same_role_is_noop(self, auth_service):
        admin, _ = await _register(auth_service, "admin@example.com")
        user, tokens = await _register(auth_service)
        updated = await auth_service.set_user_role(admin.id, user.id, Role.USER)
        assert updated.token_version == user.token_version
        await auth_service.refresh(tokens.refresh_token)

    async def test_cannot_change_own_role(self, auth_service):
        admin, _ = await _register(auth_service, "admin@example.com")
        with pytest.raises(ForbiddenError):
            await auth_service.set_user_role(admin.id, admin.id, Role.USER)

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.set_user_role("actor", "missing", Role.ADMIN)
        with pytest.raises(NotFoundError):
            await auth_service.set_user_active("missing", False)

    async def test_set_user_active(self, auth_service):
        user, _ = await _register(auth_service)
        updated = await auth_service.set_user_active(user.id, False)
        assert not updated.is_active

    async def test_mark_user_email_verified(self, auth_service):
        admin, _ = await _register(auth_service, "admin@example.com")
        user, _ = await _register(auth_service)
        updated = await auth_service.mark_user_email_verified(admin.id, user.id)
        assert updated.is_email_verified
        assert updated.token_version == user.token_version
        with pytest.raises(NotFoundError):
            await auth_service.mark_user_email_verified(admin.id, "missing")

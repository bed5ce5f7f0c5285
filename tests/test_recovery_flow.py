"""Tests for password reset and email verification flows."""

from datetime import timedelta

import pytest
from argon2 import PasswordHasher, Type

from recipehub.service.auth import AuthService
from recipehub.service.credentials import UserCredentials
from recipehub.service.errors import (
    AlreadyVerifiedError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidRefreshTokenError,
    InvalidRequestError,
    VerificationDispatchError,
)
from recipehub.service import recovery as recovery_module
from recipehub.service.recovery import RESET_REQUESTED_MESSAGE, AccountRecoveryService
from recipehub.service.single_use import SingleUseTokenStore
from recipehub.service.tokens import ACCESS_TOKEN, REFRESH_TOKEN, TokenCodec
from recipehub.storage.memory import MemoryStore
from recipehub.storage.models import TokenPurpose

PASSWORD = "Password1!"


class RecordingDispatcher:
    """Collects outgoing mail; individual kinds can be made to fail."""

    def __init__(self):
        self.sent = []
        self.fail = set()
        self.raise_on = set()

    def _send(self, kind, *args):
        if kind in self.raise_on:
            raise ConnectionError(f"{kind} transport down")
        self.sent.append((kind, *args))
        return kind not in self.fail

    def send_password_reset_email(self, email, name, token):
        return self._send("reset", email, name, token)

    def send_verification_email(self, email, name, token):
        return self._send("verify", email, name, token)

    def send_welcome_email(self, email, name):
        return self._send("welcome", email, name)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def credentials(memory_store):
    hasher = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    return UserCredentials(memory_store, hasher=hasher)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def auth_service(credentials):
    return AuthService(
        credentials,
        TokenCodec("access-recovery", timedelta(minutes=15), issuer="recipehub", token_type=ACCESS_TOKEN),
        TokenCodec("refresh-recovery", timedelta(days=7), issuer="recipehub", token_type=REFRESH_TOKEN),
    )


def _recovery(credentials, memory_store, dispatcher, expose=True):
    return AccountRecoveryService(
        credentials,
        SingleUseTokenStore(memory_store),
        dispatcher,
        expose_dev_tokens=expose,
    )


@pytest.fixture
def recovery(credentials, memory_store, dispatcher):
    return _recovery(credentials, memory_store, dispatcher)


async def _register(auth_service):
    return await auth_service.register(
        "cook@example.com", PASSWORD, PASSWORD, first_name="Julia", last_name="Child"
    )


class TestPasswordReset:
    async def test_unknown_email_gets_same_response(self, recovery, dispatcher):
        result = await recovery.request_password_reset("ghost@example.com")
        assert result == {"message": RESET_REQUESTED_MESSAGE}
        assert dispatcher.sent == []

    async def test_known_email_sends_link_and_echoes_dev_token(self, recovery, auth_service, dispatcher):
        user, _ = await _register(auth_service)
        result = await recovery.request_password_reset("cook@example.com", "10.0.0.1", "pytest")

        assert result["message"] == RESET_REQUESTED_MESSAGE
        kind, email, name, token = dispatcher.sent[0]
        assert (kind, email, name) == ("reset", "cook@example.com", "Julia Child")
        assert result["token"] == token

    async def test_token_hidden_outside_dev(self, credentials, memory_store, dispatcher, auth_service):
        await _register(auth_service)
        recovery = _recovery(credentials, memory_store, dispatcher, expose=False)
        result = await recovery.request_password_reset("cook@example.com")
        assert result == {"message": RESET_REQUESTED_MESSAGE}

    async def test_dispatch_failure_is_not_reported(self, recovery, auth_service, dispatcher):
        await _register(auth_service)
        dispatcher.raise_on.add("reset")
        result = await recovery.request_password_reset("cook@example.com")
        assert result["message"] == RESET_REQUESTED_MESSAGE

    async def test_reset_changes_password_and_revokes_sessions(self, recovery, auth_service):
        _, tokens = await _register(auth_service)
        token = (await recovery.request_password_reset("cook@example.com"))["token"]

        result = await recovery.reset_password(token, "NewPass9$")
        assert result == {"message": "Password reset successfully"}

        await auth_service.login("cook@example.com", "NewPass9$")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("cook@example.com", PASSWORD)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(tokens.refresh_token)

    async def test_reset_token_is_single_use(self, recovery, auth_service):
        await _register(auth_service)
        token = (await recovery.request_password_reset("cook@example.com"))["token"]
        await recovery.reset_password(token, "NewPass9$")
        with pytest.raises(InvalidOrExpiredTokenError) as exc:
            await recovery.reset_password(token, "Other9$pass")
        assert exc.value.message == "Invalid or expired reset token"

    async def test_older_reset_token_invalidated_by_new_request(self, recovery, auth_service):
        await _register(auth_service)
        first = (await recovery.request_password_reset("cook@example.com"))["token"]
        second = (await recovery.request_password_reset("cook@example.com"))["token"]

        with pytest.raises(InvalidOrExpiredTokenError):
            await recovery.reset_password(first, "NewPass9$")
        await recovery.reset_password(second, "NewPass9$")

    async def test_verification_token_cannot_reset_password(self, recovery, auth_service):
        user, _ = await _register(auth_service)
        token = (await recovery.send_email_verification(user.id))["token"]
        with pytest.raises(InvalidOrExpiredTokenError):
            await recovery.reset_password(token, "NewPass9$")


class TestEmailVerification:
    async def test_send_and_verify(self, recovery, auth_service, credentials, dispatcher):
        user, _ = await _register(auth_service)
        sent = await recovery.send_email_verification(user.id)
        assert sent["message"] == "Verification email sent successfully"

        result = await recovery.verify_email(sent["token"])
        assert result == {"message": "Email verified successfully"}
        assert credentials.find_by_id(user.id).is_email_verified
        assert [entry[0] for entry in dispatcher.sent] == ["verify", "welcome"]

    async def test_already_verified(self, recovery, auth_service, credentials):
        user, _ = await _register(auth_service)
        credentials.set_email_verified(user.id)
        with pytest.raises(AlreadyVerifiedError):
            await recovery.send_email_verification(user.id)

    async def test_unknown_user(self, recovery):
        with pytest.raises(InvalidRequestError):
            await recovery.send_email_verification("missing")

    async def test_dispatch_failure_raises(self, recovery, auth_service, dispatcher):
        user, _ = await _register(auth_service)
        dispatcher.fail.add("verify")
        with pytest.raises(VerificationDispatchError):
            await recovery.send_email_verification(user.id)

    async def test_dispatch_exception_raises(self, recovery, auth_service, dispatcher):
        user, _ = await _register(auth_service)
        dispatcher.raise_on.add("verify")
        with pytest.raises(VerificationDispatchError):
            await recovery.send_email_verification(user.id)

    async def test_welcome_failure_does_not_undo_verification(
        self, recovery, auth_service, credentials, dispatcher
    ):
        user, _ = await _register(auth_service)
        token = (await recovery.send_email_verification(user.id))["token"]
        dispatcher.raise_on.add("welcome")

        result = await recovery.verify_email(token)
        assert result["message"] == "Email verified successfully"
        assert credentials.find_by_id(user.id).is_email_verified

    async def test_verify_token_is_single_use(self, recovery, auth_service):
        user, _ = await _register(auth_service)
        token = (await recovery.send_email_verification(user.id))["token"]
        await recovery.verify_email(token)
        with pytest.raises(InvalidOrExpiredTokenError) as exc:
            await recovery.verify_email(token)
        assert exc.value.message == "Invalid or expired verification token"

    async def test_resend_invalidates_previous_token(self, recovery, auth_service, memory_store):
        user, _ = await _register(auth_service)
        first = (await recovery.send_email_verification(user.id))["token"]
        await recovery.send_email_verification(user.id)

        with pytest.raises(InvalidOrExpiredTokenError):
            await recovery.verify_email(first)
        unused = [
            t
            for t in memory_store.list_single_use_tokens(user.id, TokenPurpose.EMAIL_VERIFICATION)
            if not t.is_used
        ]
        assert len(unused) == 1


async def test_alice_walkthrough(auth_service, recovery):
    """Register, fail a login, reset the password and log back in."""
    user, tokens = await auth_service.register(
        "alice@example.com", "Secret123!", "Secret123!", first_name="Alice", last_name="Liddell"
    )
    ctx = await auth_service.authenticate(f"Bearer {tokens.access_token}")
    assert (ctx.user_id, ctx.role) == (user.id, user.role)

    with pytest.raises(InvalidCredentialsError):
        await auth_service.login("alice@example.com", "Wrong123!")

    ack = await recovery.request_password_reset("alice@example.com")
    assert ack["message"] == RESET_REQUESTED_MESSAGE
    await recovery.reset_password(ack["token"], "NewSecret123!")
    await auth_service.login("alice@example.com", "NewSecret123!")

    with pytest.raises(InvalidOrExpiredTokenError):
        await recovery.reset_password(ack["token"], "NewSecret123!")


class RecordingLogger:
    def __init__(self):
        self.events = []

    def _record(self, event, **kw):
        self.events.append((event, kw))

    info = warning = error = exception = _record


async def test_rejected_tokens_are_not_logged(recovery, monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(recovery_module, "logger", recorder)
    secret = "leaky-token-value-0123456789"

    with pytest.raises(InvalidOrExpiredTokenError):
        await recovery.reset_password(secret, "NewPass9$")
    with pytest.raises(InvalidOrExpiredTokenError):
        await recovery.verify_email(secret)

    assert [event for event, _ in recorder.events] == [
        "password_reset_rejected",
        "email_verification_rejected",
    ]
    assert recorder.events[0][1] == {"reason": "TokenNotFoundError", "purpose": "password_reset"}
    assert recorder.events[1][1]["purpose"] == "email_verification"
    for _, fields in recorder.events:
        assert not any(secret[:8] in str(value) for value in fields.values())

import pytest
from pydantic import ValidationError

from recipehub.api.schemas import (
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UpdateUserRoleRequest,
    _normalize_unicode,
    _validate_email,
    _validate_password_strength,
)
from recipehub.storage.models import Role


def test_email_is_normalised():
    assert _validate_email("  Cook@Example.COM ") == "cook@example.com"
    assert _validate_email("co\u200bok@example.com") == "cook@example.com"


@pytest.mark.parametrize(
    "value",
    ["", "plain", "@example.com", "cook@", "cook@localhost", "cook@-bad-.com", "a b@example.com"],
)
def test_invalid_emails(value):
    with pytest.raises(ValueError):
        _validate_email(value)


@pytest.mark.parametrize("value", ["Abcdef1!", "pa$$w0rd", "x" * 120 + "A1@"])
def test_strong_passwords(value):
    assert _validate_password_strength(value) == value


@pytest.mark.parametrize(
    "value",
    ["Ab1!", "abcdefgh!", "abcdefgh1", "12345678!", "Abcdefg1#", "A1!" + "x" * 126],
)
def test_weak_passwords(value):
    with pytest.raises(ValueError):
        _validate_password_strength(value)


def test_normalize_unicode_strips_bidi_overrides():
    assert _normalize_unicode("ad\u202emin") == "admin"
    assert _normalize_unicode("\uff41") == "a"


def test_register_request_trims_names():
    body = RegisterRequest(
        first_name="  Julia ",
        last_name="Child",
        email="Julia@Example.com",
        password="Password1!",
        confirm_password="Password1!",
    )
    assert body.first_name == "Julia"
    assert body.email == "julia@example.com"


def test_login_request_requires_password():
    with pytest.raises(ValidationError):
        LoginRequest(email="cook@example.com", password="")


def test_reset_request_caps_token_length():
    with pytest.raises(ValidationError):
        ResetPasswordRequest(token="t" * 257, new_password="Password1!")


def test_role_request_is_closed():
    assert UpdateUserRoleRequest(role="admin").role is Role.ADMIN
    with pytest.raises(ValidationError):
        UpdateUserRoleRequest(role="owner")

import pytest
from pydantic import ValidationError

from classgate.api.schemas import (
    AdminUserUpdateRequest,
    LoginRequest,
    Pagination,
    RegisterRequest,
    ResetPasswordRequest,
    SettingsUpdateRequest,
    validate_password_strength,
)
from classgate.storage.models import Role


def _register(**overrides):
    body = {
        "email": "alice@example.com",
        "password": "Str0ng!Passw0rd",
        "firstName": "Alice",
        "lastName": "Smith",
        **overrides,
    }
    return RegisterRequest.model_validate(body)


def test_register_normalizes_email():
    assert _register(email="  Alice@Example.COM ").email == "alice@example.com"


def test_register_strips_zero_width_characters():
    assert _register(email="ali\u200bce@example.com").email == "alice@example.com"


@pytest.mark.parametrize(
    "email",
    ["plain", "@example.com", "a@b", "a@-bad-.com", "a b@example.com", "x" * 65 + "@example.com"],
)
def test_register_rejects_bad_email(email):
    with pytest.raises(ValidationError):
        _register(email=email)


@pytest.mark.parametrize(
    "password",
    ["Short1!", "alllowercase1!", "ALLUPPERCASE1!", "NoDigits!!", "NoSpecial123", "A1!a" * 40],
)
def test_password_strength(password):
    with pytest.raises(ValueError):
        validate_password_strength(password)


def test_password_strength_accepts_good_password():
    assert validate_password_strength("Str0ng!Passw0rd") == "Str0ng!Passw0rd"


@pytest.mark.parametrize("name", ["A", "x" * 51, "R2D2", "Bob<script>"])
def test_register_rejects_bad_names(name):
    with pytest.raises(ValidationError):
        _register(firstName=name)


def test_register_accepts_hyphen_and_apostrophe():
    request = _register(firstName=" Mary-Jane ", lastName="O'Neil")
    assert request.first_name == "Mary-Jane"
    assert request.last_name == "O'Neil"


def test_register_role_defaults_to_student():
    assert _register().role == Role.STUDENT
    assert _register(role="instructor").role == Role.INSTRUCTOR
    with pytest.raises(ValidationError):
        _register(role="admin")


def test_register_confirmation_must_match():
    _register(confirmPassword="Str0ng!Passw0rd")
    with pytest.raises(ValidationError):
        _register(confirmPassword="Other!Passw0rd")


def test_reset_requires_confirmation():
    with pytest.raises(ValidationError):
        ResetPasswordRequest.model_validate({"token": "t", "password": "Str0ng!Passw0rd"})


def test_login_accepts_any_non_empty_password():
    request = LoginRequest.model_validate({"email": "a@example.com", "password": "x"})
    assert request.password == "x"


def test_admin_update_changes_only_sent_fields():
    request = AdminUserUpdateRequest.model_validate({"isActive": False, "lastName": "Smith"})
    assert request.changes() == {"is_active": False, "last_name": "Smith"}
    assert AdminUserUpdateRequest.model_validate({}).changes() == {}


def test_settings_changes_are_camel_case_per_section():
    request = SettingsUpdateRequest.model_validate(
        {"security": {"sessionTimeout": 14}, "features": {"userRegistration": False}}
    )
    assert request.changes() == {
        "security": {"sessionTimeout": 14},
        "features": {"userRegistration": False},
    }


@pytest.mark.parametrize(
    "section, values",
    [
        ("security", {"maxLoginAttempts": 0}),
        ("security", {"lockoutDuration": 2000}),
        ("security", {"sessionTimeout": 31}),
        ("security", {"passwordMinLength": 6}),
        ("general", {"siteName": ""}),
    ],
)
def test_settings_bounds(section, values):
    with pytest.raises(ValidationError):
        SettingsUpdateRequest.model_validate({section: values})


@pytest.mark.parametrize(
    "page, limit, total, pages, has_next, has_prev",
    [
        (1, 10, 0, 0, False, False),
        (1, 10, 25, 3, True, False),
        (3, 10, 25, 3, False, True),
    ],
)
def test_pagination(page, limit, total, pages, has_next, has_prev):
    result = Pagination.build(page, limit, total)
    assert (result.pages, result.has_next, result.has_prev) == (pages, has_next, has_prev)

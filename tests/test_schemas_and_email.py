from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from brewbean.api.schemas import (
    Envelope,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UpdateProfileRequest,
    UserResponse,
    VerifyOTPRequest,
)
from brewbean.service.email import EmailService
from brewbean.storage.models import User


def test_register_request_normalizes_fields():
    req = RegisterRequest.model_validate(
        {
            "name": "  Ada   Roast ",
            "email": " Ada@Example.COM ",
            "password": "Abcd123!",
            "phone": " +91 98765 43210 ",
            "dateOfBirth": "1990-05-17",
            "gender": "female",
        }
    )
    assert req.name == "Ada Roast"
    assert req.email == "ada@example.com"
    assert req.phone == "+91 98765 43210"
    assert req.date_of_birth == date(1990, 5, 17)


def test_email_strips_zero_width_characters():
    req = LoginRequest.model_validate({"email": "a\u200b@b.com", "password": "x"})
    assert req.email == "a@b.com"
    assert req.remember_me is False


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "A", "email": "a@b.com", "password": "Abcd123!"},
        {"name": "Ada 2", "email": "a@b.com", "password": "Abcd123!"},
        {"name": "Ada", "email": "not-an-email", "password": "Abcd123!"},
        {"name": "Ada", "email": "a@b.com", "password": "x" * 129},
        {"name": "Ada", "email": "a@b.com", "password": "Abcd123!", "phone": "12345"},
        {"name": "Ada", "email": "a@b.com", "password": "Abcd123!", "gender": "unknown"},
        {"name": "Ada", "email": "a@b.com", "password": "Abcd123!", "role": "admin"},
    ],
)
def test_register_request_rejects(payload):
    with pytest.raises(ValidationError):
        RegisterRequest.model_validate(payload)


def test_register_request_enforces_minimum_age():
    this_year = datetime.now(timezone.utc).year
    with pytest.raises(ValidationError, match="Age must be between"):
        RegisterRequest.model_validate(
            {
                "name": "Ada",
                "email": "a@b.com",
                "password": "Abcd123!",
                "dateOfBirth": f"{this_year - 5}-01-01",
            }
        )


@pytest.mark.parametrize("otp", ["12345", "1234567", "12a456"])
def test_verify_otp_request_requires_six_digits(otp):
    with pytest.raises(ValidationError):
        VerifyOTPRequest.model_validate({"email": "a@b.com", "otp": otp})


def test_reset_request_requires_hex_token():
    ok = ResetPasswordRequest.model_validate({"resetToken": "a" * 64, "newPassword": "Abcd123!"})
    assert ok.reset_token == "a" * 64
    with pytest.raises(ValidationError):
        ResetPasswordRequest.model_validate({"resetToken": "Z" * 64, "newPassword": "Abcd123!"})


@pytest.mark.parametrize(
    "verified, status",
    [(False, "pending_verification"), (True, "active")],
)
def test_user_response_hides_secrets_and_uses_camel_case(verified, status):
    user = User(
        id="u1",
        email="a@b.com",
        name="Ada Roast",
        password_hash="argon-hash",
        is_email_verified=verified,
    )
    wire = UserResponse.from_user(user).to_wire()
    assert wire["accountStatus"] == status
    assert wire["isEmailVerified"] is verified
    assert wire["preferences"]["notifyEmail"] is True
    assert wire["address"]["country"] == "India"
    assert "password_hash" not in wire
    assert "passwordHash" not in wire
    assert "login_attempts" not in wire


def test_envelope_status_is_constrained():
    assert Envelope(status="ok", data={"x": 1}).request_id
    with pytest.raises(ValidationError):
        Envelope(status="maybe")


class TestEmailService:
    def test_unconfigured_service_logs_and_succeeds(self):
        service = EmailService()
        assert service.is_configured is False
        assert service.send_otp_email("ada@example.com", "123456", name="Ada") is True
        assert service.send_password_reset_confirmation("ada@example.com") is True

    def test_redact_email(self):
        service = EmailService()
        assert service._redact_email("ada@example.com") == "ad***@example.com"
        assert service._redact_email("broken") == "redacted"

    def test_smtp_failure_reports_false(self, monkeypatch):
        import smtplib

        class _Refusing:
            def __init__(self, *args, **kwargs):
                raise smtplib.SMTPConnectError(421, "busy")

        monkeypatch.setattr(smtplib, "SMTP", _Refusing)
        service = EmailService(smtp_host="smtp.example.com", from_email="noreply@brewbean.com")
        assert service.is_configured is True
        assert service.send_otp_email("ada@example.com", "123456") is False

    def test_smtp_send_uses_starttls(self, monkeypatch):
        import smtplib

        calls = []

        class _Server:
            def __init__(self, host, port, timeout):
                calls.append(("connect", host, port))

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def starttls(self, context):
                calls.append(("starttls",))

            def login(self, user, password):
                calls.append(("login", user))

            def sendmail(self, sender, to, body):
                calls.append(("sendmail", sender, to))

        monkeypatch.setattr(smtplib, "SMTP", _Server)
        service = EmailService(
            smtp_host="smtp.example.com",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="noreply@brewbean.com",
        )
        assert service.send_password_reset_confirmation("ada@example.com", name="Ada") is True
        assert calls == [
            ("connect", "smtp.example.com", 587),
            ("starttls",),
            ("login", "mailer"),
            ("sendmail", "noreply@brewbean.com", "ada@example.com"),
        ]


def test_update_profile_request_reports_only_sent_parts():
    req = UpdateProfileRequest.model_validate(
        {"address": {"city": " Pune ", "postalCode": "411001"}, "preferences": {"notifySms": True}}
    )
    assert req.name is None
    assert req.address_changes() == {"city": "Pune", "postal_code": "411001"}
    assert req.preference_changes() == {"notify_sms": True}
    assert UpdateProfileRequest.model_validate({}).address_changes() is None
    with pytest.raises(ValidationError):
        UpdateProfileRequest.model_validate({"role": "admin"})
    with pytest.raises(ValidationError):
        UpdateProfileRequest.model_validate({"address": {"street": "Lane"}})

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, timezone
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from brewbean.service.passwords import MAX_PASSWORD_LENGTH
from brewbean.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "locked",
    "rate_limited",
    "validation_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Every API response is wrapped in this envelope."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Please provide a valid email")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email")
    return normalized


_NAME_PATTERN = re.compile(r"^[A-Za-z\s]+$")
_PHONE_PATTERN = re.compile(r"^[+]?[\d\s\-\(\)]+$")
_OTP_PATTERN = re.compile(r"^\d{6}$")
_RESET_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{64}$")
_POSTAL_CODE_PATTERN = re.compile(r"^[0-9]{6}$")

_ADDRESS_LIMITS = {
    "street": (5, 100),
    "city": (2, 50),
    "state": (2, 50),
    "country": (2, 56),
}

MIN_AGE = 13
MAX_AGE = 120


def _age_on(born: date, today: date) -> int:
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def _clean_name(value: str) -> str:
    value = " ".join(value.split())
    if len(value) < 2 or len(value) > 50:
        raise ValueError("Name must be between 2 and 50 characters")
    if not _NAME_PATTERN.match(value):
        raise ValueError("Name can only contain letters and spaces")
    return value


def _clean_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not _PHONE_PATTERN.match(value) or not 10 <= len(value) <= 15:
        raise ValueError("Please provide a valid phone number")
    return value


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RegisterRequest(_Request):
    name: str
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    phone: Optional[str] = None
    date_of_birth: Optional[date] = Field(default=None, alias="dateOfBirth")
    gender: Optional[Literal["male", "female", "other"]] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _clean_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _clean_phone(value)

    @field_validator("date_of_birth")
    @classmethod
    def _validate_age(cls, value: Optional[date]) -> Optional[date]:
        if value is None:
            return None
        age = _age_on(value, datetime.now(timezone.utc).date())
        if age < MIN_AGE or age > MAX_AGE:
            raise ValueError(f"Age must be between {MIN_AGE} and {MAX_AGE} years")
        return value


class LoginRequest(_Request):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class ForgotPasswordRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyOTPRequest(_Request):
    email: str
    otp: str

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("otp")
    @classmethod
    def _validate_otp(cls, value: str) -> str:
        if not _OTP_PATTERN.match(value):
            raise ValueError("OTP must be a 6 digit code")
        return value


class ResetPasswordRequest(_Request):
    reset_token: str = Field(..., alias="resetToken")
    new_password: str = Field(
        ..., min_length=1, max_length=MAX_PASSWORD_LENGTH, alias="newPassword"
    )

    @field_validator("reset_token")
    @classmethod
    def _validate_reset_token(cls, value: str) -> str:
        if not _RESET_TOKEN_PATTERN.match(value):
            raise ValueError("Invalid reset token format")
        return value


class ChangePasswordRequest(_Request):
    current_password: str = Field(
        ..., min_length=1, max_length=MAX_PASSWORD_LENGTH, alias="currentPassword"
    )
    new_password: str = Field(
        ..., min_length=1, max_length=MAX_PASSWORD_LENGTH, alias="newPassword"
    )


class AddressUpdate(_Request):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = Field(default=None, alias="postalCode")
    country: Optional[str] = None

    @field_validator("street", "city", "state", "country")
    @classmethod
    def _validate_part(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is None:
            return None
        value = " ".join(value.split())
        low, high = _ADDRESS_LIMITS[info.field_name]
        if not low <= len(value) <= high:
            label = info.field_name.capitalize()
            if info.field_name == "street":
                label = "Street address"
            raise ValueError(f"{label} must be between {low} and {high} characters")
        return value

    @field_validator("postal_code")
    @classmethod
    def _validate_postal_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not _POSTAL_CODE_PATTERN.match(value):
            raise ValueError("Please provide a valid 6-digit postal code")
        return value


class PreferencesUpdate(_Request):
    newsletter: Optional[bool] = None
    notify_email: Optional[bool] = Field(default=None, alias="notifyEmail")
    notify_sms: Optional[bool] = Field(default=None, alias="notifySms")
    notify_push: Optional[bool] = Field(default=None, alias="notifyPush")


class UpdateProfileRequest(_Request):
    """Partial profile edit; omitted fields and address parts are left as they are."""

    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[AddressUpdate] = None
    preferences: Optional[PreferencesUpdate] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _clean_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _clean_phone(value)

    def address_changes(self) -> Optional[dict[str, str]]:
        if self.address is None:
            return None
        return self.address.model_dump(exclude_none=True) or None

    def preference_changes(self) -> Optional[dict[str, bool]]:
        if self.preferences is None:
            return None
        return self.preferences.model_dump(exclude_none=True) or None


class _Response(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AddressResponse(_Response):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = Field(default=None, serialization_alias="postalCode")
    country: str = "India"


class PreferencesResponse(_Response):
    newsletter: bool
    notify_email: bool = Field(serialization_alias="notifyEmail")
    notify_sms: bool = Field(serialization_alias="notifySms")
    notify_push: bool = Field(serialization_alias="notifyPush")


class UserResponse(_Response):
    """Public view of a customer; secrets and security counters never appear here."""

    id: str
    name: str
    email: str
    phone: Optional[str] = None
    role: str
    is_email_verified: bool = Field(serialization_alias="isEmailVerified")
    is_phone_verified: bool = Field(serialization_alias="isPhoneVerified")
    account_status: str = Field(serialization_alias="accountStatus")
    last_login: Optional[datetime] = Field(default=None, serialization_alias="lastLogin")
    created_at: datetime = Field(serialization_alias="createdAt")
    address: AddressResponse
    preferences: PreferencesResponse

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            phone=user.phone,
            role=user.role,
            is_email_verified=user.is_email_verified,
            is_phone_verified=user.is_phone_verified,
            account_status=user.account_status,
            last_login=user.last_login,
            created_at=user.created_at,
            address=AddressResponse(**vars(user.address)),
            preferences=PreferencesResponse(**vars(user.preferences)),
        )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

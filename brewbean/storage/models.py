from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


ROLES = ("customer", "admin", "moderator")
GENDERS = ("male", "female", "other")


@dataclass
class ActiveSession:
    """A device currently holding a valid token for the user."""

    token_id: str
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    # Set on the session kept through a password change so its token stays valid
    password_confirmed_at: Optional[datetime] = None


@dataclass
class InvalidatedToken:
    token_id: str
    reason: str
    invalidated_at: datetime = field(default_factory=_utcnow)


@dataclass
class OTPState:
    code_hash: str
    expires_at: datetime
    verified: bool = False
    attempts: int = 0


@dataclass
class Address:
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "India"


@dataclass
class Preferences:
    newsletter: bool = False
    notify_email: bool = True
    notify_sms: bool = False
    notify_push: bool = True


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: str
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    role: str = "customer"
    is_email_verified: bool = False
    is_phone_verified: bool = False
    is_active: bool = True
    address: Address = field(default_factory=Address)
    preferences: Preferences = field(default_factory=Preferences)

    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    otp: Optional[OTPState] = None
    reset_password_token: Optional[str] = None
    reset_password_expires: Optional[datetime] = None
    active_sessions: List[ActiveSession] = field(default_factory=list)
    invalidated_tokens: List[InvalidatedToken] = field(default_factory=list)

    last_login: Optional[datetime] = None
    login_ip: Optional[str] = None
    registration_ip: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[str] = None

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return self.lock_until is not None and self.lock_until > now

    def status_at(self, now: datetime) -> str:
        if not self.is_active:
            return "inactive"
        if self.is_locked(now):
            return "locked"
        if not self.is_email_verified:
            return "pending_verification"
        return "active"

    @property
    def account_status(self) -> str:
        return self.status_at(_utcnow())

    def find_session(self, token_id: str) -> Optional[ActiveSession]:
        return next(
            (s for s in self.active_sessions if s.token_id == token_id), None
        )

    def is_token_invalidated(self, token_id: str) -> bool:
        return any(entry.token_id == token_id for entry in self.invalidated_tokens)

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional

from brewbean.config import Settings
from brewbean.logging import get_logger
from brewbean.service.email import EmailService
from brewbean.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    LockedError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from brewbean.service.lockout import LockoutTracker
from brewbean.service.otp import OTPService
from brewbean.service.passwords import hash_password, validate_strength, verify_password
from brewbean.service.sessions import AuthContext, SessionRegistry
from brewbean.service.tokens import IssuedToken, TokenService
from brewbean.storage.errors import ConstraintViolation
from brewbean.storage.models import User

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, an OTP has been sent"
INVALID_CREDENTIALS = "Invalid email or password"
INVALID_RESET_TOKEN = "Invalid or expired reset token"


@dataclass
class AuthResult:
    user: User
    token: IssuedToken


class AuthService:
    """Registration, login, password reset and session lifecycle for customers."""

    def __init__(
        self,
        store,
        settings: Settings,
        email: EmailService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.settings = settings
        self.email = email
        self._clock = clock
        self.logger = logger
        self.tokens = TokenService(settings)
        self.lockout = LockoutTracker(
            store,
            max_attempts=settings.max_login_attempts,
            lockout_minutes=settings.lockout_minutes,
        )
        self.otp = OTPService(
            store,
            secret=settings.jwt_secret,
            ttl_minutes=settings.otp_ttl_minutes,
            max_attempts=settings.max_otp_attempts,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )
        self.sessions = SessionRegistry(
            store, self.tokens, max_sessions=settings.max_active_sessions
        )

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @staticmethod
    def _require_strong(password: str) -> None:
        problem = validate_strength(password)
        if problem:
            raise ValidationError(problem, detail={"field": "password"})

    async def register(
        self,
        *,
        name: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        date_of_birth: Optional[date] = None,
        gender: Optional[str] = None,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthResult:
        self._require_strong(password)
        try:
            user = self.store.create_user(
                email=email,
                name=name,
                password_hash=hash_password(password),
                phone=phone,
                date_of_birth=date_of_birth,
                gender=gender,
                registration_ip=ip,
            )
        except ConstraintViolation as exc:
            field = exc.field or "email"
            self.logger.info("register_conflict", field=field)
            if field == "phone":
                raise ConflictError("User with this phone number already exists")
            raise ConflictError("User with this email already exists")
        token = self.sessions.open_session(
            user, device_info=device_info, ip=ip, remember_me=False, now=self._now()
        )
        self.logger.info("user_registered", user_id=user.id)
        return AuthResult(user=self.store.get_user(user.id) or user, token=token)

    async def login(
        self,
        *,
        email: str,
        password: str,
        remember_me: bool = False,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthResult:
        now = self._now()
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("login_unknown_account")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not user.is_active:
            self.logger.info("login_rejected_inactive", user_id=user.id)
            raise ForbiddenError("Account is inactive. Please contact support.")
        self.lockout.check(user, now)

        if not verify_password(password, user.password_hash):
            updated = self.lockout.record_failure(user, now)
            if updated.is_locked(now):
                raise LockedError(
                    "Too many failed attempts. Account locked for "
                    f"{self.settings.lockout_minutes} minutes.",
                    retry_after=int((updated.lock_until - now).total_seconds()),
                )
            raise AuthenticationError(INVALID_CREDENTIALS)

        user = self.lockout.record_success(user, now, ip)
        token = self.sessions.open_session(
            user, device_info=device_info, ip=ip, remember_me=remember_me, now=now
        )
        self.logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        return AuthResult(user=self.store.get_user(user.id) or user, token=token)

    async def forgot_password(self, email: str) -> dict[str, str]:
        """Send a reset OTP if the account exists; the reply never says whether it does."""
        now = self._now()
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("forgot_password_unknown_account")
            return {"message": FORGOT_PASSWORD_MESSAGE}
        # Same reply as an unknown email so the lock state is not disclosed
        if not user.is_active or user.is_locked(now):
            self.logger.info(
                "forgot_password_skipped",
                user_id=user.id,
                account_status=user.status_at(now),
            )
            return {"message": FORGOT_PASSWORD_MESSAGE}

        code, _reset_token, state = self.otp.issue(user, now)
        sent = await asyncio.to_thread(
            self.email.send_otp_email, user.email, code, user.name
        )
        if not sent:
            self.otp.rollback(user, state)
            self.logger.error("otp_delivery_failed", user_id=user.id)
            raise ServerError("Failed to send OTP. Please try again later.")
        return {"message": FORGOT_PASSWORD_MESSAGE}

    async def verify_otp(self, email: str, otp: str) -> str:
        now = self._now()
        user = self.store.get_user_by_email(email)
        if not user:
            raise ValidationError("Invalid or expired OTP")
        return self.otp.verify(user, otp, now)

    async def reset_password(self, reset_token: str, new_password: str) -> dict[str, str]:
        self._require_strong(new_password)
        now = self._now()
        user = self.store.find_user_by_reset_token(reset_token, now)
        if not user or not user.otp or not user.otp.verified:
            raise ValidationError(INVALID_RESET_TOKEN)
        updated = self.store.complete_password_reset(
            reset_token, password_hash=hash_password(new_password), now=now
        )
        if updated is None:
            raise ValidationError(INVALID_RESET_TOKEN)
        self.logger.info(
            "password_reset_completed",
            user_id=updated.id,
            sessions_revoked=len(user.active_sessions),
        )
        sent = await asyncio.to_thread(
            self.email.send_password_reset_confirmation, updated.email, updated.name
        )
        if not sent:
            self.logger.warning("password_reset_confirmation_not_sent", user_id=updated.id)
        return {
            "message": "Password reset successful. Please log in with your new password."
        }

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> dict[str, str]:
        user = self.store.get_user(ctx.user_id) or ctx.user
        if not verify_password(current_password, user.password_hash):
            self.logger.info("change_password_wrong_current", user_id=user.id)
            raise ValidationError("Current password is incorrect")
        self._require_strong(new_password)
        if current_password == new_password or verify_password(
            new_password, user.password_hash
        ):
            raise ValidationError("New password must be different from current password")
        updated = self.sessions.close_others(
            user,
            ctx.token_id,
            password_hash=hash_password(new_password),
            now=self._now(),
        )
        self.logger.info(
            "password_changed", user_id=user.id, sessions=len(updated.active_sessions)
        )
        return {
            "message": "Password changed successfully. Other devices have been logged out."
        }

    async def logout(self, ctx: AuthContext) -> dict[str, str]:
        self.sessions.close(ctx.user, ctx.token_id, reason="logout", now=self._now())
        return {"message": "Logged out successfully"}

    async def logout_all(self, ctx: AuthContext) -> dict[str, object]:
        removed = self.sessions.close_all(ctx.user, reason="logout", now=self._now())
        return {
            "message": "Logged out from all devices successfully",
            "sessionsRevoked": len(removed),
        }

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization: Bearer`` header to the calling user."""
        token = None
        if authorization:
            scheme, _, value = authorization.partition(" ")
            if scheme.lower() == "bearer" and value.strip():
                token = value.strip()
        return self.sessions.validate(token, self._now())

    async def get_profile(self, ctx: AuthContext) -> User:
        return self.store.get_user(ctx.user_id) or ctx.user

    async def update_profile(
        self,
        ctx: AuthContext,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[dict[str, str]] = None,
        preferences: Optional[dict[str, bool]] = None,
    ) -> User:
        """Apply a partial profile edit; fields left as None are untouched."""
        try:
            user = self.store.update_profile(
                ctx.user_id,
                name=name,
                phone=phone,
                address=address,
                preferences=preferences,
                now=self._now(),
            )
        except ConstraintViolation as exc:
            self.logger.info("profile_update_conflict", user_id=ctx.user_id, field=exc.field)
            raise ConflictError("User with this phone number already exists")
        if user is None:
            raise NotFoundError("User not found")
        changed = [
            label
            for label, value in (
                ("name", name),
                ("phone", phone),
                ("address", address),
                ("preferences", preferences),
            )
            if value is not None
        ]
        self.logger.info("profile_updated", user_id=user.id, fields=changed)
        return user

    def purge_expired_state(self) -> int:
        """Sweep expired OTP, reset and ledger state across every account."""
        touched = self.store.purge_expired_state(self._now())
        if touched:
            self.logger.info("auth_state_purged", records=touched)
        return touched

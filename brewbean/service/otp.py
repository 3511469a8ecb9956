from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Tuple

from brewbean.logging import get_logger
from brewbean.service.errors import NotFoundError, RateLimitedError, ValidationError
from brewbean.storage.models import OTPState, User

logger = get_logger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999


class OTPService:
    """Issues and verifies the six digit codes used for password resets.

    Only an HMAC of the code is stored, keyed with the app secret and salted
    with the user id so equal codes never share a digest.
    """

    def __init__(
        self,
        store,
        *,
        secret: str,
        ttl_minutes: int = 10,
        max_attempts: int = 3,
        reset_ttl_minutes: int = 60,
    ):
        self.store = store
        self._secret = secret.encode()
        self.ttl = timedelta(minutes=ttl_minutes)
        self.max_attempts = max_attempts
        self.reset_ttl = timedelta(minutes=reset_ttl_minutes)

    def _hash(self, user_id: str, code: str) -> str:
        return hmac.new(
            self._secret, f"{user_id}:{code}".encode(), hashlib.sha256
        ).hexdigest()

    @staticmethod
    def generate_code() -> str:
        return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))

    def issue(self, user: User, now: datetime) -> Tuple[str, str, OTPState]:
        """Store a fresh OTP and reset token for ``user``, replacing any prior one.

        Returns ``(code, reset_token, state)``; the code itself is never stored.
        """
        code = self.generate_code()
        reset_token = secrets.token_hex(32)
        state = OTPState(
            code_hash=self._hash(user.id, code),
            expires_at=now + self.ttl,
            verified=False,
            attempts=0,
        )
        updated = self.store.set_otp(
            user.id,
            otp=state,
            reset_token=reset_token,
            reset_expires=now + self.reset_ttl,
            now=now,
        )
        if updated is None:
            raise NotFoundError("user not found")
        logger.info("otp_issued", user_id=user.id, expires_at=state.expires_at.isoformat())
        return code, reset_token, state

    def rollback(self, user: User, state: OTPState) -> None:
        cleared = self.store.clear_otp_and_reset(user.id, code_hash=state.code_hash)
        logger.info("otp_rolled_back", user_id=user.id, cleared=cleared)

    def verify(self, user: User, code: str, now: datetime) -> str:
        """Check ``code`` against the user's pending OTP and return the reset token."""
        otp = user.otp
        if otp is None or otp.expires_at <= now:
            raise ValidationError("Invalid or expired OTP")
        if not hmac.compare_digest(self._hash(user.id, code), otp.code_hash):
            attempts = self.store.record_otp_failure(
                user.id, code_hash=otp.code_hash, max_attempts=self.max_attempts
            )
            if attempts is None:
                raise ValidationError("Invalid or expired OTP")
            if attempts >= self.max_attempts:
                logger.warning("otp_attempts_exhausted", user_id=user.id, attempts=attempts)
                raise RateLimitedError(
                    "Too many OTP attempts. Please request a new OTP."
                )
            logger.info("otp_mismatch", user_id=user.id, attempts=attempts)
            raise ValidationError("Invalid OTP")
        reset_token = self.store.mark_otp_verified(
            user.id, code_hash=otp.code_hash, now=now
        )
        if reset_token is None:
            raise ValidationError("Invalid or expired OTP")
        logger.info("otp_verified", user_id=user.id)
        return reset_token

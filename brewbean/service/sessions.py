from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from brewbean.logging import get_logger
from brewbean.service.errors import AuthenticationError, LockedError, NotFoundError
from brewbean.service.tokens import IssuedToken, TokenService
from brewbean.storage.models import ActiveSession, User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """The authenticated caller behind a validated bearer token."""

    user: User
    token_id: str

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role


class SessionRegistry:
    """Tracks the devices holding tokens for each user and the ledger of revoked ones."""

    def __init__(self, store, tokens: TokenService, *, max_sessions: int = 5):
        self.store = store
        self.tokens = tokens
        self.max_sessions = max_sessions

    def open_session(
        self,
        user: User,
        *,
        device_info: Optional[str],
        ip: Optional[str],
        remember_me: bool,
        now: datetime,
    ) -> IssuedToken:
        token_id = str(uuid.uuid4())
        session = ActiveSession(
            token_id=token_id,
            device_info=device_info,
            ip_address=ip,
            created_at=now,
            last_activity=now,
        )
        evicted = self.store.add_session(user.id, session, max_sessions=self.max_sessions)
        if evicted is None:
            raise NotFoundError("user not found")
        if evicted:
            logger.info("sessions_evicted", user_id=user.id, evicted=len(evicted))
        issued = self.tokens.issue(user.id, token_id, remember_me=remember_me, now=now)
        logger.info(
            "session_opened", user_id=user.id, token_id=token_id, remember_me=remember_me
        )
        return issued

    def touch(self, user: User, token_id: str, now: datetime) -> bool:
        return self.store.touch_session(user.id, token_id, now)

    def close(
        self, user: User, token_id: str, *, reason: str = "logout", now: datetime
    ) -> List[str]:
        removed = self.store.remove_sessions(
            user.id, reason=reason, token_ids=[token_id], now=now
        )
        logger.info("session_closed", user_id=user.id, token_id=token_id, reason=reason)
        return removed

    def close_all(self, user: User, *, reason: str, now: datetime) -> List[str]:
        removed = self.store.remove_sessions(user.id, reason=reason, now=now)
        logger.info("sessions_closed", user_id=user.id, count=len(removed), reason=reason)
        return removed

    def close_others(
        self, user: User, keep_token_id: str, *, password_hash: str, now: datetime
    ) -> User:
        """Store a new password hash and ledger every session but ``keep_token_id``.

        The kept session records ``password_confirmed_at`` so its token
        survives the ``password_changed_at`` check.
        """
        updated = self.store.update_password(
            user.id, password_hash=password_hash, keep_token_id=keep_token_id, now=now
        )
        if updated is None:
            raise NotFoundError("user not found")
        logger.info(
            "sessions_closed",
            user_id=user.id,
            kept_token_id=keep_token_id,
            reason="password_change",
            remaining=len(updated.active_sessions),
        )
        return updated

    def validate(self, token: Optional[str], now: datetime) -> AuthContext:
        """Resolve a bearer token to its user, applying every revocation check in order."""
        if not token:
            raise AuthenticationError("Access denied. No token provided.")
        payload = self.tokens.decode(token, now)
        user_id = str(payload["sub"])
        token_id = str(payload["jti"])

        user = self.store.get_user(user_id)
        if user is None:
            raise AuthenticationError("Invalid token. User not found.")
        if not user.is_active:
            raise AuthenticationError("User account is inactive.")
        if user.is_locked(now):
            raise LockedError(
                "Account is temporarily locked. Please try again later.",
                retry_after=int((user.lock_until - now).total_seconds()),
            )
        if user.is_token_invalidated(token_id):
            raise AuthenticationError("Token has been invalidated. Please log in again.")

        session = user.find_session(token_id)
        if user.password_changed_at is not None:
            issued_at = int(float(payload["iat"]))
            if session is not None and session.password_confirmed_at is not None:
                issued_at = max(issued_at, int(session.password_confirmed_at.timestamp()))
            if issued_at < int(user.password_changed_at.timestamp()):
                raise AuthenticationError(
                    "User recently changed password. Please log in again."
                )
        if session is None:
            raise AuthenticationError("Session expired. Please log in again.")

        self.touch(user, token_id, now)
        return AuthContext(user=user, token_id=token_id)

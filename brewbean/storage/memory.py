from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from brewbean.logging import get_logger
from brewbean.storage.errors import ConstraintViolation
from brewbean.storage.models import (
    ActiveSession,
    Address,
    InvalidatedToken,
    OTPState,
    Preferences,
    User,
    _utcnow,
)


def housekeep_user(user: User, now: datetime, ledger_retention: timedelta) -> bool:
    """Drop expired OTP, reset and ledger state from ``user`` in place.

    A verified OTP is kept until its reset token expires so the reset can
    still complete. Returns True when anything changed.
    """
    changed = False
    if user.otp and not user.otp.verified and user.otp.expires_at <= now:
        user.otp = None
        changed = True
    if user.reset_password_expires and user.reset_password_expires <= now:
        user.reset_password_token = None
        user.reset_password_expires = None
        user.otp = None
        changed = True
    cutoff = now - ledger_retention
    kept = [e for e in user.invalidated_tokens if e.invalidated_at > cutoff]
    if len(kept) != len(user.invalidated_tokens):
        user.invalidated_tokens = kept
        changed = True
    return changed


def apply_ledger(
    user: User, token_ids: Iterable[str], reason: str, now: datetime
) -> List[str]:
    """Record ``token_ids`` as invalidated and drop them from active sessions."""
    targets = set(token_ids)
    already = {e.token_id for e in user.invalidated_tokens}
    for token_id in targets - already:
        user.invalidated_tokens.append(
            InvalidatedToken(token_id=token_id, reason=reason, invalidated_at=now)
        )
    removed = [s.token_id for s in user.active_sessions if s.token_id in targets]
    user.active_sessions = [
        s for s in user.active_sessions if s.token_id not in targets
    ]
    return removed


class MemoryStore:
    """In-memory credential store persisted to a JSON file.

    Every mutation runs under ``_data_lock`` and touches only the fields it
    names, so concurrent logins, OTP checks and logouts on the same user
    never overwrite each other. Reads return copies.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/brewbean",
        *,
        ledger_retention: timedelta = timedelta(days=30),
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.ledger_retention = ledger_retention
        # RLock so helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _find_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        return next((u for u in self.users.values() if u.email == normalized), None)

    def _mutate(self, user_id: str, now: Optional[datetime] = None) -> Optional[User]:
        user = self.users.get(user_id)
        if user is not None:
            housekeep_user(user, now or _utcnow(), self.ledger_retention)
        return user

    def _commit(self, user: User, now: Optional[datetime] = None) -> User:
        user.updated_at = now or _utcnow()
        self._persist_state()
        return copy.deepcopy(user)

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        *,
        email: str,
        name: str,
        password_hash: str,
        phone: Optional[str] = None,
        date_of_birth: Optional[date] = None,
        gender: Optional[str] = None,
        role: str = "customer",
        registration_ip: Optional[str] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if self._find_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone and any(u.phone == phone for u in self.users.values()):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                password_hash=password_hash,
                phone=phone,
                date_of_birth=date_of_birth,
                gender=gender,
                role=role,
                registration_ip=registration_ip,
            )
            self.users[user.id] = user
            return self._commit(user, user.created_at)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            return copy.deepcopy(user) if user else None

    def find_user_by_reset_token(
        self, reset_token: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or _utcnow()
        with self._data_lock:
            for user in self.users.values():
                if (
                    user.reset_password_token == reset_token
                    and user.reset_password_expires is not None
                    and user.reset_password_expires > now
                ):
                    return copy.deepcopy(user)
            return None

    def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self._mutate(user_id)
            if not user:
                return None
            user.role = role
            return self._commit(user)

    def set_user_active(
        self, user_id: str, is_active: bool, *, reason: Optional[str] = None
    ) -> Optional[User]:
        now = _utcnow()
        with self._data_lock:
            user = self._mutate(user_id, now)
            if not user:
                return None
            user.is_active = is_active
            user.deactivated_at = None if is_active else now
            user.deactivation_reason = None if is_active else reason
            return self._commit(user, now)

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[Dict[str, str]] = None,
        preferences: Optional[Dict[str, bool]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """Overwrite only the given fields; address and preferences merge key by key."""
        now = now or _utcnow()
        with self._data_lock:
            user = self._mutate(user_id, now)
            if not user:
                return None
            if phone and any(
                u.phone == phone for u in self.users.values() if u.id != user_id
            ):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            if name is not None:
                user.name = name
            if phone is not None:
                user.phone = phone
            for key, value in (address or {}).items():
                setattr(user.address, key, value)
            for key, value in (preferences or {}).items():
                setattr(user.preferences, key, value)
            return self._commit(user, now)

    # -- lockout -----------------------------------------------------------

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or _utcnow()
        with self._data_lock:
            user = self._mutate(user_id, now)
            if not user:
                return None
            if user.lock_until is not None and user.lock_until <= now:
                # Lock has lapsed; this failure starts a fresh count
                user.login_attempts = 0
                user.lock_until = None
            user.login_attempts += 1
            if user.login_attempts >= max_attempts and not user.is_locked(now):
                user.lock_until = now + lockout
            return self._commit(user, now)

    def record_successful_login(
        self, user_id: str, *, ip: Optional[str], now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or _utcnow()
        with self._data_lock:
            user = self._mutate(user_id, now)
            if not user:
                return None
            user.login_attempts = 0
            user.lock_until = None
            user.last_login = now
            user.login_ip = ip
            return self._commit(user, now)

    # -- OTP and reset -----------------------------------------------------

    def set_otp(
        self,
        user_id: str,
        *,
        otp: OTPState,
        reset_token: str,
        reset_expires: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or _utcnow()
        with self._data_lock:
            user = self._mutate(user_id, now)
            if not user:
                return None
            user.otp = otp
            user.reset_password_token = reset_token
            user.reset_password_expires = reset_expires
            return self._commit(user, now)

    def clear_otp_and_reset(
        self, user_id: str, *, code_hash: Optional[str] = None
    ) -> bool:
        """Clear OTP and reset state; with ``code_hash`` only if it still matches."""
        with self._data_lock:
            user = self._mutate(user_id)
            if not user:
                return False
            if code_hash is not None and (
                user.otp is None or user.otp.code_hash != code_hash
            ):
                return False
            user.otp = None
            user.reset_password_token = None
            user.reset_password_expires = None
            self._commit(user)
            return True

    def record_otp_failure(
        self, user_id: str, *, code_hash: str, max_attempts: int
    ) -> Optional[int]:
        """Count a wrong guess against the OTP identified by ``code_hash``.

        Returns the attempt count, or None when that OTP is no longer current.
        Reaching ``max_attempts`` clears the OTP and its reset token.
        """
        with self._data_lock:
            user = self._mutate(user_id)
            if not user or user.otp is None or user.otp.code_hash != code_hash:
                return None
            user.otp.attempts += 1
            attempts = user.otp.attempts
            if attempts >= max_attempts:
                user.otp = None
                user.reset_password_token = None
                user.reset_password_expires = None
            self._commit(user)
            return attempts

    def mark_otp_verified(
        self, user_id: str, *, code_hash: str, now: Optional[datetime] = None
    ) -> Optional[str]:
        """Flag the OTP verified if it is still the current, unexpired one.

        Returns the reset token on success.
        """
        now = now or _utcnow()
        with self._data_lock:
            user = self._mutate(user_id, now)
            if not user or user.otp is None or user.otp.code_hash != code_hash:
                return None
            if user.otp.expires_at <= now or not user.reset_password_token:
                return None
            user.otp.verified = True
            self._commit(user, now)
            return user.reset_password_token

    def complete_password_reset(
        self,
        reset_token: str,
        *,
        password_hash: str,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """Swap the password for the holder of a verified reset token.

        Every active session is moved to the ledger. Returns None when the
        token is unknown, expired or its OTP was never verified.
        """
        now = now or _utcnow()
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.reset_password_token == reset_token
                ),
                None,
            )
            if user is None:
                return None
            housekeep_user(user, now, self.ledger_retention)
            if (
                user.reset_password_token != reset_token
                or user.otp is None
                or not user.otp.verified
            ):
                return None
            user.password_hash = password_hash
            user.password_changed_at = now
            user.otp = None
            user.reset_password_token = None
            user.reset_password_expires = None
            user.login_attempts = 0
            user.lock_until = None
            apply_ledger(
                user, [s.token_id for s in user.active_sessions], "password_change", now
            )
            return self._commit(user, now)

    def update_password(
        self,
        user_id: str,
        *,
        password_hash: str,
        keep_token_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """Replace the hash and invalidate every session except ``keep_token_id``."""
        now = now or _utcnow()
        with self._data_lock:
            user = self._mutate(user_id, now)
            if not user:
                return None
            user.password_hash = password_hash
            user.password_changed_at = now
            others = [
                s.token_id for s in user.active_sessions if s.token_id != keep_token_id
            ]
            apply_ledger(user, others, "password_change", now)
            kept = user.find_session(keep_token_id) if keep_token_id else None
            if kept is not None:
                kept.password_confirmed_at = now
            return self._commit(user, now)

    # -- sessions ----------------------------------------------------------

    def add_session(
        self, user_id: str, session: ActiveSession, *, max_sessions: int
    ) -> Optional[List[str]]:
        """Append ``session`` and evict the oldest beyond ``max_sessions``.

        Returns the evicted token ids, or None if the user is missing.
        """
        with self._data_lock:
            user = self._mutate(user_id, session.created_at)
            if not user:
                return None
            user.active_sessions.append(session)
            evicted: List[str] = []
            while len(user.active_sessions) > max_sessions:
                evicted.append(user.active_sessions.pop(0).token_id)
            self._commit(user, session.created_at)
            return evicted

    def touch_session(
        self, user_id: str, token_id: str, now: Optional[datetime] = None
    ) -> bool:
        now = now or _utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            session = user.find_session(token_id) if user else None
            if session is None:
                return False
            session.last_activity = now
            self._persist_state()
            return True

    def remove_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        token_ids: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Ledger and remove ``token_ids`` (all sessions when None) in one step."""
        now = now or _utcnow()
        with self._data_lock:
            user = self._mutate(user_id, now)
            if not user:
                return []
            targets = (
                list(token_ids)
                if token_ids is not None
                else [s.token_id for s in user.active_sessions]
            )
            removed = apply_ledger(user, targets, reason, now)
            self._commit(user, now)
            return removed

    # -- maintenance -------------------------------------------------------

    def purge_expired_state(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        with self._data_lock:
            touched = sum(
                1
                for user in self.users.values()
                if housekeep_user(user, now, self.ledger_retention)
            )
            if touched:
                self._persist_state()
            return touched

    def ping(self) -> bool:
        with self._data_lock:
            return self.fs_root.exists()

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True

    def _serialize_user(self, user: User) -> dict:
        dt = self._serialize_datetime
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "phone": user.phone,
            "date_of_birth": user.date_of_birth.isoformat() if user.date_of_birth else None,
            "gender": user.gender,
            "role": user.role,
            "is_email_verified": user.is_email_verified,
            "is_phone_verified": user.is_phone_verified,
            "is_active": user.is_active,
            "address": vars(user.address),
            "preferences": vars(user.preferences),
            "login_attempts": user.login_attempts,
            "lock_until": dt(user.lock_until),
            "password_changed_at": dt(user.password_changed_at),
            "otp": (
                {
                    "code_hash": user.otp.code_hash,
                    "expires_at": dt(user.otp.expires_at),
                    "verified": user.otp.verified,
                    "attempts": user.otp.attempts,
                }
                if user.otp
                else None
            ),
            "reset_password_token": user.reset_password_token,
            "reset_password_expires": dt(user.reset_password_expires),
            "active_sessions": [
                {
                    "token_id": s.token_id,
                    "device_info": s.device_info,
                    "ip_address": s.ip_address,
                    "created_at": dt(s.created_at),
                    "last_activity": dt(s.last_activity),
                    "password_confirmed_at": dt(s.password_confirmed_at),
                }
                for s in user.active_sessions
            ],
            "invalidated_tokens": [
                {
                    "token_id": e.token_id,
                    "reason": e.reason,
                    "invalidated_at": dt(e.invalidated_at),
                }
                for e in user.invalidated_tokens
            ],
            "last_login": dt(user.last_login),
            "login_ip": user.login_ip,
            "registration_ip": user.registration_ip,
            "created_at": dt(user.created_at),
            "updated_at": dt(user.updated_at),
            "deactivated_at": dt(user.deactivated_at),
            "deactivation_reason": user.deactivation_reason,
        }

    def _deserialize_user(self, data: dict) -> User:
        dt = self._deserialize_datetime
        otp = data.get("otp")
        dob = data.get("date_of_birth")
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data["name"],
            password_hash=data["password_hash"],
            phone=data.get("phone"),
            date_of_birth=date.fromisoformat(dob) if dob else None,
            gender=data.get("gender"),
            role=data.get("role", "customer"),
            is_email_verified=data.get("is_email_verified", False),
            is_phone_verified=data.get("is_phone_verified", False),
            is_active=data.get("is_active", True),
            address=Address(**(data.get("address") or {})),
            preferences=Preferences(**(data.get("preferences") or {})),
            login_attempts=data.get("login_attempts", 0),
            lock_until=dt(data.get("lock_until")),
            password_changed_at=dt(data.get("password_changed_at")),
            otp=(
                OTPState(
                    code_hash=otp["code_hash"],
                    expires_at=dt(otp["expires_at"]),
                    verified=otp.get("verified", False),
                    attempts=otp.get("attempts", 0),
                )
                if otp
                else None
            ),
            reset_password_token=data.get("reset_password_token"),
            reset_password_expires=dt(data.get("reset_password_expires")),
            active_sessions=[
                ActiveSession(
                    token_id=s["token_id"],
                    device_info=s.get("device_info"),
                    ip_address=s.get("ip_address"),
                    created_at=dt(s["created_at"]),
                    last_activity=dt(s["last_activity"]),
                    password_confirmed_at=dt(s.get("password_confirmed_at")),
                )
                for s in data.get("active_sessions", [])
            ],
            invalidated_tokens=[
                InvalidatedToken(
                    token_id=e["token_id"],
                    reason=e["reason"],
                    invalidated_at=dt(e["invalidated_at"]),
                )
                for e in data.get("invalidated_tokens", [])
            ],
            last_login=dt(data.get("last_login")),
            login_ip=data.get("login_ip"),
            registration_ip=data.get("registration_ip"),
            created_at=dt(data["created_at"]),
            updated_at=dt(data.get("updated_at")) or dt(data["created_at"]),
            deactivated_at=dt(data.get("deactivated_at")),
            deactivation_reason=data.get("deactivation_reason"),
        )

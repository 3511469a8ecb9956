from __future__ import annotations

import json
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS customer (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        phone TEXT,
        date_of_birth DATE,
        gender TEXT,
        role TEXT NOT NULL DEFAULT 'customer',
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        address JSONB NOT NULL DEFAULT '{}'::jsonb,
        preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
        login_attempts INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        otp_hash TEXT,
        otp_expires_at TIMESTAMPTZ,
        otp_verified BOOLEAN NOT NULL DEFAULT FALSE,
        otp_attempts INTEGER NOT NULL DEFAULT 0,
        reset_password_token TEXT,
        reset_password_expires TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        login_ip TEXT,
        registration_ip TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deactivated_at TIMESTAMPTZ,
        deactivation_reason TEXT
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS customer_email_key ON customer (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS customer_phone_key ON customer (phone) WHERE phone IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS customer_reset_token_idx ON customer (reset_password_token) WHERE reset_password_token IS NOT NULL",
    """
    CREATE TABLE IF NOT EXISTS customer_session (
        token_id TEXT PRIMARY KEY,
        seq BIGSERIAL,
        customer_id UUID NOT NULL REFERENCES customer(id) ON DELETE CASCADE,
        device_info TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL,
        password_confirmed_at TIMESTAMPTZ
    )
    """,
    "ALTER TABLE customer_session ADD COLUMN IF NOT EXISTS seq BIGSERIAL",
    "CREATE INDEX IF NOT EXISTS customer_session_owner_idx ON customer_session (customer_id, seq)",
    """
    CREATE TABLE IF NOT EXISTS token_invalidation (
        customer_id UUID NOT NULL REFERENCES customer(id) ON DELETE CASCADE,
        token_id TEXT NOT NULL,
        reason TEXT NOT NULL,
        invalidated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (customer_id, token_id)
    )
    """,
)

# Clears expired OTP, reset and ledger state for one customer (or all when id is NULL)
_HOUSEKEEP_OTP_SQL = """
    UPDATE customer
    SET otp_hash = NULL, otp_expires_at = NULL, otp_verified = FALSE, otp_attempts = 0
    WHERE (%(id)s::uuid IS NULL OR id = %(id)s::uuid)
      AND otp_hash IS NOT NULL AND otp_verified = FALSE AND otp_expires_at <= %(now)s
"""
_HOUSEKEEP_RESET_SQL = """
    UPDATE customer
    SET reset_password_token = NULL, reset_password_expires = NULL,
        otp_hash = NULL, otp_expires_at = NULL, otp_verified = FALSE, otp_attempts = 0
    WHERE (%(id)s::uuid IS NULL OR id = %(id)s::uuid)
      AND reset_password_expires IS NOT NULL AND reset_password_expires <= %(now)s
"""
_HOUSEKEEP_LEDGER_SQL = """
    DELETE FROM token_invalidation
    WHERE (%(id)s::uuid IS NULL OR customer_id = %(id)s::uuid)
      AND invalidated_at <= %(cutoff)s
"""

_CLEAR_OTP_COLUMNS = """
    otp_hash = NULL, otp_expires_at = NULL, otp_verified = FALSE, otp_attempts = 0,
    reset_password_token = NULL, reset_password_expires = NULL
"""


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", "") or ""
    field = "phone" if "phone" in constraint else "email"
    return ConstraintViolation(f"{field} already exists", {"field": field})


class PostgresStore:
    """Postgres-backed credential store.

    Counter updates are single ``UPDATE ... RETURNING`` statements; session and
    ledger changes run in one transaction that holds the customer row with
    ``SELECT ... FOR UPDATE``.
    """

    def __init__(
        self, dsn: str, *, ledger_retention: timedelta = timedelta(days=30)
    ) -> None:
        self.dsn = dsn
        self.ledger_retention = ledger_retention
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the customer, session and ledger tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", statements=len(_SCHEMA_STATEMENTS))

    def _housekeep(self, conn, user_id: Optional[str], now: datetime) -> int:
        params = {"id": user_id, "now": now, "cutoff": now - self.ledger_retention}
        touched = 0
        for statement in (
            _HOUSEKEEP_OTP_SQL,
            _HOUSEKEEP_RESET_SQL,
            _HOUSEKEEP_LEDGER_SQL,
        ):
            touched += conn.execute(statement, params).rowcount or 0
        return touched

    def _lock_customer(self, conn, user_id: str) -> Optional[dict]:
        return conn.execute(
            "SELECT * FROM customer WHERE id = %s FOR UPDATE", (user_id,)
        ).fetchone()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_session(row: dict) -> ActiveSession:
        return ActiveSession(
            token_id=row["token_id"],
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
            last_activity=row["last_activity"],
            password_confirmed_at=row.get("password_confirmed_at"),
        )

    def _load_user(self, conn, row: Optional[dict]) -> Optional[User]:
        if not row:
            return None
        user_id = row["id"]
        sessions = conn.execute(
            "SELECT * FROM customer_session WHERE customer_id = %s ORDER BY seq",
            (user_id,),
        ).fetchall()
        ledger = conn.execute(
            "SELECT token_id, reason, invalidated_at FROM token_invalidation WHERE customer_id = %s ORDER BY invalidated_at",
            (user_id,),
        ).fetchall()
        return self._row_to_user(row, sessions, ledger)

    def _row_to_user(
        self, row: dict, sessions: Iterable[dict], ledger: Iterable[dict]
    ) -> User:
        address = row.get("address") or {}
        preferences = row.get("preferences") or {}
        if isinstance(address, str):
            address = json.loads(address)
        if isinstance(preferences, str):
            preferences = json.loads(preferences)
        otp = None
        if row.get("otp_hash"):
            otp = OTPState(
                code_hash=row["otp_hash"],
                expires_at=row["otp_expires_at"],
                verified=bool(row.get("otp_verified")),
                attempts=row.get("otp_attempts") or 0,
            )
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row["password_hash"],
            phone=row.get("phone"),
            date_of_birth=row.get("date_of_birth"),
            gender=row.get("gender"),
            role=row.get("role") or "customer",
            is_email_verified=bool(row.get("is_email_verified")),
            is_phone_verified=bool(row.get("is_phone_verified")),
            is_active=bool(row.get("is_active", True)),
            address=Address(**address),
            preferences=Preferences(**preferences),
            login_attempts=row.get("login_attempts") or 0,
            lock_until=row.get("lock_until"),
            password_changed_at=row.get("password_changed_at"),
            otp=otp,
            reset_password_token=row.get("reset_password_token"),
            reset_password_expires=row.get("reset_password_expires"),
            active_sessions=[self._row_to_session(s) for s in sessions],
            invalidated_tokens=[
                InvalidatedToken(
                    token_id=e["token_id"],
                    reason=e["reason"],
                    invalidated_at=e["invalidated_at"],
                )
                for e in ledger
            ],
            last_login=row.get("last_login"),
            login_ip=row.get("login_ip"),
            registration_ip=row.get("registration_ip"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
            deactivated_at=row.get("deactivated_at"),
            deactivation_reason=row.get("deactivation_reason"),
        )

    def _insert_ledger(
        self, conn, user_id: str, token_ids: List[str], reason: str, now: datetime
    ) -> List[str]:
        """Ledger ``token_ids`` and delete their sessions; returns removed ids."""
        if not token_ids:
            return []
        for token_id in token_ids:
            conn.execute(
                """
                INSERT INTO token_invalidation (customer_id, token_id, reason, invalidated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (customer_id, token_id) DO NOTHING
                """,
                (user_id, token_id, reason, now),
            )
        rows = conn.execute(
            "DELETE FROM customer_session WHERE customer_id = %s AND token_id = ANY(%s) RETURNING token_id",
            (user_id, token_ids),
        ).fetchall()
        return [r["token_id"] for r in rows]

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
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO customer (id, email, name, password_hash, phone, date_of_birth,
                                          gender, role, registration_ip, address, preferences)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalized,
                        name,
                        password_hash,
                        phone,
                        date_of_birth,
                        gender,
                        role,
                        registration_ip,
                        json.dumps(vars(Address())),
                        json.dumps(vars(Preferences())),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._row_to_user(row, [], [])

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM customer WHERE id = %s", (user_id,)
            ).fetchone()
            return self._load_user(conn, row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM customer WHERE lower(email) = %s",
                (email.strip().lower(),),
            ).fetchone()
            return self._load_user(conn, row)

    def find_user_by_reset_token(
        self, reset_token: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or _utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM customer
                WHERE reset_password_token = %s AND reset_password_expires > %s
                """,
                (reset_token, now),
            ).fetchone()
            return self._load_user(conn, row)

    def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE customer SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
            return self._load_user(conn, row)

    def set_user_active(
        self, user_id: str, is_active: bool, *, reason: Optional[str] = None
    ) -> Optional[User]:
        now = _utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE customer
                SET is_active = %s, deactivated_at = %s, deactivation_reason = %s, updated_at = %s
                WHERE id = %s RETURNING *
                """,
                (
                    is_active,
                    None if is_active else now,
                    None if is_active else reason,
                    now,
                    user_id,
                ),
            ).fetchone()
            return self._load_user(conn, row)

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[dict] = None,
        preferences: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or _utcnow()
        try:
            with self._connect() as conn:
                self._housekeep(conn, user_id, now)
                row = conn.execute(
                    """
                    UPDATE customer SET
                        name = COALESCE(%(name)s::text, name),
                        phone = COALESCE(%(phone)s::text, phone),
                        address = address || %(address)s::jsonb,
                        preferences = preferences || %(preferences)s::jsonb,
                        updated_at = %(now)s
                    WHERE id = %(id)s
                    RETURNING *
                    """,
                    {
                        "name": name,
                        "phone": phone,
                        "address": json.dumps(address or {}),
                        "preferences": json.dumps(preferences or {}),
                        "now": now,
                        "id": user_id,
                    },
                ).fetchone()
                return self._load_user(conn, row)
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc

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
        with self._connect() as conn:
            self._housekeep(conn, user_id, now)
            # Right-hand sides see pre-update values; a lapsed lock restarts the count
            row = conn.execute(
                """
                UPDATE customer SET
                    login_attempts = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN 1
                        ELSE login_attempts + 1 END,
                    lock_until = CASE
                        WHEN lock_until IS NOT NULL AND lock_until > %(now)s THEN lock_until
                        WHEN (CASE WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN 1
                                   ELSE login_attempts + 1 END) >= %(max)s THEN %(lock)s
                        ELSE NULL END,
                    updated_at = %(now)s
                WHERE id = %(id)s
                RETURNING *
                """,
                {"now": now, "max": max_attempts, "lock": now + lockout, "id": user_id},
            ).fetchone()
            return self._load_user(conn, row)

    def record_successful_login(
        self, user_id: str, *, ip: Optional[str], now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or _utcnow()
        with self._connect() as conn:
            self._housekeep(conn, user_id, now)
            row = conn.execute(
                """
                UPDATE customer
                SET login_attempts = 0, lock_until = NULL, last_login = %s, login_ip = %s, updated_at = %s
                WHERE id = %s RETURNING *
                """,
                (now, ip, now, user_id),
            ).fetchone()
            return self._load_user(conn, row)

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
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE customer
                SET otp_hash = %s, otp_expires_at = %s, otp_verified = %s, otp_attempts = %s,
                    reset_password_token = %s, reset_password_expires = %s, updated_at = %s
                WHERE id = %s RETURNING *
                """,
                (
                    otp.code_hash,
                    otp.expires_at,
                    otp.verified,
                    otp.attempts,
                    reset_token,
                    reset_expires,
                    now,
                    user_id,
                ),
            ).fetchone()
            return self._load_user(conn, row)

    def clear_otp_and_reset(
        self, user_id: str, *, code_hash: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE customer SET {_CLEAR_OTP_COLUMNS}, updated_at = now()
                WHERE id = %s AND (%s::text IS NULL OR otp_hash = %s)
                """,
                (user_id, code_hash, code_hash),
            )
            return bool(cur.rowcount)

    def record_otp_failure(
        self, user_id: str, *, code_hash: str, max_attempts: int
    ) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE customer SET otp_attempts = otp_attempts + 1, updated_at = now()
                WHERE id = %s AND otp_hash = %s
                RETURNING otp_attempts
                """,
                (user_id, code_hash),
            ).fetchone()
            if not row:
                return None
            attempts = row["otp_attempts"]
            if attempts >= max_attempts:
                conn.execute(
                    f"UPDATE customer SET {_CLEAR_OTP_COLUMNS} WHERE id = %s",
                    (user_id,),
                )
            return attempts

    def mark_otp_verified(
        self, user_id: str, *, code_hash: str, now: Optional[datetime] = None
    ) -> Optional[str]:
        now = now or _utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE customer SET otp_verified = TRUE, updated_at = %s
                WHERE id = %s AND otp_hash = %s AND otp_expires_at > %s
                  AND reset_password_token IS NOT NULL
                RETURNING reset_password_token
                """,
                (now, user_id, code_hash, now),
            ).fetchone()
            return row["reset_password_token"] if row else None

    def complete_password_reset(
        self,
        reset_token: str,
        *,
        password_hash: str,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or _utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM customer
                WHERE reset_password_token = %s AND reset_password_expires > %s
                  AND otp_hash IS NOT NULL AND otp_verified = TRUE
                FOR UPDATE
                """,
                (reset_token, now),
            ).fetchone()
            if not row:
                return None
            user_id = row["id"]
            conn.execute(
                f"""
                UPDATE customer SET {_CLEAR_OTP_COLUMNS},
                    password_hash = %s, password_changed_at = %s,
                    login_attempts = 0, lock_until = NULL, updated_at = %s
                WHERE id = %s
                """,
                (password_hash, now, now, user_id),
            )
            sessions = conn.execute(
                "SELECT token_id FROM customer_session WHERE customer_id = %s",
                (user_id,),
            ).fetchall()
            self._insert_ledger(
                conn, user_id, [s["token_id"] for s in sessions], "password_change", now
            )
            self._housekeep(conn, str(user_id), now)
            fresh = conn.execute(
                "SELECT * FROM customer WHERE id = %s", (user_id,)
            ).fetchone()
            return self._load_user(conn, fresh)

    def update_password(
        self,
        user_id: str,
        *,
        password_hash: str,
        keep_token_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or _utcnow()
        with self._connect() as conn:
            if not self._lock_customer(conn, user_id):
                return None
            conn.execute(
                """
                UPDATE customer SET password_hash = %s, password_changed_at = %s, updated_at = %s
                WHERE id = %s
                """,
                (password_hash, now, now, user_id),
            )
            others = conn.execute(
                """
                SELECT token_id FROM customer_session
                WHERE customer_id = %s AND (%s::text IS NULL OR token_id <> %s)
                """,
                (user_id, keep_token_id, keep_token_id),
            ).fetchall()
            self._insert_ledger(
                conn, user_id, [s["token_id"] for s in others], "password_change", now
            )
            if keep_token_id:
                conn.execute(
                    """
                    UPDATE customer_session SET password_confirmed_at = %s
                    WHERE customer_id = %s AND token_id = %s
                    """,
                    (now, user_id, keep_token_id),
                )
            self._housekeep(conn, user_id, now)
            row = conn.execute(
                "SELECT * FROM customer WHERE id = %s", (user_id,)
            ).fetchone()
            return self._load_user(conn, row)

    # -- sessions ----------------------------------------------------------

    def add_session(
        self, user_id: str, session: ActiveSession, *, max_sessions: int
    ) -> Optional[List[str]]:
        with self._connect() as conn:
            if not self._lock_customer(conn, user_id):
                return None
            conn.execute(
                """
                INSERT INTO customer_session (token_id, customer_id, device_info, ip_address,
                                              created_at, last_activity, password_confirmed_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.token_id,
                    user_id,
                    session.device_info,
                    session.ip_address,
                    session.created_at,
                    session.last_activity,
                    session.password_confirmed_at,
                ),
            )
            # Oldest by insertion order go first; no ledger entry for evictions
            evicted = conn.execute(
                """
                DELETE FROM customer_session
                WHERE token_id IN (
                    SELECT token_id FROM customer_session
                    WHERE customer_id = %s
                    ORDER BY seq DESC
                    OFFSET %s
                )
                RETURNING token_id
                """,
                (user_id, max_sessions),
            ).fetchall()
            self._housekeep(conn, user_id, session.created_at)
            return [r["token_id"] for r in evicted]

    def touch_session(
        self, user_id: str, token_id: str, now: Optional[datetime] = None
    ) -> bool:
        now = now or _utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE customer_session SET last_activity = %s
                WHERE customer_id = %s AND token_id = %s
                """,
                (now, user_id, token_id),
            )
            return bool(cur.rowcount)

    def remove_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        token_ids: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        now = now or _utcnow()
        with self._connect() as conn:
            if not self._lock_customer(conn, user_id):
                return []
            if token_ids is None:
                rows = conn.execute(
                    "SELECT token_id FROM customer_session WHERE customer_id = %s",
                    (user_id,),
                ).fetchall()
                targets = [r["token_id"] for r in rows]
            else:
                targets = list(token_ids)
            removed = self._insert_ledger(conn, user_id, targets, reason, now)
            self._housekeep(conn, user_id, now)
            return removed

    # -- maintenance -------------------------------------------------------

    def purge_expired_state(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        with self._connect() as conn:
            return self._housekeep(conn, None, now)

    def ping(self) -> bool:
        with self._connect() as conn:
            row: Any = conn.execute("SELECT 1 AS ok").fetchone()
            return bool(row and row["ok"] == 1)

    def close(self) -> None:
        self.pool.close()

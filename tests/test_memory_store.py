from datetime import datetime, timedelta, timezone

import pytest

from brewbean.storage.errors import ConstraintViolation
from brewbean.storage.memory import MemoryStore, apply_ledger, housekeep_user
from brewbean.storage.models import ActiveSession, InvalidatedToken, OTPState, User

# Store calls made without ``now`` housekeep against the wall clock, so fixtures stay near it
NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _user(store, email="a@b.com", phone=None):
    return store.create_user(email=email, name="Ada Roast", password_hash="hash", phone=phone)


def _session(token_id, when=NOW):
    return ActiveSession(token_id=token_id, created_at=when, last_activity=when)


def test_create_user_normalizes_email_and_enforces_uniqueness(store):
    user = _user(store, email="  Ada@Example.COM ", phone="9876543210")
    assert user.email == "ada@example.com"
    assert store.get_user_by_email("ADA@example.com").id == user.id

    with pytest.raises(ConstraintViolation) as exc:
        _user(store, email="ada@example.com")
    assert exc.value.detail == {"field": "email"}
    with pytest.raises(ConstraintViolation) as exc:
        _user(store, email="other@example.com", phone="9876543210")
    assert exc.value.detail == {"field": "phone"}


def test_reads_return_copies(store):
    user = _user(store)
    copy = store.get_user(user.id)
    copy.role = "admin"
    assert store.get_user(user.id).role == "customer"


def test_state_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _user(store, phone="9876543210")
    store.add_session(user.id, _session("t1"), max_sessions=5)
    store.remove_sessions(user.id, reason="logout", token_ids=["t1"], now=NOW)

    reloaded = MemoryStore(fs_root=str(tmp_path)).get_user(user.id)
    assert reloaded.email == "a@b.com"
    assert reloaded.phone == "9876543210"
    assert reloaded.active_sessions == []
    assert reloaded.is_token_invalidated("t1")
    assert (tmp_path / "state" / "memory_store.json").exists()


def test_failed_logins_lock_at_threshold(store):
    user = _user(store)
    for attempt in range(1, 5):
        updated = store.record_failed_login(
            user.id, max_attempts=5, lockout=timedelta(minutes=30), now=NOW
        )
        assert updated.login_attempts == attempt
        assert not updated.is_locked(NOW)
    locked = store.record_failed_login(
        user.id, max_attempts=5, lockout=timedelta(minutes=30), now=NOW
    )
    assert locked.lock_until == NOW + timedelta(minutes=30)

    ok = store.record_successful_login(user.id, ip="10.0.0.9", now=NOW)
    assert ok.login_attempts == 0
    assert ok.lock_until is None
    assert ok.login_ip == "10.0.0.9"


def test_add_session_evicts_oldest(store):
    user = _user(store)
    for i in range(5):
        assert store.add_session(user.id, _session(f"t{i}"), max_sessions=5) == []
    assert store.add_session(user.id, _session("t5"), max_sessions=5) == ["t0"]
    current = store.get_user(user.id)
    assert [s.token_id for s in current.active_sessions] == ["t1", "t2", "t3", "t4", "t5"]
    # Eviction is not a revocation
    assert not current.is_token_invalidated("t0")


def test_add_session_for_missing_user(store):
    assert store.add_session("missing", _session("t0"), max_sessions=5) is None


def test_update_password_keeps_named_session(store):
    user = _user(store)
    for token_id in ("keep", "drop1", "drop2"):
        store.add_session(user.id, _session(token_id), max_sessions=5)

    updated = store.update_password(
        user.id, password_hash="new-hash", keep_token_id="keep", now=NOW
    )
    assert updated.password_hash == "new-hash"
    assert updated.password_changed_at == NOW
    assert [s.token_id for s in updated.active_sessions] == ["keep"]
    assert updated.active_sessions[0].password_confirmed_at == NOW
    assert {e.token_id for e in updated.invalidated_tokens} == {"drop1", "drop2"}
    assert all(e.reason == "password_change" for e in updated.invalidated_tokens)


def test_otp_failures_clear_state_at_limit(store):
    user = _user(store)
    state = OTPState(code_hash="h1", expires_at=NOW + timedelta(minutes=10))
    store.set_otp(user.id, otp=state, reset_token="r" * 64, reset_expires=NOW + timedelta(hours=1))

    assert store.record_otp_failure(user.id, code_hash="h1", max_attempts=3) == 1
    assert store.record_otp_failure(user.id, code_hash="h1", max_attempts=3) == 2
    # A stale hash from an earlier OTP does not count
    assert store.record_otp_failure(user.id, code_hash="old", max_attempts=3) is None
    assert store.record_otp_failure(user.id, code_hash="h1", max_attempts=3) == 3

    cleared = store.get_user(user.id)
    assert cleared.otp is None
    assert cleared.reset_password_token is None


def test_clear_otp_only_when_hash_matches(store):
    user = _user(store)
    state = OTPState(code_hash="h2", expires_at=NOW + timedelta(minutes=10))
    store.set_otp(user.id, otp=state, reset_token="r" * 64, reset_expires=NOW + timedelta(hours=1))
    assert store.clear_otp_and_reset(user.id, code_hash="h1") is False
    assert store.get_user(user.id).otp is not None
    assert store.clear_otp_and_reset(user.id, code_hash="h2") is True
    assert store.get_user(user.id).otp is None


def test_complete_password_reset_requires_verified_otp(store):
    user = _user(store)
    store.add_session(user.id, _session("t1"), max_sessions=5)
    now = datetime.now(timezone.utc)
    state = OTPState(code_hash="h", expires_at=now + timedelta(minutes=10))
    store.set_otp(user.id, otp=state, reset_token="a" * 64, reset_expires=now + timedelta(hours=1))

    assert store.complete_password_reset("a" * 64, password_hash="new", now=now) is None
    assert store.mark_otp_verified(user.id, code_hash="h", now=now) == "a" * 64

    updated = store.complete_password_reset("a" * 64, password_hash="new", now=now)
    assert updated.password_hash == "new"
    assert updated.active_sessions == []
    assert updated.is_token_invalidated("t1")
    assert updated.reset_password_token is None
    assert store.find_user_by_reset_token("a" * 64, now) is None


def test_housekeep_user_drops_expired_state():
    user = User(id="u1", email="a@b.com", name="Ada", password_hash="hash")
    user.otp = OTPState(code_hash="h", expires_at=NOW - timedelta(minutes=1))
    user.reset_password_token = "t" * 64
    user.reset_password_expires = NOW + timedelta(minutes=30)
    user.invalidated_tokens = [
        InvalidatedToken("old", "logout", NOW - timedelta(days=31)),
        InvalidatedToken("new", "logout", NOW - timedelta(days=1)),
    ]

    assert housekeep_user(user, NOW, timedelta(days=30)) is True
    assert user.otp is None
    assert user.reset_password_token == "t" * 64
    assert [e.token_id for e in user.invalidated_tokens] == ["new"]
    assert housekeep_user(user, NOW, timedelta(days=30)) is False


def test_housekeep_keeps_verified_otp_until_reset_expires():
    user = User(id="u1", email="a@b.com", name="Ada", password_hash="hash")
    user.otp = OTPState(code_hash="h", expires_at=NOW - timedelta(minutes=1), verified=True)
    user.reset_password_token = "t" * 64
    user.reset_password_expires = NOW + timedelta(minutes=30)
    assert housekeep_user(user, NOW, timedelta(days=30)) is False
    assert user.otp is not None

    assert housekeep_user(user, NOW + timedelta(hours=1), timedelta(days=30)) is True
    assert user.otp is None
    assert user.reset_password_token is None


def test_apply_ledger_is_idempotent():
    user = User(id="u1", email="a@b.com", name="Ada", password_hash="hash")
    user.active_sessions = [_session("t1"), _session("t2")]
    assert apply_ledger(user, ["t1"], "logout", NOW) == ["t1"]
    assert apply_ledger(user, ["t1"], "logout", NOW) == []
    assert [e.token_id for e in user.invalidated_tokens] == ["t1"]
    assert [s.token_id for s in user.active_sessions] == ["t2"]


def test_purge_expired_state_counts_users(store):
    first = _user(store)
    second = _user(store, email="c@d.com")
    past = NOW - timedelta(minutes=5)
    for user in (first, second):
        store.set_otp(
            user.id,
            otp=OTPState(code_hash="h", expires_at=past),
            reset_token="r" * 64,
            reset_expires=NOW + timedelta(hours=1),
        )
    assert store.purge_expired_state(NOW) == 2
    assert store.purge_expired_state(NOW) == 0


def test_set_user_active_records_reason(store):
    user = _user(store)
    inactive = store.set_user_active(user.id, False, reason="chargeback")
    assert inactive.is_active is False
    assert inactive.deactivation_reason == "chargeback"
    assert inactive.account_status == "inactive"
    active = store.set_user_active(user.id, True)
    assert active.deactivated_at is None


def test_mutations_housekeep_at_the_given_time(store):
    user = _user(store)
    state = OTPState(code_hash="h", expires_at=NOW + timedelta(minutes=10))
    store.set_otp(
        user.id,
        otp=state,
        reset_token="r" * 64,
        reset_expires=NOW + timedelta(minutes=10),
        now=NOW,
    )
    later = NOW + timedelta(minutes=20)
    updated = store.record_successful_login(user.id, ip="10.0.0.1", now=later)
    assert updated.otp is None
    assert updated.reset_password_token is None
    assert updated.updated_at == later


def test_update_profile_merges_only_given_fields(store):
    user = _user(store, phone="9876543210")
    later = NOW + timedelta(minutes=1)
    updated = store.update_profile(
        user.id,
        name="Ada Lovelace",
        address={"city": "Pune", "postal_code": "411001"},
        preferences={"newsletter": True},
        now=later,
    )
    assert updated.name == "Ada Lovelace"
    assert updated.phone == "9876543210"
    assert updated.address.city == "Pune"
    assert updated.address.country == "India"
    assert updated.preferences.newsletter is True
    assert updated.preferences.notify_email is True
    assert updated.updated_at == later

    again = store.update_profile(user.id, address={"street": "12 Bean Lane"})
    assert again.address.city == "Pune"
    assert again.address.street == "12 Bean Lane"


def test_update_profile_rejects_phone_of_another_user(store):
    owner = _user(store, phone="9876543210")
    other = _user(store, email="c@d.com")
    with pytest.raises(ConstraintViolation) as exc:
        store.update_profile(other.id, phone="9876543210")
    assert exc.value.detail == {"field": "phone"}
    assert store.get_user(other.id).phone is None
    # Re-submitting your own number is not a conflict
    assert store.update_profile(owner.id, phone="9876543210").phone == "9876543210"


def test_update_profile_for_missing_user(store):
    assert store.update_profile("missing", name="Ada Roast") is None

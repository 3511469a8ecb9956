import pytest

from brewbean.service.passwords import (
    MAX_PASSWORD_LENGTH,
    hash_password,
    needs_rehash,
    validate_strength,
    verify_password,
)


@pytest.mark.parametrize(
    "password, message",
    [
        ("Ab1!", "Password must be at least 8 characters long"),
        ("abcd123!", "Password must contain at least one uppercase letter"),
        ("ABCD123!", "Password must contain at least one lowercase letter"),
        ("Abcdefg!", "Password must contain at least one number"),
        ("Abcd1234", "Password must contain at least one special character"),
        ("A" * (MAX_PASSWORD_LENGTH + 1), "Password must be at most 128 characters long"),
    ],
)
def test_validate_strength_reports_first_broken_rule(password, message):
    assert validate_strength(password) == message


def test_validate_strength_accepts_strong_password():
    assert validate_strength("Abcd123!") is None


def test_hash_is_not_plaintext_and_verifies():
    hashed = hash_password("Abcd123!")
    assert "Abcd123!" not in hashed
    assert hashed.startswith("$argon2id$")
    assert verify_password("Abcd123!", hashed)
    assert not verify_password("Abcd123?", hashed)


def test_hashes_are_salted():
    assert hash_password("Abcd123!") != hash_password("Abcd123!")


def test_verify_password_never_raises_on_garbage():
    assert verify_password("Abcd123!", None) is False
    assert verify_password("Abcd123!", "") is False
    assert verify_password("Abcd123!", "not-a-hash") is False


def test_needs_rehash_flags_foreign_hashes():
    assert needs_rehash("not-a-hash") is True
    assert needs_rehash(hash_password("Abcd123!")) is False

"""
tests/test_passwords.py -- Unit tests for auth/passwords.py.

Covers:
  - hash/verify: correct password True, any other password False
  - malformed stored hash -> VerificationError (never a plain False)
  - salts differ: the same password hashes differently each time
  - strength policy: length, lower, upper, digit, max length
"""

from __future__ import annotations

import pytest

from auth.passwords import PasswordHasher, validate_password_strength
from core.errors import ValidationError, VerificationError


@pytest.fixture(scope="module")
def hasher() -> PasswordHasher:
    return PasswordHasher(work_factor=4)


@pytest.mark.parametrize("password", ["Abcdefg1", "Long-Passphrase-With-Digits-42", "ünïcødé-Pass9"])
def test_verify_accepts_only_the_hashed_password(hasher: PasswordHasher, password: str) -> None:
    stored = hasher.hash(password)
    assert hasher.verify(password, stored) is True
    assert hasher.verify(password + "x", stored) is False
    assert hasher.verify(password.swapcase(), stored) is False


def test_hash_is_salted(hasher: PasswordHasher) -> None:
    assert hasher.hash("Abcdefg1") != hasher.hash("Abcdefg1")


def test_hash_uses_configured_work_factor(hasher: PasswordHasher) -> None:
    assert hasher.hash("Abcdefg1").startswith("$2b$04$")


def test_malformed_hash_raises_verification_error(hasher: PasswordHasher) -> None:
    with pytest.raises(VerificationError):
        hasher.verify("Abcdefg1", "not-a-bcrypt-hash")


def test_verify_dummy_does_not_raise(hasher: PasswordHasher) -> None:
    hasher.verify_dummy("whatever the attacker typed")


def test_long_password_round_trips(hasher: PasswordHasher) -> None:
    password = "Aa1" + "x" * 120
    assert hasher.verify(password, hasher.hash(password)) is True


class TestStrengthPolicy:
    def test_accepts_compliant_password(self) -> None:
        validate_password_strength("Abcdefg1")

    @pytest.mark.parametrize(
        "password, fragment",
        [
            ("Abc1", "at least 8 characters"),
            ("abcdefg1", "upper-case"),
            ("ABCDEFG1", "lower-case"),
            ("Abcdefgh", "digit"),
            ("Aa1" + "x" * 130, "at most 128"),
        ],
    )
    def test_rejects_weak_password(self, password: str, fragment: str) -> None:
        with pytest.raises(ValidationError) as excinfo:
            validate_password_strength(password)
        assert fragment in excinfo.value.message

    def test_min_length_is_configurable(self) -> None:
        with pytest.raises(ValidationError):
            validate_password_strength("Abcdefg1", min_length=12)

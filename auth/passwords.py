"""
auth/passwords.py -- Password hashing, verification, and the strength policy.

bcrypt is used directly, without a passlib wrapper.

bcrypt only reads the first 72 bytes of its input. Newer bcrypt releases
raise ValueError on longer input instead of truncating silently, so the
truncation is done here explicitly and identically on hash and verify.

The work factor is deployment configuration (Settings.password_work_factor),
never user-controlled. Tests use 4, the bcrypt minimum.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import re

import bcrypt

from core.errors import HashingError, ValidationError, VerificationError

logger = logging.getLogger("nestguard.auth")

_BCRYPT_MAX_BYTES = 72
_MAX_PASSWORD_CHARS = 128


def _encode(plaintext: str) -> bytes:
    return plaintext.encode("utf-8")[:_BCRYPT_MAX_BYTES]


class PasswordHasher:
    """Adaptive, salted one-way hashing with a fixed work factor.

    Usage:
        hasher = PasswordHasher(work_factor=settings.password_work_factor)
        stored = hasher.hash("Correct-Horse-1")
        hasher.verify("Correct-Horse-1", stored)   # True
    """

    def __init__(self, work_factor: int = 12) -> None:
        self.work_factor = work_factor
        # Same cost as real account hashes; used by verify_dummy().
        self._dummy_hash = self.hash("nestguard_timing_dummy")

    def hash(self, plaintext: str) -> str:
        try:
            salt = bcrypt.gensalt(rounds=self.work_factor)
            return bcrypt.hashpw(_encode(plaintext), salt).decode("utf-8")
        except (ValueError, TypeError) as exc:
            raise HashingError("Password hashing failed.") from exc

    def verify(self, plaintext: str, hashed: str) -> bool:
        """Return True on match, False on mismatch.

        Raises VerificationError only when the stored hash itself is malformed.
        """
        try:
            return bcrypt.checkpw(_encode(plaintext), hashed.encode("utf-8"))
        except (ValueError, TypeError) as exc:
            logger.error("Stored password hash is malformed")
            raise VerificationError("Stored credential is unreadable.") from exc

    def verify_dummy(self, plaintext: str) -> None:
        """Burn one verification so unknown-email logins cost the same as real ones."""
        bcrypt.checkpw(_encode(plaintext), self._dummy_hash.encode("utf-8"))


# ---------------------------------------------------------------------------
# Strength policy (mirrors the end-user policy)
# ---------------------------------------------------------------------------

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")


def validate_password_strength(password: str, min_length: int = 8) -> None:
    """Raise ValidationError if the password does not meet the policy.

    Policy: at least min_length characters, at most 128, and at least one
    lower-case letter, one upper-case letter and one digit. Every violation
    is listed in the one error message.
    """
    problems: list[str] = []
    if len(password) < min_length:
        problems.append(f"at least {min_length} characters")
    if len(password) > _MAX_PASSWORD_CHARS:
        problems.append(f"at most {_MAX_PASSWORD_CHARS} characters")
    if not _LOWER.search(password):
        problems.append("a lower-case letter")
    if not _UPPER.search(password):
        problems.append("an upper-case letter")
    if not _DIGIT.search(password):
        problems.append("a digit")
    if problems:
        raise ValidationError("Password must contain " + ", ".join(problems) + ".")

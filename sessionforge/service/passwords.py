from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionforge.config import Settings
from sessionforge.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 10
    max_length: int = 128
    min_character_classes: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            min_character_classes=settings.password_min_character_classes,
        )

    def violations(self, password: str, *, identifier: Optional[str] = None) -> List[str]:
        """Return human-readable policy failures; empty when the password is acceptable."""
        problems: List[str] = []
        if len(password) < self.min_length:
            problems.append(f"password must be at least {self.min_length} characters")
        if len(password) > self.max_length:
            problems.append(f"password must be at most {self.max_length} characters")
        classes = sum(
            (
                any(c.islower() for c in password),
                any(c.isupper() for c in password),
                any(c.isdigit() for c in password),
                any(c in string.punctuation or c.isspace() for c in password),
            )
        )
        if classes < self.min_character_classes:
            problems.append(
                "password must mix at least "
                f"{self.min_character_classes} of lowercase, uppercase, digits and symbols"
            )
        if identifier:
            local = identifier.partition("@")[0].lower()
            if len(local) >= 4 and local in password.lower():
                problems.append("password must not contain the login identifier")
        return problems


class PasswordVerifier:
    """argon2id hashing with constant-shape failure handling."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: Optional[str], password: str) -> Tuple[bool, Optional[str]]:
        """Check ``password``; on success also return a rehash when parameters changed.

        A missing hash still runs a full verification against a throwaway
        hash so unknown and known identifiers take the same time.
        """
        if stored_hash is None:
            self._burn(password)
            return False, None
        try:
            self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False, None
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False, None
        if self._hasher.check_needs_rehash(stored_hash):
            return True, self._hasher.hash(password)
        return True, None

    def _burn(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

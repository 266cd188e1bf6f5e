"""Security primitives for password hashing and opaque token handling."""

from __future__ import annotations

import hashlib
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

REFRESH_TOKEN_BYTES = 48


class PasswordVerifier:
    """Argon2id password hashing; the salt lives inside the encoded hash."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 2,
    ) -> None:
        """Initialize hasher parameters."""
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when the principal does not exist so both paths cost the same.
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, secret: str) -> str:
        """Hash a plaintext secret into an opaque encoded string."""
        if not secret or not isinstance(secret, str):
            raise ValueError("Password must be a non-empty string")
        return self._hasher.hash(secret)

    def verify(self, secret: str, encoded_hash: str) -> bool:
        """Return whether secret matches the stored hash."""
        if not secret or not encoded_hash:
            return False
        try:
            return self._hasher.verify(encoded_hash, secret)
        except (VerificationError, InvalidHashError):
            return False

    def verify_dummy(self, secret: str) -> None:
        """Spend one verification on a throwaway hash."""
        self.verify(secret or "-", self._dummy_hash)

    def needs_rehash(self, encoded_hash: str) -> bool:
        """Return whether hash was produced with outdated parameters."""
        try:
            return self._hasher.check_needs_rehash(encoded_hash)
        except InvalidHashError:
            return True


def generate_refresh_token() -> str:
    """Return a high-entropy opaque refresh token."""
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


def fingerprint_token(token: str) -> str:
    """Hash raw token for storage/lookup."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

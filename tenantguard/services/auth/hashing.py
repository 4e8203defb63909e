from __future__ import annotations

import hashlib
import hmac
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError


TOKEN_BYTES = 32
API_KEY_DISPLAY_PREFIX_LENGTH = 16


class CredentialHasher:
    """One-way hashing for passwords (slow, salted) and tokens (fast, deterministic).

    Tokens are high-entropy random values, so a plain SHA-256 is enough and
    keeps lookups by hash possible. Passwords are user-chosen and go through
    argon2id.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._passwords = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash_password(self, password: str) -> str:
        return self._passwords.hash(password)

    def verify_password(self, password: str, password_hash: str | None) -> bool:
        if not password_hash:
            return False
        try:
            return self._passwords.verify(password_hash, password)
        except (VerificationError, InvalidHashError):
            return False

    def password_needs_rehash(self, password_hash: str) -> bool:
        return self._passwords.check_needs_rehash(password_hash)

    @staticmethod
    def hash_token(raw_token: str) -> str:
        return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()

    @classmethod
    def verify_token_hash(cls, raw_token: str, token_hash: str) -> bool:
        return hmac.compare_digest(cls.hash_token(raw_token), token_hash)

    @classmethod
    def generate_token(cls) -> tuple[str, str]:
        # The raw value is returned once to the caller and never stored.
        raw_token = secrets.token_hex(TOKEN_BYTES)
        return raw_token, cls.hash_token(raw_token)

    @classmethod
    def generate_api_key(cls, prefix: str) -> tuple[str, str, str]:
        raw_key = f"{prefix}{secrets.token_hex(TOKEN_BYTES)}"
        return raw_key, cls.hash_token(raw_key), raw_key[:API_KEY_DISPLAY_PREFIX_LENGTH]

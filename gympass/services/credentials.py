from __future__ import annotations

import asyncio
import secrets
import string

from argon2 import PasswordHasher as Argon2Hasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


_ALPHABET = string.ascii_letters + string.digits


class PasswordHasher:
    """Async wrapper around argon2id hashing; work runs off the event loop."""

    def __init__(self, *, time_cost: int = 2, memory_cost: int = 19_456, parallelism: int = 1) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost, memory_cost=memory_cost, parallelism=parallelism
        )

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self._hasher.hash, password)

    async def verify(self, password: str, expected: str) -> bool:
        try:
            return await asyncio.to_thread(self._hasher.verify, expected, password)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False


def generate_temp_password(length: int = 12) -> str:
    # Always mix letters and digits so generated secrets pass common policies.
    if length < 8:
        raise ValueError("Temporary passwords must be at least 8 characters")
    while True:
        candidate = "".join(secrets.choice(_ALPHABET) for _ in range(length))
        if any(c.isdigit() for c in candidate) and any(c.isalpha() for c in candidate):
            return candidate

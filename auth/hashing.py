"""
auth/hashing.py -- One-way hashing and verification of local passwords.

Security design decisions:
  bcrypt, used directly (no passlib wrapper). Each hash embeds its own random
      salt and cost factor, so equal plaintexts never hash to the same string
      and old hashes keep verifying after the cost factor is raised.

  Work factor: PasswordHasher(rounds=N), default 12 (AUTHGATE_BCRYPT_ROUNDS).
      Each +1 doubles the cost. 10 is on the order of tens of milliseconds per
      verify on commodity hardware, 12 a few hundred. Tests use 4, the bcrypt
      minimum.

  Comparison: bcrypt.checkpw recomputes the hash and compares in constant
      time, so response time does not leak how many leading bytes matched.

  Malformed stored hashes (truncated, wrong prefix, not bcrypt at all) are a
      verification failure, never an exception.

  Offload: bcrypt is CPU-bound. The *_async variants run on a dedicated,
      bounded ThreadPoolExecutor so hashing never blocks the event loop or
      starves the default pool used for store calls.

  Long passwords: bcrypt reads at most 72 bytes (bcrypt 5 raises on more).
      Longer inputs are pre-hashed with SHA-256 before bcrypt sees them.

Layer rule: no imports from devices/ or core/ beyond stdlib + bcrypt.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor

import bcrypt

logger = logging.getLogger("authgate.auth.hashing")

DEFAULT_ROUNDS = 12
BCRYPT_MAX_BYTES = 72


class PasswordHasher:
    """bcrypt hasher with a configurable work factor and its own worker pool.

    Usage:
        hasher = PasswordHasher(rounds=12)
        stored = hasher.hash_password("s3cret")
        hasher.verify_password("s3cret", stored)       # True
        await hasher.verify_password_async("s3cret", stored)
        hasher.close()
    """

    def __init__(self, rounds: int = DEFAULT_ROUNDS, max_workers: int = 4) -> None:
        if not 4 <= rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")
        self.rounds = rounds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="authgate-hash")
        # Timing equalization: verify against this when the account does not
        # exist or has no password, so unknown emails cost the same as wrong
        # passwords.
        self.dummy_hash = self.hash_password("authgate_timing_dummy")

    def hash_password(self, plain: str) -> str:
        """Return a bcrypt hash of plain with a fresh random salt."""
        return bcrypt.hashpw(_bcrypt_input(plain), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify_password(self, plain: str, stored_hash: str | None) -> bool:
        """Return True if plain matches stored_hash. Any malformed hash is False."""
        if not stored_hash:
            return False
        try:
            return bcrypt.checkpw(_bcrypt_input(plain), stored_hash.encode("utf-8"))
        except (ValueError, TypeError):
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        """True when stored_hash was produced with a different cost factor."""
        try:
            return int(stored_hash.split("$")[2]) != self.rounds
        except (IndexError, ValueError):
            return True

    async def hash_password_async(self, plain: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.hash_password, plain)

    async def verify_password_async(self, plain: str, stored_hash: str | None) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.verify_password, plain, stored_hash)

    def close(self) -> None:
        self._executor.shutdown(wait=False)


def _bcrypt_input(plain: str) -> bytes:
    """Encode plain for bcrypt, which accepts at most 72 bytes.

    Longer passwords are reduced to the base64 of their SHA-256 digest
    (44 bytes), so every byte of the password counts and bcrypt never
    rejects the input.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) <= BCRYPT_MAX_BYTES:
        return encoded
    return base64.b64encode(hashlib.sha256(encoded).digest())

"""
auth/passwords.py -- Password hash records (PBKDF2-HMAC-SHA256).

Record format: pbkdf2_sha256$<iterations>$<saltHex>$<hashHex>

Security design decisions:
  Verification recomputes with the salt, iteration count and output length
  stored in the record, so records written under older parameters keep
  working. A successful verify against outdated parameters (fewer iterations,
  or a legacy unsalted SHA-256 hex digest) also returns an upgraded record;
  the caller persists it.

  hmac.compare_digest for every comparison -- no early exit on the first
  differing byte.

  verify_password() never raises. A corrupt or foreign record is simply a
  failed verification; the route layer turns that into a 401.

  DUMMY_PASSWORD_HASH enables timing equalization: the login paths verify
  against it when the email is unknown, so response time does not reveal
  whether an account exists [C1].
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass

PASSWORD_HASH_PREFIX = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
PASSWORD_SALT_BYTES = 16
PASSWORD_HASH_BYTES = 32

_LEGACY_HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$", re.IGNORECASE)
_HEX_PATTERN = re.compile(r"^[0-9a-f]+$")


@dataclass(frozen=True)
class PasswordCheck:
    valid: bool
    upgraded_hash: str | None = None


def _derive(password: str, salt: bytes, iterations: int, length: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, dklen=length)


def _from_hex(value: str) -> bytes | None:
    normalized = value.strip().lower()
    if not normalized or len(normalized) % 2 != 0 or not _HEX_PATTERN.match(normalized):
        return None
    return bytes.fromhex(normalized)


def create_password_hash(password: str) -> str:
    """Return a new hash record for password using the current parameters."""
    salt = secrets.token_bytes(PASSWORD_SALT_BYTES)
    derived = _derive(password, salt, PASSWORD_HASH_ITERATIONS, PASSWORD_HASH_BYTES)
    return f"{PASSWORD_HASH_PREFIX}${PASSWORD_HASH_ITERATIONS}${salt.hex()}${derived.hex()}"


def verify_password(password: str, stored_hash: str | None) -> PasswordCheck:
    """Check password against a stored record.

    Returns PasswordCheck(valid=True, upgraded_hash=...) when the record is
    valid but uses outdated parameters. upgraded_hash is None otherwise.
    """
    if not stored_hash:
        return PasswordCheck(valid=False)
    normalized = stored_hash.strip()

    if normalized.startswith(f"{PASSWORD_HASH_PREFIX}$"):
        parts = normalized.split("$")
        if len(parts) != 4:
            return PasswordCheck(valid=False)
        _prefix, iterations_raw, salt_hex, hash_hex = parts
        try:
            iterations = int(iterations_raw, 10)
        except ValueError:
            return PasswordCheck(valid=False)
        salt = _from_hex(salt_hex)
        expected = _from_hex(hash_hex)
        if iterations < 1 or salt is None or expected is None:
            return PasswordCheck(valid=False)
        derived = _derive(password, salt, iterations, len(expected))
        if not hmac.compare_digest(derived, expected):
            return PasswordCheck(valid=False)
        if iterations < PASSWORD_HASH_ITERATIONS:
            return PasswordCheck(valid=True, upgraded_hash=create_password_hash(password))
        return PasswordCheck(valid=True)

    # Legacy records: bare SHA-256 hex of the password, no salt.
    if _LEGACY_HASH_PATTERN.match(normalized):
        legacy = hashlib.sha256(password.encode("utf-8")).hexdigest()
        if hmac.compare_digest(legacy.encode("ascii"), normalized.lower().encode("ascii")):
            return PasswordCheck(valid=True, upgraded_hash=create_password_hash(password))

    return PasswordCheck(valid=False)


# Computed once at module load so the first unknown-email login is not
# measurably faster than subsequent ones [C1].
DUMMY_PASSWORD_HASH: str = create_password_hash("epicflare_timing_dummy")

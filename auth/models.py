"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work.

Layer rule: no imports from api/, web/, oauth/, or toolserver/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """A resource owner account.

    email is always the canonical form (trimmed, lowercased). Signup stores the
    email in username as well -- username exists for display and is unique, but
    nothing authenticates by it.

    password_hash is a self-describing record
    (pbkdf2_sha256$<iterations>$<saltHex>$<hashHex>), see auth/passwords.py.
    """

    username: str
    email: str
    password_hash: str
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class PasswordReset:
    """A pending password reset.

    token_hash is SHA-256 of the emailed token. The raw token is never
    persisted. expires_at is epoch milliseconds.
    """

    user_id: int
    token_hash: str
    expires_at: int
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class AuthSession:
    """Identity carried by the session cookie.

    id is a fresh UUID per login, deliberately unrelated to User.id so a
    session value cannot be used to enumerate or correlate database ids.
    """

    id: str
    email: str

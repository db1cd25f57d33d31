"""
auth/credentials.py -- Email/password authentication against the users table.

Shared by POST /auth (browser session login) and POST /oauth/authorize
(resource-owner consent). Both need the same guarantees:

  [C1] Timing equalization: the PBKDF2 derivation runs whether or not the
       email exists, so response time does not reveal account existence.

  Transparent hash upgrade: when verify_password() reports an upgraded hash
       the new record is written back. The write is best-effort -- a failure
       is logged and the login still succeeds.

Layer rule: no imports from api/, web/, oauth/, or toolserver/.
"""

from __future__ import annotations

import logging

from auth.models import User
from auth.passwords import DUMMY_PASSWORD_HASH, verify_password
from auth.store import UserStore

logger = logging.getLogger("epicflare.auth")


def normalize_email(email: str) -> str:
    """Canonical email form: trimmed and lowercased."""
    return email.strip().lower()


def persist_upgraded_hash(store: UserStore, email: str, upgraded_hash: str) -> None:
    """Write an upgraded password hash. Never raises."""
    try:
        store.update_password_hash(email, upgraded_hash)
    except Exception:  # noqa: BLE001 -- best-effort, the login already succeeded
        logger.warning("Password hash upgrade failed for a user; keeping the old record", exc_info=True)


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Return the User if email/password match, None on any failure.

    email must already be canonical. Unknown email and wrong password are
    indistinguishable to the caller.
    """
    user = store.get_by_email(email)
    if user is None:
        # Equalize timing -- do NOT return early before running PBKDF2 [C1]
        verify_password(password, DUMMY_PASSWORD_HASH)
        return None
    check = verify_password(password, user.password_hash)
    if not check.valid:
        return None
    if check.upgraded_hash:
        persist_upgraded_hash(store, email, check.upgraded_hash)
    return user

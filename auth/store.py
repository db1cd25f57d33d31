"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_reset are the mappers.
Route and dependency code never touches SQL directly.

Backends: the engine is chosen by DATABASE_URL. SQLite (file or named shared
memory) is the default; Postgres works through any SQLAlchemy dialect URL.
Nothing in this module is dialect specific except the WAL pragma, which is
only installed for SQLite.

Connections: every method opens a connection for its own statement(s) and
releases it before returning. There are no cross-method transactions, so
callers must not rely on check-then-act sequences for correctness. The
UNIQUE(email) constraint is what actually prevents duplicate accounts.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, web/, oauth/, or toolserver/.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, Column, Index, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine

from auth.models import PasswordReset, User
from core.config import get_settings
from core.db import create_db_engine, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),  # canonical lowercase
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", BigInteger, nullable=False),  # epoch ms
    Column("created_at", String(32), nullable=False),
    Index("idx_password_resets_user_id", "user_id"),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and PasswordReset entities.

    Usage:
        store = UserStore()
        store.create_user(User(username=email, email=email, password_hash=create_password_hash("secret")))
        user = store.get_by_email(email)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = create_db_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Run a trivial query. Raises on connection failure."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or username already
        exists. A concurrent signup that passed the existence check lands here.
        """
        now = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by canonical email. Callers normalize first."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email)).fetchone()
        return row is not None

    def update_password_hash(self, email: str, password_hash: str) -> bool:
        """Replace the stored hash for email. Returns True if a row was updated."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.email == email)
                .values(password_hash=password_hash, updated_at=now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def set_password_for_user(self, user_id: int, password_hash: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(password_hash=password_hash, updated_at=now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Password resets
    # ------------------------------------------------------------------

    def replace_password_reset(self, reset: PasswordReset) -> int:
        """Delete any pending resets for the user, then insert this one.

        Two statements, not a transaction: a racing request can leave two live
        rows, which is harmless -- confirm deletes every row for the user.
        """
        self.delete_password_resets_for_user(reset.user_id)
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_resets.insert().values(
                    user_id=reset.user_id,
                    token_hash=reset.token_hash,
                    expires_at=reset.expires_at,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_password_reset(self, token_hash: str) -> PasswordReset | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_resets.select().where(_password_resets.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_reset(row) if row is not None else None

    def delete_password_reset(self, reset_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_password_resets.delete().where(_password_resets.c.id == reset_id))
            conn.commit()

    def delete_password_resets_for_user(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_password_resets.delete().where(_password_resets.c.user_id == user_id))
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_reset(row) -> PasswordReset:
    return PasswordReset(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )

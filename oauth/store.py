"""
oauth/store.py -- SQLAlchemy Core persistence for OAuth clients, codes and tokens.

Pattern: Repository + Data Mapper (same shape as auth/store.py).

Security:
  Authorization codes, access tokens and client secrets are stored as SHA-256
  hex digests only. They are 256-bit random values, so a fast hash is enough
  to make a leaked table useless; the raw values exist only in the response
  that issued them.

  delete_grant() reports whether a row was removed. The token endpoint
  redeems a code only if its delete succeeded, so two concurrent exchanges of
  the same code cannot both win.

Layer rule: no imports from api/, web/, or toolserver/.
"""

from __future__ import annotations

import json

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from core.config import get_settings
from core.db import create_db_engine
from oauth.models import AccessToken, AuthorizationGrant, ClientInfo

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_clients = Table(
    "oauth_clients",
    _metadata,
    Column("client_id", String(64), primary_key=True),
    Column("client_secret_hash", String(64)),  # NULL for public clients
    Column("redirect_uris", Text, nullable=False),  # JSON list
    Column("client_name", String(255)),
    Column("token_endpoint_auth_method", String(32), nullable=False),
    Column("created_at", Integer, nullable=False),
)

_grants = Table(
    "oauth_grants",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code_hash", String(64), nullable=False, unique=True),
    Column("client_id", String(64), nullable=False),
    Column("user_id", String(64), nullable=False),
    Column("scope", Text, nullable=False),  # space separated
    Column("props", Text, nullable=False),  # JSON
    Column("grant_metadata", Text, nullable=False),  # JSON
    Column("redirect_uri", Text, nullable=False),
    Column("code_challenge", String(128)),
    Column("code_challenge_method", String(10)),
    Column("resource", Text, nullable=False),  # JSON list
    Column("expires_at", Integer, nullable=False),
)

_tokens = Table(
    "oauth_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("client_id", String(64), nullable=False),
    Column("user_id", String(64), nullable=False),
    Column("scope", Text, nullable=False),
    Column("props", Text, nullable=False),
    Column("audience", Text),  # JSON string or list, NULL = no audience restriction
    Column("expires_at", Integer, nullable=False),
    Column("created_at", Integer, nullable=False),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class OAuthStore:
    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = create_db_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def create_client(self, client: ClientInfo) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _clients.insert().values(
                    client_id=client.client_id,
                    client_secret_hash=client.client_secret_hash,
                    redirect_uris=json.dumps(client.redirect_uris),
                    client_name=client.client_name,
                    token_endpoint_auth_method=client.token_endpoint_auth_method,
                    created_at=client.created_at,
                )
            )
            conn.commit()

    def get_client(self, client_id: str) -> ClientInfo | None:
        with self.engine.connect() as conn:
            row = conn.execute(_clients.select().where(_clients.c.client_id == client_id)).fetchone()
        return _row_to_client(row) if row is not None else None

    # ------------------------------------------------------------------
    # Authorization codes
    # ------------------------------------------------------------------

    def create_grant(self, grant: AuthorizationGrant) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _grants.insert().values(
                    code_hash=grant.code_hash,
                    client_id=grant.client_id,
                    user_id=grant.user_id,
                    scope=" ".join(grant.scope),
                    props=json.dumps(grant.props),
                    grant_metadata=json.dumps(grant.metadata),
                    redirect_uri=grant.redirect_uri,
                    code_challenge=grant.code_challenge,
                    code_challenge_method=grant.code_challenge_method,
                    resource=json.dumps(grant.resource),
                    expires_at=grant.expires_at,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_grant(self, code_hash: str) -> AuthorizationGrant | None:
        with self.engine.connect() as conn:
            row = conn.execute(_grants.select().where(_grants.c.code_hash == code_hash)).fetchone()
        return _row_to_grant(row) if row is not None else None

    def delete_grant(self, code_hash: str) -> bool:
        """Delete a code. True only for the caller that actually removed it."""
        with self.engine.connect() as conn:
            result = conn.execute(_grants.delete().where(_grants.c.code_hash == code_hash))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def create_token(self, token: AccessToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _tokens.insert().values(
                    token_hash=token.token_hash,
                    client_id=token.client_id,
                    user_id=token.user_id,
                    scope=" ".join(token.scope),
                    props=json.dumps(token.props),
                    audience=json.dumps(token.audience) if token.audience is not None else None,
                    expires_at=token.expires_at,
                    created_at=token.created_at,
                )
            )
            conn.commit()

    def get_token(self, token_hash: str) -> AccessToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def delete_token(self, token_hash: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_tokens.delete().where(_tokens.c.token_hash == token_hash))
            conn.commit()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, now: int) -> int:
        """Delete codes and tokens that expired before now. Returns rows removed."""
        with self.engine.connect() as conn:
            grants = conn.execute(_grants.delete().where(_grants.c.expires_at < now))
            tokens = conn.execute(_tokens.delete().where(_tokens.c.expires_at < now))
            conn.commit()
        return grants.rowcount + tokens.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _split_scope(value: str) -> list[str]:
    return value.split() if value else []


def _row_to_client(row) -> ClientInfo:
    return ClientInfo(
        client_id=row.client_id,
        client_secret_hash=row.client_secret_hash,
        redirect_uris=json.loads(row.redirect_uris),
        client_name=row.client_name,
        token_endpoint_auth_method=row.token_endpoint_auth_method,
        created_at=row.created_at,
    )


def _row_to_grant(row) -> AuthorizationGrant:
    return AuthorizationGrant(
        id=row.id,
        code_hash=row.code_hash,
        client_id=row.client_id,
        user_id=row.user_id,
        scope=_split_scope(row.scope),
        props=json.loads(row.props),
        metadata=json.loads(row.grant_metadata),
        redirect_uri=row.redirect_uri,
        code_challenge=row.code_challenge,
        code_challenge_method=row.code_challenge_method,
        resource=json.loads(row.resource),
        expires_at=row.expires_at,
    )


def _row_to_token(row) -> AccessToken:
    return AccessToken(
        token_hash=row.token_hash,
        client_id=row.client_id,
        user_id=row.user_id,
        scope=_split_scope(row.scope),
        props=json.loads(row.props),
        audience=json.loads(row.audience) if row.audience is not None else None,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )

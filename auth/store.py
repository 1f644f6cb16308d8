"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
UserStore and RefreshTokenStore are the repositories; _row_to_user /
_row_to_refresh_token are the mappers. Services never touch SQL directly.

Both repositories share one Engine built by open_engine(). The schema lives in
a single MetaData so create_all() provisions users and refresh_tokens together.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  Writes run inside engine.begin() transactions. upsert_by_email and
  RefreshTokenStore.upsert are last-write-wins: the final committed write for
  an email or (user_id, user_agent) pair is the one that survives.
  RefreshTokenStore.upsert is a single ON CONFLICT DO UPDATE statement, so
  it needs SQLite or PostgreSQL.

  RefreshTokenStore.consume() is the rotation primitive. It is a
  compare-and-delete keyed on the token string: of any number of concurrent
  callers presenting the same token, only the one whose DELETE ... RETURNING
  removed the row receives the record. Requires SQLite >= 3.35 or PostgreSQL.

Layer rule: no imports from api/, identity/, or cache/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Float,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    or_,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from auth.models import DEFAULT_ROLES, RefreshToken, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for provider-only users
    Column("roles", Text, nullable=False),  # JSON list, e.g. ["USER"]
    Column("provider", String(30)),  # "yandex", "google", "github"
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token", String(64), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("user_agent", String(512), nullable=False),
    Column("expires_at", Float, nullable=False),  # epoch seconds, UTC
    UniqueConstraint("user_id", "user_agent", name="uq_refresh_tokens_user_agent"),
)


# Dialects with INSERT ... ON CONFLICT DO UPDATE, used by RefreshTokenStore.upsert
_DIALECT_INSERTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def open_engine(db_url: str) -> Engine:
    """Create the shared Engine and make sure the schema exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _epoch(dt: datetime) -> float:
    return dt.timestamp()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        engine = open_engine("sqlite:///identity.db")
        store = UserStore(engine)
        user = store.create_user(User(email="a@x.com", hashed_password=hash_password("secret")))
        store.find_user("a@x.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, user: User) -> User:
        """Insert a new user and return the persisted record.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        The directory converts that into Conflict.
        """
        now = _now_iso()
        user_id = user.id or str(uuid.uuid4())
        roles = list(user.roles or DEFAULT_ROLES)
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    roles=json.dumps(roles),
                    provider=user.provider,
                    created_at=now,
                    updated_at=now,
                )
            )
        return User(
            id=user_id,
            email=user.email,
            hashed_password=user.hashed_password,
            roles=roles,
            provider=user.provider,
            created_at=now,
            updated_at=now,
        )

    def upsert_by_email(
        self,
        email: str,
        hashed_password: str | None = None,
        provider: str | None = None,
        roles: list[str] | None = None,
    ) -> User:
        """Create or update the user identified by email; return the committed row.

        On update only the fields passed as non-None are written, so a role
        change never clears a password and vice versa. On create, roles
        default to ["USER"].
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
            if row is None:
                user_id = str(uuid.uuid4())
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        email=email,
                        hashed_password=hashed_password,
                        roles=json.dumps(list(roles or DEFAULT_ROLES)),
                        provider=provider,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                user_id = row.id
                updates: dict = {"updated_at": now}
                if hashed_password is not None:
                    updates["hashed_password"] = hashed_password
                if provider is not None:
                    updates["provider"] = provider
                if roles:
                    updates["roles"] = json.dumps(list(roles))
                conn.execute(_users.update().where(_users.c.id == user_id).values(**updates))
            saved = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(saved)

    def find_user(self, id_or_email: str) -> User | None:
        """Look up a user by id OR email in a single query. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(or_(_users.c.id == id_or_email, _users.c.email == id_or_email))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by email."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user record. Returns True if deleted, False if not found."""
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository for RefreshToken records.

    Expired rows are never returned. They are removed lazily by consume() and
    in bulk by purge_expired().
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def upsert(self, user_id: str, user_agent: str, token: str, expires_at: datetime) -> RefreshToken:
        """Store token for (user_id, user_agent), replacing any prior token for that pair.

        A single INSERT ... ON CONFLICT (user_id, user_agent) DO UPDATE, so
        concurrent logins from the same agent never collide on the unique
        constraint: the last write to commit is the token that survives.
        """
        dialect_insert = _DIALECT_INSERTS.get(self.engine.dialect.name)
        if dialect_insert is None:
            raise RuntimeError(f"Refresh token upsert is not supported on {self.engine.dialect.name!r}")
        stmt = dialect_insert(_refresh_tokens).values(
            token=token,
            user_id=user_id,
            user_agent=user_agent,
            expires_at=_epoch(expires_at),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "user_agent"],
            set_={"token": stmt.excluded.token, "expires_at": stmt.excluded.expires_at},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
        return RefreshToken(token=token, user_id=user_id, user_agent=user_agent, expires_at=expires_at)

    def find_by_token(self, token: str) -> RefreshToken | None:
        """Return the live record for token, or None if absent or expired."""
        now = _epoch(datetime.now(timezone.utc))
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.token == token) & (_refresh_tokens.c.expires_at > now)
                )
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def consume(self, token: str) -> RefreshToken | None:
        """Atomically remove token and return it if this caller won the delete.

        Returns None when the token is unknown, expired, or was consumed by a
        concurrent caller first. An expired row is still deleted.
        """
        now = datetime.now(timezone.utc)
        # Single DELETE ... RETURNING: the row comes back only to the
        # statement that actually removed it.
        with self.engine.begin() as conn:
            row = conn.execute(
                _refresh_tokens.delete()
                .where(_refresh_tokens.c.token == token)
                .returning(*_refresh_tokens.c)
            ).fetchone()
        if row is None:
            return None
        record = _row_to_refresh_token(row)
        if record.is_expired(now):
            return None
        return record

    def delete_by_token(self, token: str) -> bool:
        """Revoke a token. Idempotent -- returns False if it was already gone."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token == token))
        return result.rowcount > 0

    def delete_all_for_user(self, user_id: str) -> int:
        """Revoke every token issued to user_id. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def purge_expired(self) -> int:
        """Delete all expired tokens. Returns number of rows removed."""
        now = _epoch(datetime.now(timezone.utc))
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= now))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        roles=json.loads(row.roles),
        provider=row.provider,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        token=row.token,
        user_id=row.user_id,
        user_agent=row.user_agent,
        expires_at=datetime.fromtimestamp(row.expires_at, tz=timezone.utc),
    )

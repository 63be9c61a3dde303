"""
auth/store.py -- Credential Store: SQLAlchemy Core persistence for users and
refresh tokens.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_refresh_token are the mappers. The session
orchestrator never touches SQL directly.

Concurrency:
  Every refresh-token state change is a conditional UPDATE guarded by
  is_revoked = 0, and the caller learns whether it won from rowcount. Two
  concurrent rotations of the same secret therefore cannot both succeed --
  the second UPDATE matches zero rows. No code path ever writes is_revoked = 0,
  so revocation is monotonic.

  Write transactions are additionally serialised per process with a lock.
  SQLite allows one writer at a time; taking the lock up front turns lock
  contention into an ordered wait instead of a "database is locked" error.

Errors:
  A UNIQUE violation on users.username / users.email surfaces as
  ConflictError. Every other SQLAlchemy failure, constraint violations on
  refresh_tokens included, surfaces as StoreFailureError with driver detail
  kept in the log only.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

import functools
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import ConflictError, StoreFailureError
from auth.models import RefreshToken, User

logger = logging.getLogger("authgate.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authgate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(100), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("family_id", String(32), nullable=False),  # session lineage, shared across rotations
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_reason", String(50)),
    Column("revoked_at", String(32)),
    Column("replaced_by", String(128)),  # token value of the rotation successor
)

Index("ix_refresh_tokens_user_id", _refresh_tokens.c.user_id)
Index("ix_refresh_tokens_family_id", _refresh_tokens.c.family_id)


# ---------------------------------------------------------------------------
# SQLite connection pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    WAL lets readers proceed while a rotation is being written. foreign_keys
    is off by default in SQLite; without it the ON DELETE CASCADE from
    refresh_tokens to users is not enforced. Both are per-connection PRAGMAs.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def iso_timestamp(moment: datetime | None = None) -> str:
    """Render a UTC timestamp with a fixed width so stored values sort as text."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _store_operation(method):
    """Translate SQLAlchemy exceptions raised inside a repository method."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("Credential store failure in %s: %s", method.__name__, exc.__class__.__name__)
            raise StoreFailureError("The credential store is unavailable.") from exc

    return wrapper


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User and RefreshToken records.

    Usage:
        store = CredentialStore("sqlite:///auth.db")
        user_id = store.create_user(User(username="alice", email="alice@x.com", hashed_password=h))
        store.create_refresh_token(RefreshToken(token=t, user_id=user_id, expires_at=e, family_id=f))
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)
        self._write_lock = threading.Lock()

    @_store_operation
    def ping(self) -> bool:
        """Round-trip a trivial query. Used by the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @_store_operation
    def user_exists(self, username: str, email: str) -> bool:
        """Return True if username OR email is already taken (one query)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.id).where(or_(_users.c.username == username, _users.c.email == email)).limit(1)
            ).fetchone()
        return row is not None

    @_store_operation
    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned ID.

        Raises ConflictError if the username or email is already present,
        including when a concurrent registration won the race after the
        caller's user_exists() check.
        """
        with self._write_lock, self.engine.begin() as conn:
            return self._insert_user(conn, user)

    @_store_operation
    def create_user_with_session(self, user: User, record: RefreshToken) -> int:
        """Insert a new user and its first refresh token in one transaction.

        record.user_id is replaced by the new user's ID. If either insert
        fails, neither row is written. Returns the new user's ID.
        """
        with self._write_lock, self.engine.begin() as conn:
            user_id = self._insert_user(conn, user)
            self._insert_refresh_token(conn, replace(record, user_id=user_id))
        return user_id

    @_store_operation
    def get_user(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    @_store_operation
    def get_user_by_login(self, username_or_email: str) -> User | None:
        """Look up a user whose username or email equals the given value.

        A username may look like someone else's email; the exact username
        match wins in that case.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(
                    or_(_users.c.username == username_or_email, _users.c.email == username_or_email)
                )
            ).fetchall()
        if not rows:
            return None
        rows = sorted(rows, key=lambda r: r.username != username_or_email)
        return _row_to_user(rows[0])

    @_store_operation
    def get_user_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    @_store_operation
    def update_password(self, user_id: int, hashed_password: str) -> bool:
        """Replace a user's password hash. Returns False if the user is missing."""
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(hashed_password=hashed_password)
            )
        return result.rowcount > 0

    @_store_operation
    def set_active(self, user_id: int, is_active: bool) -> bool:
        """Activate or deactivate a user. Deactivation is the only destructive path."""
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    @_store_operation
    def create_refresh_token(self, record: RefreshToken) -> int:
        """Insert a new active refresh token and return its ID."""
        with self._write_lock, self.engine.begin() as conn:
            return self._insert_refresh_token(conn, record)

    @_store_operation
    def get_refresh_token(self, token: str) -> RefreshToken | None:
        """Look up a refresh token record by its secret value. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    @_store_operation
    def list_refresh_tokens(self, user_id: int) -> list[RefreshToken]:
        """Return every refresh token ever issued to a user, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.user_id == user_id).order_by(_refresh_tokens.c.id)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    @_store_operation
    def get_lineage(self, family_id: str) -> list[RefreshToken]:
        """Return the rotation history of one session lineage, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.family_id == family_id)
                .order_by(_refresh_tokens.c.id)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    @_store_operation
    def start_session(self, user_id: int, record: RefreshToken, revoke_reason: str) -> int:
        """Stamp last_login, revoke the user's active tokens and insert record.

        All three writes commit together. Returns the number of tokens revoked.
        """
        now = iso_timestamp()
        with self._write_lock, self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=now))
            revoked = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, revoked_reason=revoke_reason, revoked_at=now)
            ).rowcount
            self._insert_refresh_token(conn, record)
        return revoked

    @_store_operation
    def rotate_refresh_token(self, old_token: str, new_record: RefreshToken, reason: str) -> bool:
        """Atomically retire old_token and insert its successor.

        The compare-and-set UPDATE only matches a record that is still
        unrevoked and unexpired. If it matches nothing, nothing is written
        and False is returned -- the caller lost a race or presented a dead
        token.
        """
        now = iso_timestamp()
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token == old_token)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at > now)
                )
                .values(is_revoked=1, revoked_reason=reason, revoked_at=now, replaced_by=new_record.token)
            )
            if result.rowcount != 1:
                return False
            self._insert_refresh_token(conn, new_record)
        return True

    @_store_operation
    def revoke_refresh_token(self, token: str, reason: str) -> bool:
        """Revoke a single token if it is still unrevoked.

        Returns True if this call revoked it, False if it was already revoked
        or does not exist. An existing revocation reason is never overwritten.
        """
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token == token) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, revoked_reason=reason, revoked_at=iso_timestamp())
            )
        return result.rowcount > 0

    @_store_operation
    def revoke_all_for_user(self, user_id: int, reason: str) -> int:
        """Revoke every unrevoked token the user holds. Returns how many changed."""
        with self._write_lock, self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1, revoked_reason=reason, revoked_at=iso_timestamp())
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _insert_user(conn, user: User) -> int:
        try:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    is_active=1 if user.is_active else 0,
                    created_at=iso_timestamp(),
                )
            )
        except IntegrityError as exc:
            logger.info("Username or email already taken")
            raise ConflictError("Username or email already exists.", errors=["User already exists"]) from exc
        return result.inserted_primary_key[0]

    @staticmethod
    def _insert_refresh_token(conn, record: RefreshToken) -> int:
        result = conn.execute(
            _refresh_tokens.insert().values(
                token=record.token,
                user_id=record.user_id,
                family_id=record.family_id,
                expires_at=record.expires_at,
                created_at=iso_timestamp(),
                is_revoked=0,
            )
        )
        return result.inserted_primary_key[0]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        family_id=row.family_id,
        expires_at=row.expires_at,
        created_at=row.created_at,
        is_revoked=bool(row.is_revoked),
        revoked_reason=row.revoked_reason,
        revoked_at=row.revoked_at,
        replaced_by=row.replaced_by,
    )

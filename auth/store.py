"""
auth/store.py -- SQLAlchemy Core persistence layer for users and API keys.

Pattern: Repository + Data Mapper. ApiKeyStore and UserStore are the
repositories; _row_to_api_key / _row_to_user are the mappers. Service and
route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  revoke() is a single conditional UPDATE scoped by BOTH key id and owner.
  The row count doubles as the authorization check: a caller can never revoke
  a key they do not own, and "not found" and "not yours" are
  indistinguishable.

  API key rows are never deleted. Revocation flips is_active to 0 so the
  audit trail (who created what, when it was last used) survives.

Both stores share one Engine built by create_auth_engine(); the tables live in
the same database because the account panel writes to them as well.

Layer rule: no imports from api/, web/, or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import ApiKey, ApiKeyInfo, DirectoryUser

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'skillmap_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("user_id", String(64), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("is_deleted", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("api_key_id", String(36), primary_key=True),  # UUID4
    Column("user_id", String(64), nullable=False),
    Column("api_key_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("key_prefix", String(16), nullable=False),  # first 16 chars, display only
    Column("name", Text, nullable=False),
    Column("last_used_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Index("ix_api_keys_user_id", "user_id"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_auth_engine(db_url: str = _DEFAULT_DB_URL) -> Engine:
    """Create the engine and make sure both tables exist."""
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


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class ApiKeyStore:
    """Repository for ApiKey records.

    Usage:
        engine = create_auth_engine("sqlite:///auth.db")
        keys = ApiKeyStore(engine)
        keys.create(api_key)
        keys.get_by_hash(hash_api_key(raw))
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, api_key: ApiKey) -> None:
        """Insert a new key. Raises IntegrityError on a duplicate id or hash."""
        with self.engine.connect() as conn:
            conn.execute(
                _api_keys.insert().values(
                    api_key_id=api_key.id,
                    user_id=api_key.user_id,
                    api_key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    name=api_key.name,
                    last_used_at=None,
                    created_at=_iso(api_key.created_at),
                    expires_at=_iso(api_key.expires_at),
                    is_active=1 if api_key.is_active else 0,
                )
            )
            conn.commit()

    def get_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        """Look up a key by hash regardless of state. O(1) via the UNIQUE index.

        Inactive and expired keys are returned too; the caller decides.
        """
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.api_key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_for_user(self, user_id: str) -> list[ApiKeyInfo]:
        """Metadata for all of a user's keys, revoked ones included, newest first.

        api_key_hash is never selected.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(*_INFO_COLUMNS).where(_api_keys.c.user_id == user_id).order_by(_api_keys.c.created_at.desc())
            ).fetchall()
        return [_row_to_api_key_info(r) for r in rows]

    def count_active(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_api_keys)
                .where((_api_keys.c.user_id == user_id) & (_api_keys.c.is_active == 1))
            ).scalar()
        return result or 0

    def touch_last_used(self, key_id: str, when: datetime) -> None:
        """Stamp last_used_at after a successful authentication."""
        with self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.api_key_id == key_id).values(last_used_at=_iso(when)))
            conn.commit()

    def revoke(self, key_id: str, user_id: str) -> bool:
        """Soft-delete a key. Returns True only if a row owned by user_id changed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update()
                .where(
                    (_api_keys.c.api_key_id == key_id)
                    & (_api_keys.c.user_id == user_id)
                    & (_api_keys.c.is_active == 1)
                )
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


class UserStore:
    """The user directory: resolves identities to accounts.

    get_user_by_email() returns soft-deleted accounts too, so callers can tell
    "never registered" apart from "deleted".
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, user_id: str, email: str) -> DirectoryUser:
        """Insert a user. Raises IntegrityError if the id or email already exists."""
        created_at = datetime.now(timezone.utc)
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(user_id=user_id, email=email, is_deleted=0, created_at=_iso(created_at))
            )
            conn.commit()
        return DirectoryUser(user_id=user_id, email=email, is_deleted=False, created_at=created_at)

    def get_user_by_email(self, email: str) -> Optional[DirectoryUser]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: str) -> Optional[DirectoryUser]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.user_id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def mark_deleted(self, user_id: str) -> bool:
        """Soft-delete an account. Returns True if a row was updated."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.user_id == user_id).values(is_deleted=1))
            conn.commit()
        return result.rowcount > 0

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> DirectoryUser:
    return DirectoryUser(
        user_id=row.user_id,
        email=row.email,
        is_deleted=bool(row.is_deleted),
        created_at=_parse(row.created_at),
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.api_key_id,
        user_id=row.user_id,
        name=row.name,
        key_hash=row.api_key_hash,
        key_prefix=row.key_prefix,
        created_at=_parse(row.created_at),
        expires_at=_parse(row.expires_at),
        last_used_at=_parse(row.last_used_at),
        is_active=bool(row.is_active),
    )


_INFO_COLUMNS = (
    _api_keys.c.api_key_id,
    _api_keys.c.user_id,
    _api_keys.c.name,
    _api_keys.c.key_prefix,
    _api_keys.c.created_at,
    _api_keys.c.expires_at,
    _api_keys.c.last_used_at,
    _api_keys.c.is_active,
)


def _row_to_api_key_info(row) -> ApiKeyInfo:
    return ApiKeyInfo(
        id=row.api_key_id,
        user_id=row.user_id,
        name=row.name,
        key_prefix=row.key_prefix,
        created_at=_parse(row.created_at),
        expires_at=_parse(row.expires_at),
        last_used_at=_parse(row.last_used_at),
        is_active=bool(row.is_active),
    )

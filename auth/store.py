"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_* are the mappers. The session
manager, the request authenticator and route code never touch SQL directly,
and nothing else writes these tables.

Atomicity:
  Uniqueness (users.email, users.username, refresh_tokens.token,
  api_keys.user_id, oauth_identities(provider, provider_id)) is enforced by
  named UNIQUE constraints. create_user() does not check-then-write; it inserts
  and translates IntegrityError into ConflictError, classified by the name of
  the violated constraint, which closes the race between two concurrent signups.

  rotate_refresh_token() deletes the presented token and inserts its
  replacement inside one transaction. The DELETE is conditional on the token
  still existing, belonging to the claimed user and not being expired; if it
  affects zero rows the transaction is abandoned and the caller sees False.
  Two concurrent rotations of the same token therefore cannot both succeed.

  upsert_api_key() is a single INSERT .. ON CONFLICT(user_id) DO UPDATE.

Expiry:
  Refresh tokens past expires_at are invisible to find_refresh_token() even
  before purge_expired_refresh_tokens() physically removes them. The API
  lifespan runs the purge periodically.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import ApiKey, OAuthIdentity, RefreshToken, User
from core.errors import ConflictError, InputValidationError

logger = logging.getLogger("anirec.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False),  # always lowercase
    Column("username", String(64), nullable=False),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("email", name="uq_users_email"),
    UniqueConstraint("username", name="uq_users_username"),
)

_oauth_identities = Table(
    "oauth_identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("provider", String(30), nullable=False),  # "google", "github"
    Column("provider_id", String(255), nullable=False),  # provider's stable user ID
    Column("linked_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_id", name="uq_oauth_provider_subject"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token", Text, nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("token", name="uq_refresh_tokens_token"),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("ciphertext", Text, nullable=False),
    Column("iv", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("user_id", name="uq_api_keys_user_id"),  # one secret per user
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection and are not inherited from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Fixed-width ISO 8601 UTC string; lexical order equals time order."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# Named UNIQUE constraint -> (ConflictError code, message).
_CONFLICTS = {
    "uq_users_email": ("email_taken", "Email or username already exists"),
    "uq_users_username": ("username_taken", "Email or username already exists"),
    "uq_oauth_provider_subject": ("oauth_identity_taken", "OAuth identity is linked to another account"),
}

# SQLite reports "UNIQUE constraint failed: <table>.<col>[, <table>.<col>]"
# instead of a constraint name; map the column list back to the name.
_SQLITE_UNIQUE_COLUMNS = {
    ", ".join(f"{table.name}.{col.name}" for col in constraint.columns): constraint.name
    for table in _metadata.tables.values()
    for constraint in table.constraints
    if isinstance(constraint, UniqueConstraint)
}


def _violated_constraint(exc: IntegrityError) -> str | None:
    """Name of the UNIQUE constraint behind an IntegrityError, if the driver reports one."""
    diag = getattr(exc.orig, "diag", None)  # psycopg / psycopg2
    name = getattr(diag, "constraint_name", None)
    if name:
        return name
    message = str(exc.orig)
    prefix = "UNIQUE constraint failed: "
    if message.startswith(prefix):
        return _SQLITE_UNIQUE_COLUMNS.get(message[len(prefix):].strip())
    return None


def _conflict_from(exc: IntegrityError) -> ConflictError:
    """Name the violated uniqueness constraint without leaking SQL."""
    constraint = _violated_constraint(exc)
    if constraint in _CONFLICTS:
        code, message = _CONFLICTS[constraint]
        return ConflictError(message, code=code)
    return ConflictError("A record with this value already exists")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, RefreshToken and ApiKey entities.

    Usage:
        store = CredentialStore("sqlite:///anirec.db")
        user = store.create_user(User(email="a@x.com", username="alice", hashed_password=h))
        store.find_user_by_email_or_username("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a user (and its initial OAuth identities) and return the stored record.

        Raises ConflictError if the email, username or an OAuth identity is
        already taken. Uniqueness is decided by the database inside this one
        transaction, never by a prior lookup.
        """
        if user.hashed_password is None and not user.oauth_identities:
            raise InputValidationError("A user needs a password or an OAuth identity")

        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        email=user.email.strip().lower(),
                        username=user.username.strip(),
                        hashed_password=user.hashed_password,
                        created_at=now,
                        updated_at=now,
                    )
                )
                user_id = result.inserted_primary_key[0]
                for identity in user.oauth_identities:
                    conn.execute(
                        _oauth_identities.insert().values(
                            user_id=user_id,
                            provider=identity.provider,
                            provider_id=identity.provider_id,
                            linked_at=now,
                        )
                    )
        except IntegrityError as exc:
            raise _conflict_from(exc) from exc

        created = self.find_user_by_id(user_id)
        if created is None:  # pragma: no cover -- row committed above
            raise RuntimeError("user vanished after insert")
        return created

    def find_user_by_email_or_username(self, value: str) -> User | None:
        """Look up a user by email (case-insensitive) or exact username. None if absent."""
        value = value.strip()
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == value.lower()) | (_users.c.username == value))
            ).fetchone()
            return self._load_user(conn, row) if row is not None else None

    def find_user_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
            return self._load_user(conn, row) if row is not None else None

    def find_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return self._load_user(conn, row) if row is not None else None

    def append_oauth_identity(self, user_id: int, provider: str, provider_id: str) -> bool:
        """Link an OAuth identity to a user. Idempotent.

        Returns True if a new link was added, False if this exact
        (provider, provider_id) was already linked to the same user. Raises
        ConflictError if the identity belongs to a different user.
        """
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _oauth_identities.insert().values(
                        user_id=user_id, provider=provider, provider_id=provider_id, linked_at=now
                    )
                )
                conn.execute(_users.update().where(_users.c.id == user_id).values(updated_at=now))
        except IntegrityError as exc:
            with self.engine.connect() as conn:
                owner = conn.execute(
                    select(_oauth_identities.c.user_id).where(
                        (_oauth_identities.c.provider == provider) & (_oauth_identities.c.provider_id == provider_id)
                    )
                ).scalar()
            if owner == user_id:
                return False
            raise _conflict_from(exc) from exc
        return True

    def _load_user(self, conn, row) -> User:
        identities = conn.execute(
            _oauth_identities.select()
            .where(_oauth_identities.c.user_id == row.id)
            .order_by(_oauth_identities.c.id)
        ).fetchall()
        return _row_to_user(row, identities)

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, user_id: int, token: str, expires_at: datetime) -> RefreshToken:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _refresh_tokens.insert().values(
                        user_id=user_id, token=token, expires_at=to_iso(expires_at), created_at=_now_iso()
                    )
                )
        except IntegrityError as exc:
            raise ConflictError("Refresh token already exists") from exc
        return RefreshToken(user_id=user_id, token=token, expires_at=to_iso(expires_at))

    def find_refresh_token(self, token: str) -> RefreshToken | None:
        """Return the live token record, or None if absent or expired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.token == token) & (_refresh_tokens.c.expires_at > _now_iso())
                )
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def delete_refresh_token(self, token: str) -> bool:
        """Delete one token. Returns True if a row was removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token == token))
        return result.rowcount > 0

    def delete_all_for_user(self, user_id: int) -> int:
        """Revoke every session of a user (logout everywhere). Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def rotate_refresh_token(self, old_token: str, user_id: int, new_token: str, expires_at: datetime) -> bool:
        """Atomically replace old_token with new_token.

        Returns False (and changes nothing) if old_token is absent, expired,
        already rotated, or owned by a different user.
        """
        with self.engine.begin() as conn:
            deleted = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.token == old_token)
                    & (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.expires_at > _now_iso())
                )
            )
            if deleted.rowcount != 1:
                return False
            conn.execute(
                _refresh_tokens.insert().values(
                    user_id=user_id, token=new_token, expires_at=to_iso(expires_at), created_at=_now_iso()
                )
            )
        return True

    def purge_expired_refresh_tokens(self) -> int:
        """Delete all expired refresh tokens. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= _now_iso()))
        if result.rowcount:
            logger.info("Purged %d expired refresh tokens", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Api keys (encrypted third-party secret)
    # ------------------------------------------------------------------

    def upsert_api_key(self, user_id: int, ciphertext: str, iv: str) -> None:
        """Insert or replace the user's secret in one statement."""
        now = _now_iso()
        dialect = postgresql if self.engine.dialect.name == "postgresql" else sqlite
        stmt = dialect.insert(_api_keys).values(
            user_id=user_id, ciphertext=ciphertext, iv=iv, created_at=now, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_api_keys.c.user_id],
            set_={"ciphertext": stmt.excluded.ciphertext, "iv": stmt.excluded.iv, "updated_at": now},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def find_api_key(self, user_id: int) -> ApiKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.user_id == user_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def delete_api_key(self, user_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_api_keys.delete().where(_api_keys.c.user_id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(func.count()).select_from(_users)).scalar()
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, identity_rows) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        hashed_password=row.hashed_password,
        oauth_identities=[OAuthIdentity(r.provider, r.provider_id) for r in identity_rows],
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        user_id=row.user_id,
        ciphertext=row.ciphertext,
        iv=row.iv,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )

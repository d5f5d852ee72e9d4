"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper (same as tenancy/store.py).
UserStore is the repository; _row_to_subject / _row_to_token are the mappers.
Route, flow and policy code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Token redemption is a compare-and-set: one UPDATE guarded by
  "redeemed_at IS NULL AND revoked_at IS NULL". The database serializes
  writers, so when N requests redeem the same token concurrently exactly one
  UPDATE matches a row (rowcount == 1); every other one matches nothing and
  is reported as already used. There is no read-then-write window.

  Tokens are looked up by HMAC digest (token_hash, UNIQUE). Raw token strings
  never reach this module.

Multi-step writes (redeem + activate) share one transaction: callers open it
with `with store.transaction() as conn:` and pass conn to each method. Every
method also runs standalone when conn is omitted.

Layer rule: no imports from api/ or tenancy/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Connection, Engine

from auth.models import Role, Subject, Token, TokenScope
from core.db import from_iso, make_engine, to_iso, transaction, utc_now

logger = logging.getLogger("campusgate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("role", String(30), nullable=False),
    Column("organization_id", String(36)),  # NULL for platform accounts
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("salt", String(64)),  # NULL until a password is set
    Column("hashed_password", Text),  # NULL until a password is set
    Column("activated_at", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),  # soft delete
)

_tokens = Table(
    "tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("scope", String(16), nullable=False),
    Column("subject_id", String(36), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("redeemed_at", String(32)),  # written at most once
    Column("revoked_at", String(32)),
)

# Columns update_user() accepts. Anything else is a programming error.
_MUTABLE_USER_FIELDS = frozenset(
    {
        "email",
        "role",
        "organization_id",
        "first_name",
        "last_name",
        "salt",
        "hashed_password",
        "activated_at",
        "last_login_at",
        "deleted_at",
    }
)


def _db_value(value):
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Role):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Subject and Token entities.

    Usage:
        store = UserStore("sqlite:///campusgate.db")
        subject_id = store.create_user(Subject(email="a@x.com", role=Role.FACULTY))
        subject = store.get_by_id(subject_id)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open a unit of work. Commits on normal exit, rolls back on exception."""
        with self.engine.begin() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Subject queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, subject: Subject, now: datetime | None = None, conn: Connection | None = None) -> str:
        """Insert a new Subject and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers translate that into a Conflict.
        """
        now = now or utc_now()
        subject_id = subject.id or str(uuid.uuid4())
        with transaction(self.engine, conn) as c:
            c.execute(
                _users.insert().values(
                    id=subject_id,
                    email=subject.email,
                    role=subject.role.value,
                    organization_id=subject.organization_id,
                    first_name=subject.first_name,
                    last_name=subject.last_name,
                    salt=subject.salt,
                    hashed_password=subject.hashed_password,
                    activated_at=to_iso(subject.activated_at),
                    last_login_at=to_iso(subject.last_login_at),
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
            )
        return subject_id

    def get_by_id(self, subject_id: str, include_deleted: bool = False) -> Subject | None:
        """Look up a Subject by primary key. Soft-deleted rows are hidden by default."""
        query = _users.select().where(_users.c.id == subject_id)
        if not include_deleted:
            query = query.where(_users.c.deleted_at.is_(None))
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_subject(row) if row is not None else None

    def get_by_email(self, email: str) -> Subject | None:
        """Exact (case-sensitive) email lookup among live Subjects."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == email) & (_users.c.deleted_at.is_(None)))
            ).fetchone()
        return _row_to_subject(row) if row is not None else None

    def email_exists(self, email: str) -> bool:
        """True if any row, soft-deleted or not, holds this email (the UNIQUE index sees them all)."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email)).fetchone()
        return row is not None

    def list_users(
        self,
        organization_id: str,
        role: Role | None = None,
        email: str | None = None,
        limit: int = 50,
    ) -> list[Subject]:
        """Live Subjects of one organization, newest first. email is a substring filter."""
        query = _users.select().where(
            (_users.c.organization_id == organization_id) & (_users.c.deleted_at.is_(None))
        )
        if role is not None:
            query = query.where(_users.c.role == role.value)
        if email:
            query = query.where(_users.c.email.contains(email, autoescape=True))
        query = query.order_by(_users.c.created_at.desc(), _users.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_subject(r) for r in rows]

    def find_organization_admin(self, organization_id: str) -> Subject | None:
        """Return the (oldest) SCHOOL_ADMIN of an organization, deleted or not."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select()
                .where((_users.c.organization_id == organization_id) & (_users.c.role == Role.SCHOOL_ADMIN.value))
                .order_by(_users.c.created_at)
            ).fetchone()
        return _row_to_subject(row) if row is not None else None

    def admin_organization_ids(self, email: str) -> set[str]:
        """Organizations whose SCHOOL_ADMIN email contains `email` (case-insensitive)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_users.c.organization_id).where(
                    (_users.c.role == Role.SCHOOL_ADMIN.value)
                    & (_users.c.organization_id.is_not(None))
                    & (_users.c.email.icontains(email, autoescape=True))
                )
            ).fetchall()
        return {r.organization_id for r in rows}

    def update_user(
        self,
        subject_id: str,
        now: datetime | None = None,
        conn: Connection | None = None,
        **fields,
    ) -> bool:
        """Update mutable fields on an existing Subject.

        Datetimes and Roles are converted to their stored form. Returns True if
        a row was updated, False if subject_id was not found.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        values = {k: _db_value(v) for k, v in fields.items()}
        values["updated_at"] = to_iso(now or utc_now())
        with transaction(self.engine, conn) as c:
            result = c.execute(_users.update().where(_users.c.id == subject_id).values(**values))
        return result.rowcount > 0

    def activate_user(
        self,
        subject_id: str,
        now: datetime,
        conn: Connection | None = None,
        **fields,
    ) -> bool:
        """Stamp activated_at (and last_login_at) only if the Subject is not active yet.

        Guarded like redeem_token(): returns False when another request
        activated the Subject first.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        values = {k: _db_value(v) for k, v in fields.items()}
        values.update(activated_at=to_iso(now), last_login_at=to_iso(now), updated_at=to_iso(now))
        with transaction(self.engine, conn) as c:
            result = c.execute(
                _users.update()
                .where((_users.c.id == subject_id) & (_users.c.activated_at.is_(None)))
                .values(**values)
            )
        return result.rowcount > 0

    def update_last_login(self, subject_id: str, now: datetime | None = None) -> None:
        now = now or utc_now()
        self.update_user(subject_id, now=now, last_login_at=now)

    def soft_delete_user(self, subject_id: str, now: datetime | None = None) -> bool:
        now = now or utc_now()
        return self.update_user(subject_id, now=now, deleted_at=now)

    # ------------------------------------------------------------------
    # Token queries
    # ------------------------------------------------------------------

    def create_token(self, token: Token, now: datetime | None = None) -> int:
        """Insert one token row. Every issuance gets its own row -- no dedup."""
        now = now or utc_now()
        with self.engine.begin() as conn:
            result = conn.execute(
                _tokens.insert().values(
                    token_hash=token.token_hash,
                    scope=token.scope.value,
                    subject_id=token.subject_id,
                    expires_at=to_iso(token.expires_at),
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
            )
        return result.inserted_primary_key[0]

    def get_token(self, token_hash: str, conn: Connection | None = None) -> Token | None:
        with transaction(self.engine, conn) as c:
            row = c.execute(_tokens.select().where(_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def list_tokens(self, subject_id: str) -> list[Token]:
        """All tokens ever issued to a Subject, oldest first (audit view)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tokens.select().where(_tokens.c.subject_id == subject_id).order_by(_tokens.c.id)
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def redeem_token(self, token_hash: str, now: datetime | None = None, conn: Connection | None = None) -> bool:
        """Atomically mark a token redeemed. True for exactly one caller per token.

        False means the row is missing, already redeemed, or revoked; call
        get_token() to tell which.
        """
        now_iso = to_iso(now or utc_now())
        with transaction(self.engine, conn) as c:
            result = c.execute(
                _tokens.update()
                .where(
                    (_tokens.c.token_hash == token_hash)
                    & (_tokens.c.redeemed_at.is_(None))
                    & (_tokens.c.revoked_at.is_(None))
                )
                .values(redeemed_at=now_iso, updated_at=now_iso)
            )
        return result.rowcount == 1

    def revoke_token(self, token_hash: str, now: datetime | None = None) -> bool:
        """Revoke an ISSUED token. False if missing or already in a terminal state."""
        now_iso = to_iso(now or utc_now())
        with self.engine.begin() as conn:
            result = conn.execute(
                _tokens.update()
                .where(
                    (_tokens.c.token_hash == token_hash)
                    & (_tokens.c.redeemed_at.is_(None))
                    & (_tokens.c.revoked_at.is_(None))
                )
                .values(revoked_at=now_iso, updated_at=now_iso)
            )
        return result.rowcount > 0

    def revoke_outstanding(
        self,
        subject_id: str,
        scopes: Iterable[TokenScope] = tuple(s for s in TokenScope if s.one_shot),
        now: datetime | None = None,
    ) -> int:
        """Revoke every still-ISSUED token of the given scopes for a Subject."""
        now_iso = to_iso(now or utc_now())
        with self.engine.begin() as conn:
            result = conn.execute(
                _tokens.update()
                .where(
                    (_tokens.c.subject_id == subject_id)
                    & (_tokens.c.scope.in_([s.value for s in scopes]))
                    & (_tokens.c.redeemed_at.is_(None))
                    & (_tokens.c.revoked_at.is_(None))
                )
                .values(revoked_at=now_iso, updated_at=now_iso)
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_subject(row) -> Subject:
    return Subject(
        id=row.id,
        email=row.email,
        role=Role(row.role),
        organization_id=row.organization_id,
        first_name=row.first_name,
        last_name=row.last_name,
        salt=row.salt,
        hashed_password=row.hashed_password,
        activated_at=from_iso(row.activated_at),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        deleted_at=from_iso(row.deleted_at),
    )


def _row_to_token(row) -> Token:
    return Token(
        id=row.id,
        token_hash=row.token_hash,
        scope=TokenScope(row.scope),
        subject_id=row.subject_id,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        redeemed_at=from_iso(row.redeemed_at),
        revoked_at=from_iso(row.revoked_at),
    )

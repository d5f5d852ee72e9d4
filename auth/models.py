"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic) -- stores and services
do the work. The only behaviour here is Role.satisfies(), which is reference
data rather than logic: it answers "does this role carry the privileges of
that one" from a fixed table.

Layer rule: no imports from api/ or tenancy/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    SUPER_ADMIN = "Super Admin"
    SCHOOL_ADMIN = "School Admin"
    FACULTY = "Faculty"
    STUDENT = "Student"

    def satisfies(self, required: "Role") -> bool:
        """True if a holder of this role may act where `required` is demanded."""
        return required in ROLE_IMPLIES[self]


# Each role implies itself plus every role whose privileges it includes.
# New roles are added here once instead of re-auditing every endpoint.
ROLE_IMPLIES: dict[Role, frozenset[Role]] = {
    Role.SUPER_ADMIN: frozenset({Role.SUPER_ADMIN, Role.SCHOOL_ADMIN}),
    Role.SCHOOL_ADMIN: frozenset({Role.SCHOOL_ADMIN}),
    Role.FACULTY: frozenset({Role.FACULTY}),
    Role.STUDENT: frozenset({Role.STUDENT}),
}


class TokenScope(str, Enum):
    ACCESS = "ACCESS"
    ACTIVATE = "ACTIVATE"
    RESET = "RESET"

    @property
    def one_shot(self) -> bool:
        return self is not TokenScope.ACCESS


@dataclass
class Subject:
    """An authenticated principal (a user of the service).

    salt / hashed_password are None for invited users who have not activated
    yet. activated_at is None until the activation flow completes; a Subject
    without it can never pass password validation.

    organization_id is None only for platform-level accounts (SUPER_ADMIN).
    deleted_at marks a soft delete -- rows are never removed.
    """

    email: str
    role: Role
    id: str | None = None
    organization_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    salt: str | None = None
    hashed_password: str | None = None
    activated_at: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    def __repr__(self) -> str:
        # Credential fields stay out of reprs, tracebacks and log lines.
        return f"Subject(id={self.id!r}, email={self.email!r}, role={self.role.name})"


@dataclass
class Token:
    """The audit record of one issued token.

    Security design:
    - token_hash is HMAC-SHA256(JWT_SECRET, raw_token). The raw signed string
      is returned once to the caller and never persisted, the same way API
      keys are handled: a DB leak does not leak usable tokens, and lookups
      are O(1) by digest instead of comparing raw strings.
    - redeemed_at is written at most once, by an UPDATE guarded on
      "redeemed_at IS NULL" (see UserStore.redeem_token).
    - Rows are never deleted; they are the audit trail.
    """

    token_hash: str
    scope: TokenScope
    subject_id: str
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    redeemed_at: datetime | None = None
    revoked_at: datetime | None = None

    @property
    def state(self) -> str:
        if self.revoked_at is not None:
            return "REVOKED"
        if self.redeemed_at is not None:
            return "REDEEMED"
        return "ISSUED"


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a presented token (output of the stateless phase)."""

    subject_id: str
    scope: TokenScope
    expires_at: datetime
    jti: str | None = None

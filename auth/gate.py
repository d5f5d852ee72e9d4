"""
auth/gate.py -- The Authentication Gate.

Two phases, always in this order:

  1. Stateless: TokenIssuer.decode() checks signature and expiry. Failures
     are Unauthorized and happen before any database access, so a flood of
     forged tokens costs CPU only.
  2. Lookup: the `sub` claim is resolved to a live Subject with its
     organization (and that organization's subscription) populated. A
     Subject that no longer exists -- or was soft-deleted -- is NotFound.

ACCESS tokens are bearer tokens: valid until exp, never checked against the
token store here. Store state (redeemed / revoked) matters only to the
explicit one-shot flows in auth/flows.py.

The organization is re-read on every request, so a soft delete takes effect
immediately for every Subject of that tenant without re-authentication.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime

from auth.context import AuthContext
from auth.models import Subject, TokenClaims
from auth.store import UserStore
from auth.tokens import TokenIssuer
from core.db import utc_now
from core.errors import not_found
from tenancy.models import Organization
from tenancy.store import TenancyStore


class AuthenticationGate:
    def __init__(self, issuer: TokenIssuer, users: UserStore, tenancy: TenancyStore) -> None:
        self.issuer = issuer
        self.users = users
        self.tenancy = tenancy

    def verify(self, raw: str, now: datetime | None = None) -> TokenClaims:
        """Phase 1 only: signature and expiry."""
        return self.issuer.decode(raw, now=now)

    def resolve(self, claims: TokenClaims) -> tuple[Subject, Organization | None]:
        """Phase 2 only: load the Subject and populate its organization."""
        subject = self.users.get_by_id(claims.subject_id)
        if subject is None:
            raise not_found("User not found")
        organization = None
        if subject.organization_id is not None:
            organization = self.tenancy.get_organization(subject.organization_id)
        return subject, organization

    def authenticate(
        self,
        raw: str,
        now: datetime | None = None,
        path_params: Mapping[str, str] | None = None,
    ) -> AuthContext:
        """Run both phases and return the context the policy engine evaluates."""
        now = now or utc_now()
        claims = self.verify(raw, now=now)
        subject, organization = self.resolve(claims)
        ctx = AuthContext(
            subject=subject,
            claims=claims,
            now=now,
            tenancy=self.tenancy,
            organization=organization,
        )
        if path_params:
            ctx = ctx.with_path_params(path_params)
        return ctx

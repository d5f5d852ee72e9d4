"""
auth/context.py -- The typed, request-scoped authorization context.

AuthContext is what the Authentication Gate produces and what every
predicate consumes. It is frozen: a predicate that learns something (the
organization named in the path, for instance) returns a new context via
dataclasses.replace() instead of mutating a shared one. That keeps the
branches of some() independent -- a failed branch cannot leave half-set
state behind for the next branch to trip over.

The stores it carries are the process-wide instances built at startup; the
context only borrows them for the duration of one request.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING

from auth.models import Subject, TokenClaims
from tenancy.models import Organization

if TYPE_CHECKING:
    from tenancy.store import TenancyStore


@dataclass(frozen=True)
class AuthContext:
    subject: Subject
    claims: TokenClaims
    now: datetime
    tenancy: "TenancyStore"
    # The Subject's own organization, populated by the gate (None for
    # platform accounts).
    organization: Organization | None = None
    # Path parameters of the request being authorized.
    path_params: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    # Set by require_tenant_match once the path organization is confirmed.
    tenant: Organization | None = None

    def with_tenant(self, organization: Organization) -> "AuthContext":
        return replace(self, tenant=organization)

    def with_path_params(self, params: Mapping[str, str]) -> "AuthContext":
        return replace(self, path_params=MappingProxyType(dict(params)))

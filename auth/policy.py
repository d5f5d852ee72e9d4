"""
auth/policy.py -- Composable authorization predicates.

A Predicate takes an AuthContext and either returns a context (possibly
enriched, e.g. with the tenant named in the path) or raises ServiceError.
Two combinators build trees out of them:

    every(p1, p2, ...)   AND -- evaluated left to right, stops at the first failure
    some(p1, p2, ...)    OR  -- first success wins; if every branch fails the most
                                relevant failure is raised (see _RELEVANCE)

Evaluation is strictly sequential. Later predicates may rely on what earlier
ones put in the context, and the order is part of the security contract:

    role  ->  token scope  ->  tenant existence / membership  ->  tenant active  ->  plan

Role checks come before anything that touches storage, so a caller without
the right role learns nothing about which organizations or plans exist.

Usage (see auth/dependencies.py for the FastAPI side):

    SCHOOL_ADMIN_WITH_PLAN = every(
        require_role(Role.SCHOOL_ADMIN),
        require_tenant_match(),
        require_active_organization(),
        some(require_plan_active(PlanName.PLAN_ONE), require_plan_active(PlanName.PLAN_TWO)),
    )
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass

from auth.context import AuthContext
from auth.models import Role, TokenScope
from core.errors import (
    ErrorKind,
    ServiceError,
    bad_request,
    forbidden,
    implementation,
    not_found,
    unauthorized,
)
from tenancy.models import Organization, PlanName, SubscriptionStatus


@dataclass(frozen=True)
class Predicate:
    """A named authorization check. evaluate() returns the context or raises."""

    name: str
    check: Callable[[AuthContext], AuthContext]

    def evaluate(self, ctx: AuthContext) -> AuthContext:
        return self.check(ctx)

    def __repr__(self) -> str:
        return f"Predicate({self.name})"


# ---------------------------------------------------------------------------
# Combinators
# ---------------------------------------------------------------------------

# When every branch of some() fails, the failure with the highest rank wins.
# Unauthorized outranks NotFound so "you may not" is reported instead of
# "that does not exist", which would leak existence. Forbidden is only raised
# once membership of the tenant is established, so it is the most specific.
_RELEVANCE: dict[ErrorKind, int] = {
    ErrorKind.FORBIDDEN: 5,
    ErrorKind.UNAUTHORIZED: 4,
    ErrorKind.BAD_REQUEST: 3,
    ErrorKind.CONFLICT: 2,
    ErrorKind.NOT_FOUND: 1,
}


def every(*predicates: Predicate) -> Predicate:
    def check(ctx: AuthContext) -> AuthContext:
        for predicate in predicates:
            ctx = predicate.evaluate(ctx)
        return ctx

    return Predicate(f"every({', '.join(p.name for p in predicates)})", check)


def some(*predicates: Predicate) -> Predicate:
    if not predicates:
        raise ValueError("some() needs at least one predicate")

    def check(ctx: AuthContext) -> AuthContext:
        best: ServiceError | None = None
        for predicate in predicates:
            try:
                return predicate.evaluate(ctx)
            except ServiceError as exc:
                # An invariant violation is a server bug, not a denial; never mask it.
                if exc.kind is ErrorKind.IMPLEMENTATION:
                    raise
                if best is None or _RELEVANCE[exc.kind] > _RELEVANCE[best.kind]:
                    best = exc
        raise best

    return Predicate(f"some({', '.join(p.name for p in predicates)})", check)


# ---------------------------------------------------------------------------
# Built-in predicates
# ---------------------------------------------------------------------------


def require_role(*allowed: Role) -> Predicate:
    """Pass if the Subject's role satisfies any allowed role (see Role.satisfies)."""
    if not allowed:
        raise ValueError("require_role() needs at least one role")
    label = " or ".join(r.value for r in allowed)

    def check(ctx: AuthContext) -> AuthContext:
        if not any(ctx.subject.role.satisfies(role) for role in allowed):
            raise unauthorized(f"Invalid JWT Token: User is not a {label}")
        return ctx

    return Predicate(f"require_role({label})", check)


def require_token_scope(scope: TokenScope) -> Predicate:
    def check(ctx: AuthContext) -> AuthContext:
        if ctx.claims.scope is not scope:
            raise unauthorized(f"Invalid JWT Token: User does not have {scope.value} scope")
        return ctx

    return Predicate(f"require_token_scope({scope.value})", check)


def _is_uuid(value: str | None) -> bool:
    if not value:
        return False
    try:
        return str(uuid.UUID(value)) == value.lower()
    except ValueError:
        return False


def require_tenant_match(param: str = "organization_id") -> Predicate:
    """The organization named in the path must exist and be the Subject's own.

    Checks, in order: syntax (BadRequest), existence server side (NotFound),
    membership (Unauthorized). The path value is never trusted until the
    organization has been loaded.
    """

    def check(ctx: AuthContext) -> AuthContext:
        requested = ctx.path_params.get(param)
        if not _is_uuid(requested):
            raise bad_request("Invalid organization ID in path parameter")
        organization = ctx.tenancy.get_organization(requested)
        if organization is None:
            raise not_found("Organization not found")
        if ctx.subject.organization_id != organization.id:
            raise unauthorized("Invalid JWT Token: User is not part of this organization")
        return ctx.with_tenant(organization)

    return Predicate(f"require_tenant_match({param})", check)


def _organization_of(ctx: AuthContext) -> Organization:
    organization = ctx.tenant or ctx.organization
    if organization is None:
        raise unauthorized("Invalid JWT Token: User is not part of any organization")
    return organization


def require_active_organization() -> Predicate:
    def check(ctx: AuthContext) -> AuthContext:
        if _organization_of(ctx).is_deleted:
            raise forbidden("User is part of a deleted organization. Please contact support")
        return ctx

    return Predicate("require_active_organization", check)


def require_plan_active(plan_name: PlanName) -> Predicate:
    """The tenant's subscription must be ACTIVE and hold plan_name with now in [start, end)."""
    plan_name = PlanName(plan_name)

    def check(ctx: AuthContext) -> AuthContext:
        organization = _organization_of(ctx)
        subscription = organization.subscription
        if subscription is None or subscription.id is None:
            raise implementation(f"Organization {organization.id} has no subscription")
        if subscription.status is not SubscriptionStatus.ACTIVE:
            raise unauthorized("Invalid JWT Token: Organization subscription is not active")
        subscription_plan = ctx.tenancy.get_subscription_plan(subscription.id, plan_name)
        if subscription_plan is None:
            raise not_found("Subscription plan not found")
        if not subscription_plan.is_valid_at(ctx.now):
            if ctx.now < subscription_plan.start_at:
                raise unauthorized("Invalid JWT Token: Organization subscription plan is not active yet")
            raise unauthorized("Invalid JWT Token: Organization subscription plan expired. Please contact support")
        return ctx

    return Predicate(f"require_plan_active({plan_name.value})", check)


def require_any_plan(*plan_names: PlanName) -> Predicate:
    return some(*(require_plan_active(name) for name in plan_names))


# ---------------------------------------------------------------------------
# Policies used by the routers
# ---------------------------------------------------------------------------

SUPER_ADMIN = every(require_role(Role.SUPER_ADMIN))

ORGANIZATION_ADMIN = every(
    require_role(Role.SCHOOL_ADMIN),
    require_tenant_match(),
    require_active_organization(),
    require_any_plan(PlanName.PLAN_ONE, PlanName.PLAN_TWO),
)

# Super admins see any organization; school admins only their own.
ORGANIZATION_VIEWER = some(
    require_role(Role.SUPER_ADMIN),
    every(require_role(Role.SCHOOL_ADMIN), require_tenant_match(), require_active_organization()),
)

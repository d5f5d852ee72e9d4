"""
tenancy/models.py -- Domain dataclasses for tenants and their entitlements.

These are pure data containers. Validity windows, uniqueness and status
transitions are enforced by tenancy/store.py and auth/policy.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    PENDING = "PENDING"
    INACTIVE = "INACTIVE"


class PlanName(str, Enum):
    PLAN_ONE = "Plan - 1"
    PLAN_TWO = "Plan - 2"


@dataclass
class Plan:
    """A named feature tier.

    duration_days sets the length of the validity window given to a
    SubscriptionPlan created from this plan.
    """

    name: PlanName
    description: str
    price: float = 0.0
    duration_days: int = 0
    id: str | None = None


@dataclass
class SubscriptionPlan:
    """One plan entitlement of a subscription, valid on [start_at, end_at)."""

    subscription_id: str
    plan: Plan
    start_at: datetime
    end_at: datetime
    id: str | None = None

    def is_valid_at(self, now: datetime) -> bool:
        return self.start_at <= now < self.end_at


@dataclass
class Subscription:
    """Entitlements of one organization.

    owner_id is the tenant's admin Subject -- the nominal owner of the
    subscription. plans is populated by TenancyStore on read.
    """

    owner_id: str
    status: SubscriptionStatus
    id: str | None = None
    plans: list[SubscriptionPlan] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Organization:
    """A tenant. deleted_at marks a soft delete that blocks all tenant access."""

    name: str
    id: str | None = None
    subscription: Subscription | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

"""
tenancy/store.py -- SQLAlchemy Core persistence layer for tenants.

Pattern: Repository + Data Mapper (same shape as auth/store.py).
TenancyStore is the repository; the _row_to_* functions are the mappers.
Route and policy code never touches SQL directly.

Populate semantics: get_organization() returns the Organization with its
Subscription and every SubscriptionPlan (with its Plan) already attached, so
the authorization predicates can evaluate without further queries except the
single plan lookup the plan predicate is required to do.

Security:
  All queries use bound parameters. No f-strings in SQL.
  UNIQUE(subscription_id, plan_id) is enforced by the database; a duplicate
  insert raises sqlalchemy.exc.IntegrityError for the caller to map to 409.

Layer rule: imports only from core/ and tenancy/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, UniqueConstraint, func, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from core.db import from_iso, make_engine, to_iso, utc_now
from core.errors import implementation
from tenancy.models import Organization, Plan, PlanName, Subscription, SubscriptionPlan, SubscriptionStatus

logger = logging.getLogger("campusgate.tenancy")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_organizations = Table(
    "organizations",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("subscription_id", String(36)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),  # soft delete
)

_subscriptions = Table(
    "subscriptions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("owner_id", String(36), nullable=False),  # tenant admin Subject
    Column("status", String(16), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_plans = Table(
    "plans",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(64), nullable=False, unique=True),
    Column("description", Text, nullable=False),
    Column("price", Float, nullable=False, server_default="0"),
    Column("duration_days", Integer, nullable=False, server_default="0"),
)

_subscription_plans = Table(
    "subscription_plans",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("subscription_id", String(36), nullable=False),
    Column("plan_id", String(36), nullable=False),
    Column("start_at", String(32), nullable=False),
    Column("end_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("subscription_id", "plan_id", name="uq_subscription_plan"),
)

# Plans every deployment starts with. Duration is one school year.
DEFAULT_PLANS: tuple[Plan, ...] = (
    Plan(name=PlanName.PLAN_ONE, description="Plan One is a time tracking system", price=0.0, duration_days=365),
    Plan(name=PlanName.PLAN_TWO, description="Plan Two is a reporting system", price=0.0, duration_days=365),
)


def _new_id() -> str:
    return str(uuid.uuid4())


def plan_window(plan: Plan, now: datetime) -> tuple[datetime, datetime]:
    """Validity window [start, end) of a subscription plan created at `now`."""
    return now, now + timedelta(days=plan.duration_days)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TenancyStore:
    """Repository for Organization, Subscription, Plan and SubscriptionPlan.

    Usage:
        store = TenancyStore("sqlite:///campusgate.db")
        store.seed_plans()
        org = store.create_organization("North High", owner_id, [store.get_plan_by_name(PlanName.PLAN_ONE)])
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Cheap connectivity probe for the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def create_plan(self, plan: Plan) -> str:
        """Insert a plan. Raises IntegrityError if the name already exists."""
        plan_id = plan.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _plans.insert().values(
                    id=plan_id,
                    name=plan.name.value,
                    description=plan.description,
                    price=plan.price,
                    duration_days=plan.duration_days,
                )
            )
        return plan_id

    def seed_plans(self, plans: tuple[Plan, ...] = DEFAULT_PLANS) -> int:
        """Insert any missing plan by name. Idempotent; returns the number inserted."""
        inserted = 0
        for plan in plans:
            if self.get_plan_by_name(plan.name) is None:
                self.create_plan(Plan(plan.name, plan.description, plan.price, plan.duration_days))
                inserted += 1
            else:
                logger.info("Plan <%s> already exists", plan.name.value)
        return inserted

    def get_plan_by_name(self, name: PlanName) -> Plan | None:
        with self.engine.connect() as conn:
            row = conn.execute(_plans.select().where(_plans.c.name == PlanName(name).value)).fetchone()
        return _row_to_plan(row) if row is not None else None

    def list_plans(self) -> list[Plan]:
        with self.engine.connect() as conn:
            rows = conn.execute(_plans.select().order_by(_plans.c.name)).fetchall()
        return [_row_to_plan(r) for r in rows]

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(
        self,
        name: str,
        owner_id: str,
        plans: list[Plan],
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        now: datetime | None = None,
    ) -> Organization:
        """Create an organization, its subscription and one window per plan.

        All rows are written in a single transaction: a tenant never exists
        without its subscription.
        """
        now = now or utc_now()
        org_id = _new_id()
        subscription_id = _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _subscriptions.insert().values(
                    id=subscription_id,
                    owner_id=owner_id,
                    status=SubscriptionStatus(status).value,
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
            )
            for plan in plans:
                self._insert_subscription_plan(conn, subscription_id, plan, now)
            conn.execute(
                _organizations.insert().values(
                    id=org_id,
                    name=name,
                    subscription_id=subscription_id,
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
            )
        created = self.get_organization(org_id)
        if created is None:
            raise implementation(f"Organization {org_id} vanished after insert")
        return created

    def get_organization(self, organization_id: str) -> Organization | None:
        """Return the organization (soft-deleted included) with its subscription populated."""
        with self.engine.connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == organization_id)).fetchone()
            if row is None:
                return None
            subscription = self._load_subscription(conn, row.subscription_id) if row.subscription_id else None
        return _row_to_organization(row, subscription)

    def list_organizations(
        self,
        name: str | None = None,
        plan: PlanName | None = None,
        organization_ids: Iterable[str] | None = None,
        size: int = 10,
        after: tuple[str, str] | None = None,
    ) -> tuple[list[Organization], int, bool]:
        """One page of organizations, newest first, soft-deleted ones included.

        Keyset pagination on (created_at, id): `after` is the position of the
        last row of the previous page. Returns (page, total matching, has_next).
        organization_ids narrows the result to that set (empty set, empty page).
        """
        query = select(_organizations)
        if name:
            query = query.where(_organizations.c.name.icontains(name, autoescape=True))
        if plan is not None:
            query = query.where(
                _organizations.c.subscription_id.in_(
                    select(_subscription_plans.c.subscription_id)
                    .join(_plans, _plans.c.id == _subscription_plans.c.plan_id)
                    .where(_plans.c.name == PlanName(plan).value)
                )
            )
        if organization_ids is not None:
            query = query.where(_organizations.c.id.in_(list(organization_ids)))

        count_query = select(func.count()).select_from(query.subquery())
        if after is not None:
            created_at, last_id = after
            query = query.where(
                (_organizations.c.created_at < created_at)
                | ((_organizations.c.created_at == created_at) & (_organizations.c.id < last_id))
            )
        query = query.order_by(_organizations.c.created_at.desc(), _organizations.c.id.desc()).limit(size + 1)

        with self.engine.connect() as conn:
            total = conn.execute(count_query).scalar_one()
            rows = conn.execute(query).fetchall()
            page = [
                _row_to_organization(r, self._load_subscription(conn, r.subscription_id) if r.subscription_id else None)
                for r in rows[:size]
            ]
        return page, total, len(rows) > size

    def update_organization(self, organization_id: str, now: datetime | None = None, **fields) -> bool:
        """Update mutable organization fields (name, deleted_at). Returns False if not found."""
        values = {k: (to_iso(v) if isinstance(v, datetime) else v) for k, v in fields.items()}
        values["updated_at"] = to_iso(now or utc_now())
        with self.engine.begin() as conn:
            result = conn.execute(_organizations.update().where(_organizations.c.id == organization_id).values(**values))
        return result.rowcount > 0

    def soft_delete_organization(self, organization_id: str, now: datetime | None = None) -> bool:
        now = now or utc_now()
        return self.update_organization(organization_id, now=now, deleted_at=now)

    def restore_organization(self, organization_id: str, now: datetime | None = None) -> bool:
        return self.update_organization(organization_id, now=now, deleted_at=None)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def set_subscription_status(
        self, subscription_id: str, status: SubscriptionStatus, now: datetime | None = None
    ) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _subscriptions.update()
                .where(_subscriptions.c.id == subscription_id)
                .values(status=SubscriptionStatus(status).value, updated_at=to_iso(now or utc_now()))
            )
        return result.rowcount > 0

    def add_subscription_plan(self, subscription_id: str, plan: Plan, now: datetime | None = None) -> SubscriptionPlan:
        """Attach a plan to a subscription with a fresh window.

        Raises sqlalchemy.exc.IntegrityError if the subscription already has
        this plan (UNIQUE(subscription_id, plan_id)).
        """
        now = now or utc_now()
        with self.engine.begin() as conn:
            sp_id = self._insert_subscription_plan(conn, subscription_id, plan, now)
        start_at, end_at = plan_window(plan, now)
        return SubscriptionPlan(subscription_id=subscription_id, plan=plan, start_at=start_at, end_at=end_at, id=sp_id)

    def remove_subscription_plan(self, subscription_id: str, plan_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _subscription_plans.delete().where(
                    (_subscription_plans.c.subscription_id == subscription_id)
                    & (_subscription_plans.c.plan_id == plan_id)
                )
            )
        return result.rowcount > 0

    def set_plan_window(self, subscription_plan_id: str, start_at: datetime, end_at: datetime) -> bool:
        """Overwrite a validity window. Used by renewals and by tests that pin the clock."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _subscription_plans.update()
                .where(_subscription_plans.c.id == subscription_plan_id)
                .values(start_at=to_iso(start_at), end_at=to_iso(end_at))
            )
        return result.rowcount > 0

    def get_subscription_plan(self, subscription_id: str, plan_name: PlanName) -> SubscriptionPlan | None:
        """Look up the (subscription, plan name) entitlement. None if the pair does not exist."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _plan_join().where(
                    (_subscription_plans.c.subscription_id == subscription_id)
                    & (_plans.c.name == PlanName(plan_name).value)
                )
            ).fetchone()
        return _row_to_subscription_plan(row) if row is not None else None

    def deactivate_lapsed_subscriptions(self, now: datetime | None = None) -> int:
        """Mark ACTIVE subscriptions with no currently valid plan window INACTIVE.

        Entry point of the scheduled sweep. Windows are compared in SQL on the
        fixed-width ISO strings (see core/db.py). Returns the number of
        subscriptions changed.
        """
        now_iso = to_iso(now or utc_now())
        valid = select(_subscription_plans.c.subscription_id).where(
            (_subscription_plans.c.start_at <= now_iso) & (_subscription_plans.c.end_at > now_iso)
        )
        with self.engine.begin() as conn:
            result = conn.execute(
                _subscriptions.update()
                .where(
                    (_subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
                    & (_subscriptions.c.id.not_in(valid))
                )
                .values(status=SubscriptionStatus.INACTIVE.value, updated_at=now_iso)
            )
        if result.rowcount:
            logger.info("Deactivated %d lapsed subscription(s)", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _insert_subscription_plan(self, conn: Connection, subscription_id: str, plan: Plan, now: datetime) -> str:
        if plan.id is None:
            raise ValueError(f"Plan {plan.name.value!r} has not been persisted")
        start_at, end_at = plan_window(plan, now)
        sp_id = _new_id()
        conn.execute(
            _subscription_plans.insert().values(
                id=sp_id,
                subscription_id=subscription_id,
                plan_id=plan.id,
                start_at=to_iso(start_at),
                end_at=to_iso(end_at),
                created_at=to_iso(now),
            )
        )
        return sp_id

    def _load_subscription(self, conn: Connection, subscription_id: str) -> Subscription | None:
        row = conn.execute(_subscriptions.select().where(_subscriptions.c.id == subscription_id)).fetchone()
        if row is None:
            return None
        plan_rows = conn.execute(
            _plan_join().where(_subscription_plans.c.subscription_id == subscription_id).order_by(_plans.c.name)
        ).fetchall()
        return Subscription(
            id=row.id,
            owner_id=row.owner_id,
            status=SubscriptionStatus(row.status),
            plans=[_row_to_subscription_plan(r) for r in plan_rows],
            created_at=from_iso(row.created_at),
            updated_at=from_iso(row.updated_at),
        )


def _plan_join():
    return select(
        _subscription_plans,
        _plans.c.name,
        _plans.c.description,
        _plans.c.price,
        _plans.c.duration_days,
    ).join(_plans, _plans.c.id == _subscription_plans.c.plan_id)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_plan(row) -> Plan:
    return Plan(
        id=row.id,
        name=PlanName(row.name),
        description=row.description,
        price=row.price,
        duration_days=row.duration_days,
    )


def _row_to_subscription_plan(row) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=row.id,
        subscription_id=row.subscription_id,
        plan=Plan(
            id=row.plan_id,
            name=PlanName(row.name),
            description=row.description,
            price=row.price,
            duration_days=row.duration_days,
        ),
        start_at=from_iso(row.start_at),
        end_at=from_iso(row.end_at),
    )


def _row_to_organization(row, subscription: Subscription | None) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        subscription=subscription,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        deleted_at=from_iso(row.deleted_at),
    )

"""
tests/conftest.py -- Shared test fixtures for campusgate unit and integration tests.

This module provides:
  - _make_test_stores(): isolated in-memory DBs for the user and tenancy stores
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - RecordingMailer: keeps every message instead of delivering it
  - Harness: TestClient plus helpers to create tenants, Subjects and tokens
  - stores / issuer / harness fixtures

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Every
test gets its own name, so tests never see each other's rows.

Environment variables must be set before any api/auth/core import:
DEBUG so get_settings() auto-generates JWT_SECRET instead of raising, the
rate limits high enough that the suite never trips them, and the Host
header TestClient sends.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime

# CRITICAL: Set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("RECOVERY_RATE_LIMIT", "1000/minute")
os.environ.setdefault("INTERNAL_SECRET_TOKEN", "internal-test-secret-0123456789")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, attach_services
from auth.credentials import set_password
from auth.models import Role, Subject, TokenScope
from auth.store import UserStore
from auth.tokens import TokenIssuer
from core.config import get_settings
from core.db import utc_now
from core.mailer import Mailer
from tenancy.models import Organization, PlanName
from tenancy.store import TenancyStore

DEFAULT_PASSWORD = "Str0ng!Passw0rd"
TEST_SECRET = "test-secret-with-at-least-32-characters!"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, TenancyStore]:
    """Create both stores on one named shared-memory SQLite database.

    Args:
        db_suffix: Unique string appended to the DB name so tests don't
                   share state.
    """
    url = f"sqlite:///file:test_campusgate_{db_suffix}?mode=memory&cache=shared&uri=true"
    users = UserStore(db_url=url)
    tenancy = TenancyStore(db_url=url)
    tenancy.seed_plans()
    return users, tenancy


@dataclass
class SentMail:
    recipients: list[str]
    subject: str
    body: str


class RecordingMailer(Mailer):
    def __init__(self) -> None:
        self.sent: list[SentMail] = []

    def send(self, recipients: list[str], subject: str, body: str) -> None:
        self.sent.append(SentMail(list(recipients), subject, body))


def _patch_lifespan(users: UserStore, tenancy: TenancyStore, mailer: Mailer):
    """Return an async context manager that replaces the real lifespan.

    Runs the same attach_services() as production so routes see the real
    issuer, gate and flows on top of the isolated test stores.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, get_settings(), users, tenancy, mailer)
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Domain builders (shared by unit and integration tests)
# ---------------------------------------------------------------------------


def make_subject(
    users: UserStore,
    email: str,
    role: Role = Role.FACULTY,
    organization: Organization | None = None,
    password: str | None = DEFAULT_PASSWORD,
    activated: bool = True,
    now: datetime | None = None,
) -> Subject:
    now = now or utc_now()
    subject = Subject(
        email=email,
        role=role,
        organization_id=organization.id if organization else None,
        activated_at=now if activated else None,
    )
    if password is not None:
        set_password(subject, password)
    subject.id = users.create_user(subject, now=now)
    return users.get_by_id(subject.id)


def make_organization(
    users: UserStore,
    tenancy: TenancyStore,
    name: str = "North High",
    plans: Iterable[PlanName] = (PlanName.PLAN_ONE,),
    admin_email: str | None = None,
    now: datetime | None = None,
) -> tuple[Organization, Subject]:
    """Create a tenant with an activated School Admin, like the master endpoint does after activation."""
    now = now or utc_now()
    admin_id = str(uuid.uuid4())
    organization = tenancy.create_organization(
        name,
        owner_id=admin_id,
        plans=[tenancy.get_plan_by_name(p) for p in plans],
        now=now,
    )
    admin = Subject(
        id=admin_id,
        email=admin_email or f"admin-{uuid.uuid4().hex[:8]}@example.com",
        role=Role.SCHOOL_ADMIN,
        organization_id=organization.id,
        activated_at=now,
    )
    set_password(admin, DEFAULT_PASSWORD)
    users.create_user(admin, now=now)
    return tenancy.get_organization(organization.id), users.get_by_id(admin_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stores() -> Generator[tuple[UserStore, TenancyStore], None, None]:
    users, tenancy = _make_test_stores(uuid.uuid4().hex)
    yield users, tenancy
    tenancy.close()
    users.close()


@pytest.fixture
def issuer(stores) -> TokenIssuer:
    users, _ = stores
    return TokenIssuer(users, TEST_SECRET)


@dataclass
class Harness:
    client: TestClient
    users: UserStore
    tenancy: TenancyStore
    mailer: RecordingMailer
    issuer: TokenIssuer = field(init=False)

    def __post_init__(self) -> None:
        self.issuer = app.state.issuer

    def subject(self, email: str, role: Role = Role.FACULTY, organization: Organization | None = None, **kwargs) -> Subject:
        return make_subject(self.users, email, role=role, organization=organization, **kwargs)

    def organization(self, **kwargs) -> tuple[Organization, Subject]:
        return make_organization(self.users, self.tenancy, **kwargs)

    def token(self, subject: Subject, scope: TokenScope = TokenScope.ACCESS, ttl_seconds: int = 3600) -> str:
        return self.issuer.issue(subject, scope, ttl_seconds=ttl_seconds)

    def auth(self, subject: Subject) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token(subject)}"}


@pytest.fixture
def harness() -> Generator[Harness, None, None]:
    """Yield a Harness around the real FastAPI app with isolated stores.

    The TestClient uses the real app with a patched lifespan, so tests hit
    real route handlers, dependencies and exception handlers.
    """
    users, tenancy = _make_test_stores(uuid.uuid4().hex)
    mailer = RecordingMailer()
    app.router.lifespan_context = _patch_lifespan(users, tenancy, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield Harness(client=client, users=users, tenancy=tenancy, mailer=mailer)

    tenancy.close()
    users.close()


@pytest.fixture
def super_admin(harness) -> Subject:
    return harness.subject(get_settings().super_admin_email, role=Role.SUPER_ADMIN)

"""
api/routes/v1/organizations.py -- Platform-level tenant management.

Routes (SUPER_ADMIN unless noted):
  GET    /master/organizations                                -- cursor-paged listing with filters
  POST   /master/organizations                                -- create tenant, admin and plan windows
  GET    /master/organizations/{organization_id}              -- SUPER_ADMIN, or SCHOOL_ADMIN of that tenant
  PATCH  /master/organizations/{organization_id}              -- rename, remove plans, hand over, restore
  POST   /master/organizations/{organization_id}/plans        -- add a plan window (409 if present)
  PATCH  /master/organizations/{organization_id}/subscription -- set subscription status
  DELETE /master/organizations/{organization_id}              -- soft delete

Every tenant has exactly one SCHOOL_ADMIN created with it. Finding none is an
invariant violation and reported as an Implementation error, not NotFound.

Soft delete scrambles the admin's email (freeing the address for reuse) and
revokes the admin's outstanding one-shot tokens. ACCESS sessions of the
tenant's Subjects stop working immediately because the gate re-reads the
organization on every request.
"""

import base64
import binascii
import json
import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    MessageResponse,
    OrganizationCreate,
    OrganizationCreatedResponse,
    OrganizationListItem,
    OrganizationPage,
    OrganizationPatch,
    OrganizationResponse,
    PlanAdd,
    SubscriptionPatch,
    UserResponse,
)
from auth.context import AuthContext
from auth.dependencies import authorize
from auth.flows import AccountFlows
from auth.models import Role, Subject
from auth.policy import ORGANIZATION_VIEWER, SUPER_ADMIN
from auth.store import UserStore
from core.config import get_settings
from core.db import to_iso
from core.errors import ServiceError, bad_request, conflict, implementation, not_found
from core.mailer import activation_link, deliver, welcome_organization
from tenancy.models import Organization, Plan, PlanName
from tenancy.store import TenancyStore

router = APIRouter(prefix="/master/organizations")

require_super_admin = authorize(SUPER_ADMIN)

DELETED_EMAIL_DOMAIN = "management-app.com"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load(tenancy: TenancyStore, organization_id: str) -> Organization:
    organization = tenancy.get_organization(organization_id)
    if organization is None:
        raise not_found("Organization not found")
    return organization


def _plan(tenancy: TenancyStore, name: PlanName) -> Plan:
    plan = tenancy.get_plan_by_name(name)
    if plan is None:
        raise not_found(f"Plan not found: {name.value}")
    return plan


def _school_admin(users: UserStore, organization: Organization) -> Subject:
    admin = users.find_organization_admin(organization.id)
    if admin is None:
        raise implementation(
            "This organization does not have a school admin. This should not happen, please contact the support team."
        )
    return admin


def _encode_cursor(organization: Organization) -> str:
    raw = json.dumps([to_iso(organization.created_at), organization.id]).encode()
    return base64.urlsafe_b64encode(raw).decode()


def _decode_cursor(cursor: str) -> tuple[str, str]:
    try:
        created_at, organization_id = json.loads(base64.urlsafe_b64decode(cursor.encode()))
    except (binascii.Error, UnicodeDecodeError, ValueError, TypeError) as exc:
        raise bad_request("Invalid cursor", cause=exc) from exc
    if not isinstance(created_at, str) or not isinstance(organization_id, str):
        raise bad_request("Invalid cursor")
    return created_at, organization_id


def _mail_welcome(
    request: Request,
    background_tasks: BackgroundTasks,
    organization: Organization,
    admin: Subject,
    token: str,
) -> None:
    plans = [sp.plan.name.value for sp in organization.subscription.plans] if organization.subscription else []
    link = activation_link(get_settings().domain, organization.id, token)
    mail_subject, mail_body = welcome_organization(organization.name, admin.email, plans, link)
    background_tasks.add_task(deliver, request.app.state.mailer, [admin.email], mail_subject, mail_body)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("", response_model=OrganizationPage)
def list_organizations(
    request: Request,
    name: Optional[str] = Query(default=None, max_length=255),
    owner_email: Optional[str] = Query(default=None, max_length=255),
    plan: Optional[PlanName] = None,
    size: int = Query(default=10, ge=1, le=100),
    end_cursor: Optional[str] = Query(default=None, max_length=512),
    with_users: bool = False,
    ctx: AuthContext = Depends(require_super_admin),
) -> OrganizationPage:
    """List tenants newest first. name and owner_email are substring filters."""
    users: UserStore = request.app.state.user_store
    tenancy: TenancyStore = request.app.state.tenancy

    organization_ids = users.admin_organization_ids(owner_email) if owner_email else None
    after = _decode_cursor(end_cursor) if end_cursor else None
    page, total, has_next = tenancy.list_organizations(
        name=name, plan=plan, organization_ids=organization_ids, size=size, after=after
    )

    items = []
    for organization in page:
        item = OrganizationListItem.from_organization(organization)
        if with_users:
            members = users.list_users(organization.id, limit=200)
            item = item.model_copy(update={"users": [UserResponse.from_subject(s) for s in members]})
        items.append(item)
    return OrganizationPage(
        items=items,
        total_count=total,
        has_next_page=has_next,
        end_cursor=_encode_cursor(page[-1]) if page else None,
    )


@router.post("", response_model=OrganizationCreatedResponse, status_code=201)
def create_organization(
    request: Request,
    body: OrganizationCreate,
    background_tasks: BackgroundTasks,
    ctx: AuthContext = Depends(require_super_admin),
) -> OrganizationCreatedResponse:
    """Create a tenant with an ACTIVE subscription and invite its School Admin.

    The admin gets a 30-day ACTIVATE token by mail and has no password until
    activation.
    """
    users: UserStore = request.app.state.user_store
    tenancy: TenancyStore = request.app.state.tenancy
    flows: AccountFlows = request.app.state.flows

    if users.email_exists(body.school_admin_email):
        raise conflict("School admin email already exists")
    plans = [_plan(tenancy, name) for name in body.plans]

    admin = Subject(email=body.school_admin_email, role=Role.SCHOOL_ADMIN)
    admin.id = str(uuid.uuid4())
    organization = tenancy.create_organization(body.name, owner_id=admin.id, plans=plans, now=ctx.now)
    admin.organization_id = organization.id
    try:
        admin, token = flows.invite(admin, now=ctx.now)
    except ServiceError:
        # Do not leave a tenant without an admin behind.
        tenancy.soft_delete_organization(organization.id, now=ctx.now)
        raise

    _mail_welcome(request, background_tasks, organization, admin, token)
    return OrganizationCreatedResponse(
        organization=OrganizationResponse.from_organization(organization),
        school_admin=UserResponse.from_subject(users.get_by_id(admin.id)),
    )


@router.get("/{organization_id}", response_model=OrganizationResponse)
def get_organization(
    request: Request,
    organization_id: str,
    ctx: AuthContext = Depends(authorize(ORGANIZATION_VIEWER)),
) -> OrganizationResponse:
    organization = ctx.tenant or _load(request.app.state.tenancy, organization_id)
    return OrganizationResponse.from_organization(organization)


@router.patch("/{organization_id}", response_model=OrganizationResponse)
def update_organization(
    request: Request,
    organization_id: str,
    body: OrganizationPatch,
    background_tasks: BackgroundTasks,
    ctx: AuthContext = Depends(require_super_admin),
) -> OrganizationResponse:
    """Rename, drop plans, hand the tenant to a new admin, or restore it.

    Restoring requires school_admin_email because deletion scrambled the
    previous admin address; the new owner activates from scratch.
    """
    users: UserStore = request.app.state.user_store
    tenancy: TenancyStore = request.app.state.tenancy
    flows: AccountFlows = request.app.state.flows

    organization = _load(tenancy, organization_id)
    admin = _school_admin(users, organization)

    if body.restore:
        if not body.school_admin_email:
            raise bad_request("School admin email is required to restore the organization")
    elif organization.is_deleted:
        raise bad_request("Organization is deleted, cannot update")

    handed_over = None
    if body.school_admin_email and body.school_admin_email != admin.email:
        handed_over = flows.hand_over(admin, body.school_admin_email, now=ctx.now)
    if body.restore and organization.is_deleted:
        tenancy.restore_organization(organization.id, now=ctx.now)

    subscription = organization.subscription
    for name in body.remove_plans:
        plan = _plan(tenancy, name)
        if subscription is not None:
            tenancy.remove_subscription_plan(subscription.id, plan.id)
    if body.name:
        tenancy.update_organization(organization.id, now=ctx.now, name=body.name)

    organization = _load(tenancy, organization_id)
    if handed_over is not None:
        _mail_welcome(request, background_tasks, organization, *handed_over)
    return OrganizationResponse.from_organization(organization)


@router.post("/{organization_id}/plans", response_model=OrganizationResponse, status_code=201)
def add_plan(
    request: Request,
    organization_id: str,
    body: PlanAdd,
    ctx: AuthContext = Depends(require_super_admin),
) -> OrganizationResponse:
    """Attach a plan with a fresh [now, now + duration) window."""
    tenancy: TenancyStore = request.app.state.tenancy
    organization = _load(tenancy, organization_id)
    if organization.subscription is None:
        raise implementation(f"Organization {organization.id} has no subscription")
    plan = _plan(tenancy, body.plan)
    try:
        tenancy.add_subscription_plan(organization.subscription.id, plan, now=ctx.now)
    except IntegrityError as exc:
        raise conflict("Organization already has this plan") from exc
    return OrganizationResponse.from_organization(_load(tenancy, organization_id))


@router.patch("/{organization_id}/subscription", response_model=OrganizationResponse)
def update_subscription(
    request: Request,
    organization_id: str,
    body: SubscriptionPatch,
    ctx: AuthContext = Depends(require_super_admin),
) -> OrganizationResponse:
    tenancy: TenancyStore = request.app.state.tenancy
    organization = _load(tenancy, organization_id)
    if organization.subscription is None:
        raise implementation(f"Organization {organization.id} has no subscription")
    tenancy.set_subscription_status(organization.subscription.id, body.status, now=ctx.now)
    return OrganizationResponse.from_organization(_load(tenancy, organization_id))


@router.delete("/{organization_id}", response_model=MessageResponse)
def delete_organization(
    request: Request,
    organization_id: str,
    ctx: AuthContext = Depends(require_super_admin),
) -> MessageResponse:
    users: UserStore = request.app.state.user_store
    tenancy: TenancyStore = request.app.state.tenancy

    organization = _load(tenancy, organization_id)
    if organization.is_deleted:
        raise bad_request("Organization is already deleted")
    admin = _school_admin(users, organization)

    now = ctx.now
    # The address is freed first; a failure here leaves the tenant untouched.
    users.update_user(admin.id, now=now, email=f"deleted-{uuid.uuid4().hex}@{DELETED_EMAIL_DOMAIN}")
    users.revoke_outstanding(admin.id, now=now)
    tenancy.soft_delete_organization(organization.id, now=now)
    return MessageResponse(message="Organization deleted")

"""
api/routes/v1/organization_users.py -- User management inside one tenant.

Routes:
  GET    /organizations/{organization_id}/users             -- list members (role / email filters)
  POST   /organizations/{organization_id}/users             -- invite a member (30-day ACTIVATE token)
  GET    /organizations/{organization_id}/users/{user_id}   -- one member
  PATCH  /organizations/{organization_id}/users/{user_id}   -- names / role
  DELETE /organizations/{organization_id}/users/{user_id}   -- soft delete

Every route runs the ORGANIZATION_ADMIN policy first: School Admin role ->
ACCESS scope -> the path organization exists and is the caller's own -> not
soft-deleted -> PLAN_ONE or PLAN_TWO currently valid. Handlers only run with
ctx.tenant set to the confirmed organization, and every member lookup is
scoped to it, so a user id from another tenant is NotFound.
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request

from api.models import MessageResponse, UserCreate, UserListResponse, UserPatch, UserResponse
from auth.context import AuthContext
from auth.dependencies import authorize
from auth.flows import AccountFlows
from auth.models import Role, Subject
from auth.policy import ORGANIZATION_ADMIN
from auth.store import UserStore
from core.config import get_settings
from core.errors import bad_request, forbidden, not_found
from core.mailer import activation_link, deliver, welcome_user

router = APIRouter(prefix="/organizations/{organization_id}/users")

require_organization_admin = authorize(ORGANIZATION_ADMIN)


def _member(users: UserStore, ctx: AuthContext, user_id: str) -> Subject:
    subject = users.get_by_id(user_id)
    if subject is None or subject.organization_id != ctx.tenant.id:
        raise not_found("Organization user not found")
    return subject


@router.get("", response_model=UserListResponse)
def list_users(
    request: Request,
    role: Optional[Role] = None,
    email: Optional[str] = Query(default=None, max_length=255),
    limit: int = Query(default=50, ge=1, le=200),
    ctx: AuthContext = Depends(require_organization_admin),
) -> UserListResponse:
    users: UserStore = request.app.state.user_store
    members = users.list_users(ctx.tenant.id, role=role, email=email, limit=limit)
    return UserListResponse(items=[UserResponse.from_subject(s) for s in members], count=len(members))


@router.post("", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    background_tasks: BackgroundTasks,
    ctx: AuthContext = Depends(require_organization_admin),
) -> UserResponse:
    """Invite a member. The account stays inactive until the mailed token is redeemed."""
    flows: AccountFlows = request.app.state.flows
    subject = Subject(
        email=body.email,
        role=body.role,
        organization_id=ctx.tenant.id,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    subject, token = flows.invite(subject, now=ctx.now)

    link = activation_link(get_settings().domain, ctx.tenant.id, token)
    mail_subject, mail_body = welcome_user(ctx.tenant.name, subject.role.value, link)
    background_tasks.add_task(deliver, request.app.state.mailer, [subject.email], mail_subject, mail_body)

    created = request.app.state.user_store.get_by_id(subject.id)
    return UserResponse.from_subject(created)


@router.get("/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: str,
    ctx: AuthContext = Depends(require_organization_admin),
) -> UserResponse:
    return UserResponse.from_subject(_member(request.app.state.user_store, ctx, user_id))


@router.patch("/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserPatch,
    ctx: AuthContext = Depends(require_organization_admin),
) -> UserResponse:
    """Update names or role. A School Admin cannot be demoted."""
    users: UserStore = request.app.state.user_store
    target = _member(users, ctx, user_id)

    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise bad_request("No fields to update")
    if body.role is not None and target.role is Role.SCHOOL_ADMIN and body.role is not Role.SCHOOL_ADMIN:
        raise forbidden(f"You cannot change the role of a {Role.SCHOOL_ADMIN.value} to {body.role.value}")

    users.update_user(target.id, now=ctx.now, **updates)
    return UserResponse.from_subject(_member(users, ctx, user_id))


@router.delete("/{user_id}", response_model=MessageResponse)
def delete_user(
    request: Request,
    user_id: str,
    ctx: AuthContext = Depends(require_organization_admin),
) -> MessageResponse:
    """Soft delete a member and revoke its outstanding one-shot tokens.

    The tenant's School Admin is removed only together with the organization.
    """
    users: UserStore = request.app.state.user_store
    target = _member(users, ctx, user_id)
    if target.id == ctx.subject.id:
        raise bad_request("You cannot delete your own account")
    if target.role is Role.SCHOOL_ADMIN:
        raise forbidden(f"You cannot delete a {Role.SCHOOL_ADMIN.value}")

    users.soft_delete_user(target.id, now=ctx.now)
    users.revoke_outstanding(target.id, now=ctx.now)
    return MessageResponse(message="Organization user deleted")

"""
API request and response models for campusgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
tenancy/models.py, which own the internal domain representation. Route
handlers map between the two (see the from_* factory methods below).

Separation of concerns: domain models = domain truth; api/ models = API contract.
None of the response models has a field for salt, hashed_password or token
hashes, so those can never be serialized by accident.
"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import Role, Subject
from tenancy.models import Organization, PlanName, SubscriptionPlan, SubscriptionStatus

# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
_PASSWORD_RULES = (
    re.compile(r"[A-Z]"),
    re.compile(r"[a-z]"),
    re.compile(r"[0-9]"),
    re.compile(r"[!@#$%^&*(),.?\":{}|<>]"),
)
PASSWORD_POLICY_MESSAGE = (
    "Password must be at least 8 characters long and include at least one uppercase letter, "
    "one lowercase letter, one number, and one special character"
)


def check_password_policy(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH or not all(rule.search(value) for rule in _PASSWORD_RULES):
        raise ValueError(PASSWORD_POLICY_MESSAGE)
    return value


# Roles a school admin may hand out inside an organization.
_ORGANIZATION_ROLES = (Role.SCHOOL_ADMIN, Role.FACULTY, Role.STUDENT)


def _check_organization_role(value: Optional[Role]) -> Optional[Role]:
    if value is not None and value not in _ORGANIZATION_ROLES:
        raise ValueError(f"Role must be one of: {', '.join(r.value for r in _ORGANIZATION_ROLES)}")
    return value


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    The password policy is not applied here: a login attempt is either the
    stored password or it is not, and a 422 for a short password would only
    tell an attacker something about the rule.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class ActivateRequest(BaseModel):
    """Request body for PATCH /api/v1/auth/activate (token in X-A-Token)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    password: Optional[str] = Field(default=None, max_length=PASSWORD_MAX_LENGTH)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: Optional[str]) -> Optional[str]:
        return check_password_policy(value) if value is not None else None


class RecoverRequest(BaseModel):
    """Request body for POST /api/v1/auth/recover."""

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Request body for PATCH /api/v1/auth/reset-password (token in X-R-Token)."""

    email: EmailStr
    password: str = Field(max_length=PASSWORD_MAX_LENGTH)

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return check_password_policy(value)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a Subject."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: Role
    organization_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    activated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_subject(cls, subject: Subject) -> "UserResponse":
        return cls(
            id=subject.id,
            email=subject.email,
            role=subject.role,
            organization_id=subject.organization_id,
            first_name=subject.first_name,
            last_name=subject.last_name,
            activated_at=subject.activated_at,
            last_login_at=subject.last_login_at,
            created_at=subject.created_at,
            updated_at=subject.updated_at,
        )


class UserCreate(BaseModel):
    """Request body for POST /api/v1/organizations/{organization_id}/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    role: Role = Role.FACULTY
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("role")
    @classmethod
    def validate_role(cls, value):
        return _check_organization_role(value)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/organizations/{organization_id}/users/{user_id}."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: Optional[Role] = None
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("role")
    @classmethod
    def validate_role(cls, value):
        return _check_organization_role(value)


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[UserResponse]
    count: int


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    """Returned by login, refresh and activation. The token is also sent in the Authorization header."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class SubscriptionPlanResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    plan: PlanName
    description: str
    start_at: datetime
    end_at: datetime

    @classmethod
    def from_subscription_plan(cls, sp: SubscriptionPlan) -> "SubscriptionPlanResponse":
        return cls(
            id=sp.id,
            plan=sp.plan.name,
            description=sp.plan.description,
            start_at=sp.start_at,
            end_at=sp.end_at,
        )


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    status: SubscriptionStatus
    plans: list[SubscriptionPlanResponse] = Field(default_factory=list)


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    subscription: Optional[SubscriptionResponse] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_organization(cls, org: Organization) -> "OrganizationResponse":
        subscription = None
        if org.subscription is not None:
            subscription = SubscriptionResponse(
                id=org.subscription.id,
                owner_id=org.subscription.owner_id,
                status=org.subscription.status,
                plans=[SubscriptionPlanResponse.from_subscription_plan(sp) for sp in org.subscription.plans],
            )
        return cls(
            id=org.id,
            name=org.name,
            subscription=subscription,
            created_at=org.created_at,
            updated_at=org.updated_at,
            deleted_at=org.deleted_at,
        )


class OrganizationCreate(BaseModel):
    """Request body for POST /api/v1/master/organizations."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    school_admin_email: EmailStr
    plans: list[PlanName] = Field(min_length=1)

    @field_validator("plans")
    @classmethod
    def dedupe_plans(cls, values: list[PlanName]) -> list[PlanName]:
        """Drop duplicates while preserving order; the store rejects a plan twice."""
        return list(dict.fromkeys(values))


class OrganizationCreatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization: OrganizationResponse
    school_admin: UserResponse


class OrganizationListItem(OrganizationResponse):
    """An organization in a listing; users is only filled when asked for."""

    users: Optional[list[UserResponse]] = None


class OrganizationPage(BaseModel):
    """Cursor page for GET /api/v1/master/organizations.

    end_cursor is opaque; pass it back as end_cursor to get the next page.
    """

    model_config = ConfigDict(frozen=True)

    items: list[OrganizationListItem]
    total_count: int
    has_next_page: bool
    end_cursor: Optional[str] = None


class OrganizationPatch(BaseModel):
    """Request body for PATCH /api/v1/master/organizations/{organization_id}.

    restore=True brings back a soft-deleted organization and requires
    school_admin_email, because deletion scrambled the previous admin email.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    remove_plans: list[PlanName] = Field(default_factory=list)
    school_admin_email: Optional[EmailStr] = None
    restore: bool = False


class PlanAdd(BaseModel):
    """Request body for POST /api/v1/master/organizations/{organization_id}/plans."""

    plan: PlanName


class SubscriptionPatch(BaseModel):
    """Request body for PATCH /api/v1/master/organizations/{organization_id}/subscription."""

    status: SubscriptionStatus


class SweepResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    deactivated: int


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorCause(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    message: str


class ErrorResponse(BaseModel):
    """Error envelope returned on every 4xx/5xx response."""

    model_config = ConfigDict(frozen=True)

    name: str
    message: str
    cause: Optional[ErrorCause] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)

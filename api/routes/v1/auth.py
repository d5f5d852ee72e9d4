"""
api/routes/v1/auth.py -- Session and one-shot account endpoints.

Routes:
  POST  /api/v1/auth/login            -- email/password login; ACCESS token in body and header
  GET   /api/v1/auth/refresh          -- new ACCESS token for the current session
  GET   /api/v1/auth/me               -- current Subject
  PATCH /api/v1/auth/activate         -- redeem ACTIVATE token (X-A-Token header)
  POST  /api/v1/auth/recover          -- mail a RESET token; same answer for unknown emails
  PATCH /api/v1/auth/reset-password   -- redeem RESET token (X-R-Token header)

Security:
  POST /login and POST /recover are rate limited per client address
  (LOGIN_RATE_LIMIT / RECOVERY_RATE_LIMIT).
  AccountFlows.login() provides timing equalization for unknown emails.
  /recover answers known and unknown emails with the same body after the
  same randomized delay, so neither content nor latency reveals which.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit, recovery_rate_limit
from api.models import (
    ActivateRequest,
    LoginRequest,
    MessageResponse,
    RecoverRequest,
    ResetPasswordRequest,
    SessionResponse,
    UserResponse,
)
from auth.context import AuthContext
from auth.dependencies import require_session
from auth.flows import AccountFlows, Session
from core.config import get_settings
from core.mailer import deliver, password_reset, reset_link

# Auth policy:
# - POST  /auth/login, /auth/recover:          public, rate limited
# - PATCH /auth/activate, /auth/reset-password: public, authorized by the one-shot token header
# - GET   /auth/refresh, /auth/me:              requires an ACCESS session (require_session)
router = APIRouter()

RECOVERY_MESSAGE = "If the email exists, a message with instructions to reset the password has been sent"


def _session_response(session: Session) -> JSONResponse:
    settings = get_settings()
    resp = JSONResponse(
        status_code=200,
        content=SessionResponse(
            access_token=session.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.access_token_ttl_seconds,
            user=UserResponse.from_subject(session.subject),
        ).model_dump(mode="json"),
    )
    resp.headers["Authorization"] = f"Bearer {session.access_token}"
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=SessionResponse)
@limiter.limit(login_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password return the same Unauthorized body. A
    Subject of a soft-deleted organization gets Forbidden, but only after the
    password verified.
    """
    flows: AccountFlows = request.app.state.flows
    return _session_response(flows.login(body.email, body.password))


@router.get("/auth/refresh", response_model=SessionResponse)
def refresh(request: Request, ctx: AuthContext = Depends(require_session)) -> JSONResponse:
    flows: AccountFlows = request.app.state.flows
    return _session_response(flows.refresh(ctx.subject, ctx.organization, now=ctx.now))


@router.get("/auth/me", response_model=UserResponse)
def me(ctx: AuthContext = Depends(require_session)) -> UserResponse:
    return UserResponse.from_subject(ctx.subject)


# ---------------------------------------------------------------------------
# One-shot flows
# ---------------------------------------------------------------------------


@router.patch("/auth/activate", response_model=SessionResponse)
def activate(
    request: Request,
    body: Optional[ActivateRequest] = None,
    x_a_token: Optional[str] = Header(default=None, alias="X-A-Token"),
) -> JSONResponse:
    """Redeem an invitation. password is required only if none is set yet."""
    flows: AccountFlows = request.app.state.flows
    body = body or ActivateRequest()
    session = flows.activate(
        x_a_token,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _session_response(session)


@router.post("/auth/recover", response_model=MessageResponse)
@limiter.limit(recovery_rate_limit)
async def recover(request: Request, body: RecoverRequest, background_tasks: BackgroundTasks) -> MessageResponse:
    """Start password recovery.

    Both branches are padded to the same randomized target latency, so an
    unknown email waits the full delay and a known one waits whatever its
    token issuance did not already use up.
    """
    settings = get_settings()
    flows: AccountFlows = request.app.state.flows
    target = random.uniform(settings.recovery_delay_min_ms, settings.recovery_delay_max_ms) / 1000
    started = time.perf_counter()

    result = await run_in_threadpool(flows.start_recovery, body.email)
    if result is not None:
        subject, token = result
        mail_subject, mail_body = password_reset(reset_link(settings.domain, token))
        background_tasks.add_task(deliver, request.app.state.mailer, [subject.email], mail_subject, mail_body)

    await asyncio.sleep(max(0.0, target - (time.perf_counter() - started)))
    return MessageResponse(message=RECOVERY_MESSAGE)


@router.patch("/auth/reset-password", response_model=MessageResponse)
def reset_password(
    request: Request,
    body: ResetPasswordRequest,
    x_r_token: Optional[str] = Header(default=None, alias="X-R-Token"),
) -> MessageResponse:
    """Redeem a RESET token. body.email must be the account's current email."""
    flows: AccountFlows = request.app.state.flows
    flows.reset_password(x_r_token, email=body.email, password=body.password)
    return MessageResponse(message="Password has been reset")

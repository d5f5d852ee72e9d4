"""
tests/test_auth_routes.py -- Integration tests for api/routes/v1/auth.py and users.py.

Covers:
  - POST /auth/login: session body + Authorization header, identical 401s,
    403 for a deleted organization, rate limiting
  - GET /auth/refresh, GET /auth/me, GET /users/{user_id}
  - Bearer header handling (missing -> 401, malformed -> 400, wrong scope -> 401)
  - PATCH /auth/activate: invitation redeemed once, password rules, rollback
  - POST /auth/recover: same body and padded latency for known and unknown emails
  - PATCH /auth/reset-password: email must match, token redeemed once
"""

from __future__ import annotations

import re
import time
from datetime import timedelta

import pytest

from api.limiter import limiter
from auth.credentials import verify_password
from auth.models import Role, TokenScope
from core.config import get_settings
from tests.conftest import DEFAULT_PASSWORD

NEW_PASSWORD = "N3w!Passw0rd"
THIRTY_DAYS = int(timedelta(days=30).total_seconds())


def _login(harness, email: str, password: str = DEFAULT_PASSWORD):
    return harness.client.post("/api/v1/auth/login", json={"email": email, "password": password})


def _link_token(body: str) -> str:
    match = re.search(r"[?&]t=([A-Za-z0-9_.\-]+)", body)
    assert match, "no token link in mail body"
    return match.group(1)


# ---------------------------------------------------------------------------
# Login / refresh / me
# ---------------------------------------------------------------------------


def test_login_returns_session_in_body_and_header(harness):
    subject = harness.subject("faculty@example.com")
    resp = _login(harness, "faculty@example.com")
    assert resp.status_code == 200
    data = resp.json()
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == get_settings().access_token_ttl_seconds
    assert data["user"]["id"] == subject.id
    assert "hashed_password" not in data["user"]
    assert "salt" not in data["user"]
    assert resp.headers["Authorization"] == f"Bearer {data['access_token']}"
    assert resp.headers["Cache-Control"] == "no-store"

    claims = harness.issuer.decode(data["access_token"])
    assert claims.scope is TokenScope.ACCESS
    assert harness.users.get_by_id(subject.id).last_login_at is not None


def test_login_failures_are_indistinguishable(harness):
    harness.subject("faculty@example.com")
    wrong_password = _login(harness, "faculty@example.com", "Wr0ng!Password")
    unknown_email = _login(harness, "nobody@example.com")
    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json() == unknown_email.json()
    assert wrong_password.json()["name"] == "UnauthorizedError"


def test_login_before_activation_is_unauthorized(harness):
    harness.subject("invited@example.com", activated=False)
    assert _login(harness, "invited@example.com").status_code == 401


def test_login_to_deleted_organization_is_forbidden_after_password_check(harness):
    organization, admin = harness.organization()
    harness.tenancy.soft_delete_organization(organization.id)
    assert _login(harness, admin.email, "Wr0ng!Password").status_code == 401
    resp = _login(harness, admin.email)
    assert resp.status_code == 403
    assert resp.json()["name"] == "ForbiddenError"


def test_login_rate_limit(harness, monkeypatch):
    harness.subject("faculty@example.com")
    monkeypatch.setattr(get_settings(), "login_rate_limit", "2/minute")
    limiter.reset()
    try:
        assert _login(harness, "faculty@example.com").status_code == 200
        assert _login(harness, "faculty@example.com").status_code == 200
        resp = _login(harness, "faculty@example.com")
        assert resp.status_code == 429
        assert resp.json()["name"] == "TooManyRequestsError"
        assert "Retry-After" in resp.headers
    finally:
        limiter.reset()


def test_login_validation_error_does_not_echo_password(harness):
    resp = harness.client.post("/api/v1/auth/login", json={"email": "not-an-email", "password": "S3cret!value"})
    assert resp.status_code == 422
    assert resp.json()["name"] == "ValidationError"
    assert "S3cret!value" not in resp.text


def test_refresh_issues_a_new_access_token(harness):
    subject = harness.subject("faculty@example.com")
    old = harness.token(subject)
    resp = harness.client.get("/api/v1/auth/refresh", headers={"Authorization": f"Bearer {old}"})
    assert resp.status_code == 200
    new = resp.json()["access_token"]
    assert new != old
    assert harness.issuer.decode(new).subject_id == subject.id


def test_refresh_in_deleted_organization_is_bad_request(harness):
    organization, admin = harness.organization()
    headers = harness.auth(admin)
    harness.tenancy.soft_delete_organization(organization.id)
    resp = harness.client.get("/api/v1/auth/refresh", headers=headers)
    assert resp.status_code == 400


def test_me_returns_current_subject(harness):
    subject = harness.subject("faculty@example.com")
    resp = harness.client.get("/api/v1/auth/me", headers=harness.auth(subject))
    assert resp.status_code == 200
    assert resp.json()["email"] == "faculty@example.com"
    assert resp.json()["role"] == Role.FACULTY.value


def test_missing_authorization_header_is_unauthorized(harness):
    resp = harness.client.get("/api/v1/auth/me")
    assert resp.status_code == 401
    assert resp.json() == {"name": "UnauthorizedError", "message": "No authorization included in the request"}


def test_malformed_authorization_header_is_bad_request(harness):
    subject = harness.subject("faculty@example.com")
    resp = harness.client.get("/api/v1/auth/me", headers={"Authorization": f"Token {harness.token(subject)}"})
    assert resp.status_code == 400


def test_one_shot_token_cannot_open_a_session(harness):
    subject = harness.subject("faculty@example.com")
    reset = harness.token(subject, TokenScope.RESET)
    resp = harness.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {reset}"})
    assert resp.status_code == 401
    assert reset not in resp.text


def test_token_of_deleted_subject_is_not_found(harness):
    subject = harness.subject("faculty@example.com")
    headers = harness.auth(subject)
    harness.users.soft_delete_user(subject.id)
    assert harness.client.get("/api/v1/auth/me", headers=headers).status_code == 404


def test_get_user_by_id(harness):
    caller = harness.subject("faculty@example.com")
    other = harness.subject("other@example.com")
    resp = harness.client.get(f"/api/v1/users/{other.id}", headers=harness.auth(caller))
    assert resp.status_code == 200
    assert resp.json()["email"] == "other@example.com"

    missing = harness.client.get("/api/v1/users/00000000-0000-4000-8000-000000000000", headers=harness.auth(caller))
    assert missing.status_code == 404


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


def _activate(harness, token: str | None, **body):
    headers = {"X-A-Token": token} if token is not None else {}
    return harness.client.patch("/api/v1/auth/activate", headers=headers, json=body or None)


def test_activation_sets_credential_once(harness):
    invited = harness.subject("invited@example.com", password=None, activated=False)
    token = harness.token(invited, TokenScope.ACTIVATE, ttl_seconds=THIRTY_DAYS)

    resp = _activate(harness, token, password=NEW_PASSWORD, first_name="Grace")
    assert resp.status_code == 200
    assert resp.headers["Authorization"].startswith("Bearer ")
    assert resp.json()["user"]["first_name"] == "Grace"

    activated = harness.users.get_by_id(invited.id)
    assert activated.activated_at is not None
    assert verify_password(activated, NEW_PASSWORD)
    assert _login(harness, "invited@example.com", NEW_PASSWORD).status_code == 200

    again = _activate(harness, token, password="An0ther!Password")
    assert again.status_code == 400
    assert verify_password(harness.users.get_by_id(invited.id), NEW_PASSWORD)


def test_activation_requires_password_when_none_is_set(harness):
    invited = harness.subject("invited@example.com", password=None, activated=False)
    token = harness.token(invited, TokenScope.ACTIVATE)
    resp = _activate(harness, token)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Password is required to activate the user"
    # Nothing was redeemed.
    assert _activate(harness, token, password=NEW_PASSWORD).status_code == 200


def test_activation_keeps_existing_password(harness):
    invited = harness.subject("invited@example.com", activated=False)
    token = harness.token(invited, TokenScope.ACTIVATE)
    assert _activate(harness, token).status_code == 200
    assert _login(harness, "invited@example.com").status_code == 200


def test_activation_rejects_weak_password(harness):
    invited = harness.subject("invited@example.com", password=None, activated=False)
    token = harness.token(invited, TokenScope.ACTIVATE)
    assert _activate(harness, token, password="weakpassword").status_code == 422


def test_activation_without_header_is_bad_request(harness):
    resp = _activate(harness, None, password=NEW_PASSWORD)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Activation token not provided"


def test_activation_with_wrong_scope_is_unauthorized(harness):
    invited = harness.subject("invited@example.com", password=None, activated=False)
    assert _activate(harness, harness.token(invited, TokenScope.RESET), password=NEW_PASSWORD).status_code == 401
    assert _activate(harness, harness.token(invited), password=NEW_PASSWORD).status_code == 401


def test_activation_of_active_subject_rolls_back_redemption(harness):
    subject = harness.subject("faculty@example.com")
    token = harness.token(subject, TokenScope.ACTIVATE)
    resp = _activate(harness, token)
    assert resp.status_code == 400
    assert resp.json()["message"] == "User is already active"
    row = next(t for t in harness.users.list_tokens(subject.id) if t.scope is TokenScope.ACTIVATE)
    assert row.state == "ISSUED"


# ---------------------------------------------------------------------------
# Recovery / reset
# ---------------------------------------------------------------------------


def _recover(harness, email: str):
    started = time.perf_counter()
    resp = harness.client.post("/api/v1/auth/recover", json={"email": email})
    return resp, time.perf_counter() - started


def test_recovery_answers_known_and_unknown_emails_alike(harness):
    harness.subject("faculty@example.com")
    known, known_elapsed = _recover(harness, "faculty@example.com")
    unknown, unknown_elapsed = _recover(harness, "nobody@example.com")

    assert known.status_code == unknown.status_code == 200
    assert known.content == unknown.content
    assert known_elapsed >= 0.15
    assert unknown_elapsed >= 0.15

    assert [m.recipients for m in harness.mailer.sent] == [["faculty@example.com"]]


def test_recovery_link_resets_password(harness):
    subject = harness.subject("faculty@example.com")
    _recover(harness, "faculty@example.com")
    token = _link_token(harness.mailer.sent[-1].body)

    resp = harness.client.patch(
        "/api/v1/auth/reset-password",
        headers={"X-R-Token": token},
        json={"email": "faculty@example.com", "password": NEW_PASSWORD},
    )
    assert resp.status_code == 200
    assert resp.json() == {"message": "Password has been reset"}
    assert _login(harness, "faculty@example.com").status_code == 401
    assert _login(harness, "faculty@example.com", NEW_PASSWORD).status_code == 200

    reused = harness.client.patch(
        "/api/v1/auth/reset-password",
        headers={"X-R-Token": token},
        json={"email": "faculty@example.com", "password": "An0ther!Password"},
    )
    assert reused.status_code == 400
    assert verify_password(harness.users.get_by_id(subject.id), NEW_PASSWORD)


def test_reset_after_email_change_is_unauthorized_and_changes_nothing(harness):
    subject = harness.subject("a@example.com")
    token = harness.token(subject, TokenScope.RESET, ttl_seconds=get_settings().reset_token_ttl_seconds)
    harness.users.update_user(subject.id, email="b@example.com")
    before = harness.users.get_by_id(subject.id)

    resp = harness.client.patch(
        "/api/v1/auth/reset-password",
        headers={"X-R-Token": token},
        json={"email": "a@example.com", "password": NEW_PASSWORD},
    )
    assert resp.status_code == 401
    after = harness.users.get_by_id(subject.id)
    assert (after.salt, after.hashed_password) == (before.salt, before.hashed_password)
    assert harness.users.list_tokens(subject.id)[0].state == "ISSUED"


def test_reset_revokes_other_reset_links(harness):
    subject = harness.subject("faculty@example.com")
    first = harness.token(subject, TokenScope.RESET)
    second = harness.token(subject, TokenScope.RESET)
    resp = harness.client.patch(
        "/api/v1/auth/reset-password",
        headers={"X-R-Token": second},
        json={"email": "faculty@example.com", "password": NEW_PASSWORD},
    )
    assert resp.status_code == 200
    stale = harness.client.patch(
        "/api/v1/auth/reset-password",
        headers={"X-R-Token": first},
        json={"email": "faculty@example.com", "password": "An0ther!Password"},
    )
    assert stale.status_code == 400


@pytest.mark.parametrize(
    "headers, status",
    [({}, 400), ({"X-R-Token": "garbage"}, 401)],
)
def test_reset_rejects_missing_or_invalid_token(harness, headers, status):
    harness.subject("faculty@example.com")
    resp = harness.client.patch(
        "/api/v1/auth/reset-password",
        headers=headers,
        json={"email": "faculty@example.com", "password": NEW_PASSWORD},
    )
    assert resp.status_code == status

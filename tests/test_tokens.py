"""
tests/test_tokens.py -- Unit tests for auth/tokens.py and the token half of auth/store.py.

Covers:
  - Claims {sub, exp, scope, jti}; default one-hour ttl; one stored row per issuance
  - Only the HMAC digest is persisted, never the raw token
  - Expiry boundary (exp itself valid, exp + 1s expired) with a simulated clock
  - Bad signature / wrong secret / garbage -> Unauthorized
  - Redemption: scope check, exactly-once, revoked, unknown token, ACCESS refused
  - Concurrent redemption from many threads: exactly one winner
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.models import Role, TokenScope
from auth.store import UserStore
from auth.tokens import TokenIssuer
from core.errors import ErrorKind, ServiceError
from tests.conftest import TEST_SECRET, make_subject

NOW = datetime(2024, 9, 1, 8, 0, 0, tzinfo=timezone.utc)


def _claims(raw: str) -> dict:
    return jwt.decode(raw, TEST_SECRET, algorithms=["HS256"], options={"verify_exp": False})


# ---------------------------------------------------------------------------
# Issue
# ---------------------------------------------------------------------------


def test_issue_sets_claims_and_default_ttl(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    raw = issuer.issue(subject, TokenScope.ACCESS, now=NOW)
    claims = _claims(raw)
    assert claims["sub"] == subject.id
    assert claims["scope"] == "ACCESS"
    assert claims["exp"] == int(NOW.timestamp()) + 3600
    assert claims["jti"]


def test_issue_persists_one_row_per_issuance_without_raw_token(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    first = issuer.issue(subject, TokenScope.ACTIVATE, ttl_seconds=60, now=NOW)
    second = issuer.issue(subject, TokenScope.ACTIVATE, ttl_seconds=60, now=NOW)
    assert first != second

    rows = users.list_tokens(subject.id)
    assert len(rows) == 2
    assert {r.token_hash for r in rows} == {issuer.hash_token(first), issuer.hash_token(second)}
    for row in rows:
        assert row.token_hash not in (first, second)
        assert row.state == "ISSUED"
        assert row.expires_at == NOW + timedelta(seconds=60)


def test_issue_rejects_unsaved_subject(issuer):
    from auth.models import Subject

    with pytest.raises(ValueError):
        issuer.issue(Subject(email="x@example.com", role=Role.FACULTY), TokenScope.ACCESS)


# ---------------------------------------------------------------------------
# Stateless decode
# ---------------------------------------------------------------------------


def test_decode_round_trip(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    claims = issuer.decode(issuer.issue(subject, TokenScope.RESET, now=NOW), now=NOW)
    assert claims.subject_id == subject.id
    assert claims.scope is TokenScope.RESET


def test_decode_expiry_boundary(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    raw = issuer.issue(subject, TokenScope.ACCESS, ttl_seconds=24 * 3600, now=NOW)
    exp = NOW + timedelta(hours=24)

    assert issuer.decode(raw, now=exp).subject_id == subject.id
    with pytest.raises(ServiceError) as exc_info:
        issuer.decode(raw, now=exp + timedelta(seconds=1))
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
    assert exc_info.value.message == "JWT Token has expired"


@pytest.mark.parametrize("raw", ["", "not-a-token", "a.b.c"])
def test_decode_garbage_is_unauthorized(issuer, raw):
    with pytest.raises(ServiceError) as exc_info:
        issuer.decode(raw, now=NOW)
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED


def test_decode_rejects_foreign_signature(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    other = TokenIssuer(users, "another-secret-that-is-32-chars-long!!")
    raw = other.issue(subject, TokenScope.ACCESS, now=NOW)
    with pytest.raises(ServiceError) as exc_info:
        issuer.decode(raw, now=NOW)
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED


def test_decode_rejects_unknown_scope(issuer):
    raw = jwt.encode({"sub": "x", "exp": int(NOW.timestamp()) + 60, "scope": "ADMIN"}, TEST_SECRET, algorithm="HS256")
    with pytest.raises(ServiceError) as exc_info:
        issuer.decode(raw, now=NOW)
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED


def test_decode_rejects_missing_sub(issuer):
    raw = jwt.encode({"exp": int(NOW.timestamp()) + 60, "scope": "ACCESS"}, TEST_SECRET, algorithm="HS256")
    with pytest.raises(ServiceError) as exc_info:
        issuer.decode(raw, now=NOW)
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED


# ---------------------------------------------------------------------------
# Redemption / revocation
# ---------------------------------------------------------------------------


def test_redeem_succeeds_once(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    raw = issuer.issue(subject, TokenScope.ACTIVATE, now=NOW)

    assert issuer.redeem(raw, TokenScope.ACTIVATE, now=NOW).subject_id == subject.id
    with pytest.raises(ServiceError) as exc_info:
        issuer.redeem(raw, TokenScope.ACTIVATE, now=NOW)
    assert exc_info.value.kind is ErrorKind.BAD_REQUEST
    assert "already used" in exc_info.value.message

    (row,) = users.list_tokens(subject.id)
    assert row.state == "REDEEMED"
    assert row.redeemed_at == NOW


def test_redeem_wrong_scope_is_unauthorized_and_leaves_token_usable(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    raw = issuer.issue(subject, TokenScope.RESET, now=NOW)
    with pytest.raises(ServiceError) as exc_info:
        issuer.redeem(raw, TokenScope.ACTIVATE, now=NOW)
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
    assert issuer.redeem(raw, TokenScope.RESET, now=NOW)


def test_redeem_expired_token_is_unauthorized(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    raw = issuer.issue(subject, TokenScope.RESET, ttl_seconds=10, now=NOW)
    with pytest.raises(ServiceError) as exc_info:
        issuer.redeem(raw, TokenScope.RESET, now=NOW + timedelta(seconds=11))
    assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
    assert users.list_tokens(subject.id)[0].state == "ISSUED"


def test_revoked_token_cannot_be_redeemed(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    raw = issuer.issue(subject, TokenScope.RESET, now=NOW)
    assert issuer.revoke(raw, now=NOW)
    assert not issuer.revoke(raw, now=NOW)

    with pytest.raises(ServiceError) as exc_info:
        issuer.redeem(raw, TokenScope.RESET, now=NOW)
    assert exc_info.value.kind is ErrorKind.BAD_REQUEST
    assert "revoked" in exc_info.value.message


def test_redeem_unknown_token_is_not_found(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    # Validly signed but never recorded by the store.
    raw = jwt.encode(
        {"sub": subject.id, "exp": int(NOW.timestamp()) + 60, "scope": "RESET", "jti": "x"},
        TEST_SECRET,
        algorithm="HS256",
    )
    with pytest.raises(ServiceError) as exc_info:
        issuer.redeem(raw, TokenScope.RESET, now=NOW)
    assert exc_info.value.kind is ErrorKind.NOT_FOUND


def test_access_tokens_are_not_redeemable(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    raw = issuer.issue(subject, TokenScope.ACCESS, now=NOW)
    with pytest.raises(ValueError):
        issuer.redeem(raw, TokenScope.ACCESS, now=NOW)
    assert users.list_tokens(subject.id)[0].state == "ISSUED"


def test_revoke_outstanding_only_touches_issued_one_shot_tokens(stores, issuer):
    users, _ = stores
    subject = make_subject(users, "a@example.com")
    used = issuer.issue(subject, TokenScope.ACTIVATE, now=NOW)
    issuer.redeem(used, TokenScope.ACTIVATE, now=NOW)
    issuer.issue(subject, TokenScope.RESET, now=NOW)
    issuer.issue(subject, TokenScope.ACCESS, now=NOW)

    assert users.revoke_outstanding(subject.id, now=NOW) == 1
    states = {(t.scope, t.state) for t in users.list_tokens(subject.id)}
    assert states == {
        (TokenScope.ACTIVATE, "REDEEMED"),
        (TokenScope.RESET, "REVOKED"),
        (TokenScope.ACCESS, "ISSUED"),
    }


def test_concurrent_redemption_has_exactly_one_winner(tmp_path):
    """N threads redeem the same token against a file-backed database."""
    users = UserStore(f"sqlite:///{tmp_path / 'race.db'}")
    try:
        issuer = TokenIssuer(users, TEST_SECRET)
        subject = make_subject(users, "race@example.com")
        raw = issuer.issue(subject, TokenScope.ACTIVATE)

        workers = 8
        barrier = threading.Barrier(workers)
        results: list[str] = []
        lock = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            try:
                issuer.redeem(raw, TokenScope.ACTIVATE)
                outcome = "ok"
            except ServiceError as exc:
                outcome = exc.kind.name
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert results.count("ok") == 1
        assert results.count("BAD_REQUEST") == workers - 1
        assert users.list_tokens(subject.id)[0].state == "REDEEMED"
    finally:
        users.close()

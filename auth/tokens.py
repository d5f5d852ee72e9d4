"""
auth/tokens.py -- Signed, scoped, time-bounded tokens.

Security design decisions:
  JWT: python-jose, HMAC family (HS256 by default, JWT_ALGORITHM to change).
       Claims are {sub, exp, scope, jti}. jti is a random id that makes every
       issued string unique, so each issuance maps to exactly one audit row
       even when the same Subject gets two tokens within one second.

  Expiry: python-jose's own exp check is disabled and exp is compared against
       an explicit `now`. Behaviour is identical on the wall clock, and tests
       can move the clock without sleeping. A token is expired when
       now > exp (exp itself is still valid).

  Stateless phase: decode() never touches storage. Any failure is
       Unauthorized -- "invalid" for signature / shape problems, "expired"
       for a good signature past its exp.

  Storage: only HMAC-SHA256(JWT_SECRET, token) is persisted (hash_token),
       never the raw token. Lookups are O(1) by digest, the same pattern used
       for API-key style credentials.

TokenIssuer is constructed once at startup (api/main.py lifespan) and shared
through app.state; it holds no per-request state.

Layer rule: no imports from api/ or tenancy/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timezone

from jose import JWTError, jwt

from auth.models import Subject, Token, TokenClaims, TokenScope
from auth.store import UserStore
from core.db import utc_now
from core.errors import ServiceError, bad_request, not_found, unauthorized

logger = logging.getLogger("campusgate.auth.tokens")

DEFAULT_TTL_SECONDS = 60 * 60


class TokenIssuer:
    """Issues, verifies, redeems and revokes tokens.

    Usage:
        issuer = TokenIssuer(store, settings.jwt_secret, settings.jwt_algorithm)
        raw = issuer.issue(subject, TokenScope.ACCESS, ttl_seconds=86400)
        claims = issuer.decode(raw)
    """

    def __init__(
        self,
        store: UserStore,
        secret: str,
        algorithm: str = "HS256",
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.store = store
        self._secret = secret
        self.algorithm = algorithm
        self.default_ttl_seconds = default_ttl_seconds

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        subject: Subject,
        scope: TokenScope,
        ttl_seconds: int | None = None,
        now: datetime | None = None,
    ) -> str:
        """Sign a token for subject and record it in the token store.

        ttl_seconds defaults to the issuer default (one hour). exp is whole
        seconds, as JWT requires.
        """
        if subject.id is None:
            raise ValueError("Cannot issue a token for an unsaved Subject")
        now = now or utc_now()
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        exp = int(now.timestamp()) + ttl
        payload = {
            "sub": subject.id,
            "exp": exp,
            "scope": TokenScope(scope).value,
            "jti": uuid.uuid4().hex,
        }
        raw = jwt.encode(payload, self._secret, algorithm=self.algorithm)
        self.store.create_token(
            Token(
                token_hash=self.hash_token(raw),
                scope=TokenScope(scope),
                subject_id=subject.id,
                expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            ),
            now=now,
        )
        logger.info("Issued %s token for subject %s (ttl=%ds)", scope.value, subject.id, ttl)
        return raw

    # ------------------------------------------------------------------
    # Stateless verification
    # ------------------------------------------------------------------

    def decode(self, raw: str, now: datetime | None = None) -> TokenClaims:
        """Verify signature and expiry. Raises Unauthorized; never touches storage."""
        try:
            payload = jwt.decode(
                raw,
                self._secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError as exc:
            raise unauthorized("Invalid JWT Token", cause=exc) from exc

        sub, exp, scope = payload.get("sub"), payload.get("exp"), payload.get("scope")
        if not isinstance(sub, str) or not sub or not isinstance(exp, (int, float)):
            raise unauthorized("Invalid JWT Token: missing claims")
        try:
            token_scope = TokenScope(scope)
        except ValueError as exc:
            raise unauthorized("Invalid JWT Token: unknown scope") from exc

        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        now = now or utc_now()
        if now > expires_at:
            raise unauthorized("JWT Token has expired")
        return TokenClaims(subject_id=sub, scope=token_scope, expires_at=expires_at, jti=payload.get("jti"))

    def hash_token(self, raw: str) -> str:
        """Return HMAC-SHA256(JWT_SECRET, raw) as hex -- the stored lookup key."""
        return hmac.new(self._secret.encode(), raw.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # One-shot lifecycle
    # ------------------------------------------------------------------

    def redeem(self, raw: str, scope: TokenScope, now: datetime | None = None, conn=None) -> TokenClaims:
        """Consume a one-shot token exactly once.

        Order: signature/expiry (Unauthorized) -> scope (Unauthorized) ->
        compare-and-set in storage (BadRequest if already used or revoked,
        NotFound if the store never issued it). Pass conn to make the
        redemption part of a larger transaction.
        """
        if not scope.one_shot:
            raise ValueError(f"{scope.value} tokens are not redeemable")
        now = now or utc_now()
        claims = self.decode(raw, now=now)
        if claims.scope is not scope:
            raise unauthorized(f"Invalid JWT Token: Scope is not {scope.value}")
        token_hash = self.hash_token(raw)
        if self.store.redeem_token(token_hash, now=now, conn=conn):
            return claims
        raise self._redeem_failure(token_hash, scope, conn)

    def revoke(self, raw: str, now: datetime | None = None) -> bool:
        """Revoke a token by its raw string. False if unknown or already terminal."""
        revoked = self.store.revoke_token(self.hash_token(raw), now=now)
        if revoked:
            logger.info("Token revoked")
        return revoked

    def _redeem_failure(self, token_hash: str, scope: TokenScope, conn) -> ServiceError:
        token = self.store.get_token(token_hash, conn=conn)
        label = "Activation" if scope is TokenScope.ACTIVATE else "Reset"
        if token is None:
            return not_found("Token not found")
        if token.revoked_at is not None:
            logger.warning("Redemption attempt on revoked %s token for subject %s", scope.value, token.subject_id)
            return bad_request(f"{label} token has been revoked")
        logger.warning("Redemption attempt on used %s token for subject %s", scope.value, token.subject_id)
        return bad_request(f"{label} token is already used")


def token_ttl(settings, scope: TokenScope) -> int:
    """Configured lifetime for tokens issued by the HTTP flows."""
    return {
        TokenScope.ACCESS: settings.access_token_ttl_seconds,
        TokenScope.ACTIVATE: settings.activation_token_ttl_seconds,
        TokenScope.RESET: settings.reset_token_ttl_seconds,
    }[scope]

"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Every protected route goes through the same pipeline:

  1. bearer_token()       -- extract "Authorization: Bearer <token>".
                             Missing header -> Unauthorized; wrong scheme -> BadRequest.
  2. get_auth_context()   -- the Authentication Gate (auth/gate.py): signature,
                             expiry, Subject lookup, organization populated.
  3. authorize(...)       -- the policy tree (auth/policy.py) evaluated against
                             the context with the request's path parameters.

Only if all three pass does the handler run; it receives the final
AuthContext (including the confirmed tenant, if the policy set one).

The internal service channel is separate: require_internal_token() compares
the S-Token header with INTERNAL_SECRET_TOKEN and never looks at JWTs.

Dependencies are plain `def` so FastAPI runs them (and their database work)
in the threadpool.

Layer rule: auth/dependencies.py may import from fastapi (Request) because
this module is part of the FastAPI dependency injection system. No imports
from api/.
"""

from __future__ import annotations

import hmac
from collections.abc import Callable

from fastapi import Request

from auth.context import AuthContext
from auth.models import TokenScope
from auth.policy import Predicate, every, require_token_scope
from core.config import get_settings
from core.errors import bad_request, unauthorized

INTERNAL_TOKEN_HEADER = "S-Token"


def bearer_token(request: Request) -> str:
    """Return the raw token from the Authorization header."""
    header = request.headers.get("Authorization")
    if not header:
        raise unauthorized("No authorization included in the request")
    scheme, _, token = header.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise bad_request("Malformed authorization header. Expected 'Bearer <token>'")
    return token


def get_auth_context(request: Request) -> AuthContext:
    """Authenticate the request. No authorization decision is made here."""
    gate = request.app.state.gate
    return gate.authenticate(bearer_token(request), path_params=request.path_params)


def authorize(*predicates: Predicate) -> Callable[[Request], AuthContext]:
    """Build a dependency that authenticates and then evaluates the policy.

    Session endpoints only accept ACCESS tokens; one-shot ACTIVATE / RESET
    tokens are checked first (a claims comparison, no storage access).

    Use as a FastAPI dependency:
        @router.get("/organizations/{organization_id}/users")
        def route(ctx: AuthContext = Depends(authorize(ORGANIZATION_ADMIN))): ...
    """
    policy = every(require_token_scope(TokenScope.ACCESS), *predicates)

    def dependency(request: Request) -> AuthContext:
        return policy.evaluate(get_auth_context(request))

    dependency.__name__ = f"authorize_{policy.name}"
    return dependency


# Any authenticated Subject holding an ACCESS token.
require_session = authorize()


def require_internal_token(request: Request) -> None:
    """Guard for /internal routes. An empty INTERNAL_SECRET_TOKEN disables the channel."""
    expected = get_settings().internal_secret_token
    supplied = request.headers.get(INTERNAL_TOKEN_HEADER, "")
    if not expected or not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise unauthorized("Invalid service token")

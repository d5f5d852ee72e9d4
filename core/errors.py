"""
core/errors.py -- The closed error taxonomy shared by every layer.

One exception type, ServiceError, carries an ErrorKind plus a message and an
optional cause. Services and predicates raise it; api/main.py is the single
place that turns it into the wire envelope:

    {"name": "<Kind>Error", "message": "...", "cause": {"name": ..., "message": ...}}

ErrorKind is an Enum rather than a subclass hierarchy so the boundary
translator can look up the HTTP status in one exhaustive table (_STATUS) and a
new kind without a status fails at import time, not at request time.

Layer rule: core/ is the kernel. No imports from api/, auth/, or tenancy/.
"""

from __future__ import annotations

import re
from enum import Enum


class ErrorKind(str, Enum):
    BAD_REQUEST = "BadRequestError"
    UNAUTHORIZED = "UnauthorizedError"
    FORBIDDEN = "ForbiddenError"
    NOT_FOUND = "NotFoundError"
    CONFLICT = "ConflictError"
    IMPLEMENTATION = "ImplementationError"

    @property
    def status_code(self) -> int:
        return _STATUS[self]


_STATUS: dict[ErrorKind, int] = {
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.IMPLEMENTATION: 500,
}

_missing = set(ErrorKind) - set(_STATUS)
if _missing:  # pragma: no cover
    raise RuntimeError(f"ErrorKind without HTTP status: {_missing!r}")


class ServiceError(Exception):
    """A typed, user-presentable failure.

    message must never contain credential material. The boundary translator
    scrubs JWT-shaped substrings as a second line, but callers are expected to
    keep tokens, hashes and salts out of messages in the first place.
    """

    def __init__(self, kind: ErrorKind, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def __repr__(self) -> str:
        return f"ServiceError({self.kind.name}, {self.message!r})"


# Shorthand constructors keep raise sites on one line.


def bad_request(message: str, cause: BaseException | None = None) -> ServiceError:
    return ServiceError(ErrorKind.BAD_REQUEST, message, cause)


def unauthorized(message: str, cause: BaseException | None = None) -> ServiceError:
    return ServiceError(ErrorKind.UNAUTHORIZED, message, cause)


def forbidden(message: str, cause: BaseException | None = None) -> ServiceError:
    return ServiceError(ErrorKind.FORBIDDEN, message, cause)


def not_found(message: str, cause: BaseException | None = None) -> ServiceError:
    return ServiceError(ErrorKind.NOT_FOUND, message, cause)


def conflict(message: str, cause: BaseException | None = None) -> ServiceError:
    return ServiceError(ErrorKind.CONFLICT, message, cause)


def implementation(message: str, cause: BaseException | None = None) -> ServiceError:
    return ServiceError(ErrorKind.IMPLEMENTATION, message, cause)


# ---------------------------------------------------------------------------
# Wire rendering
# ---------------------------------------------------------------------------

# Three base64url segments starting with the encoded '{"' of a JOSE header.
_JWT_RE = re.compile(r"eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")


def scrub(text: str) -> str:
    """Replace anything that looks like a signed token with a placeholder."""
    return _JWT_RE.sub("[redacted]", text)


def error_payload(error: ServiceError) -> dict:
    """Render a ServiceError as the boundary envelope (without status code)."""
    payload: dict = {"name": error.kind.value, "message": scrub(error.message)}
    cause = error.cause
    if cause is not None:
        cause_name = cause.kind.value if isinstance(cause, ServiceError) else type(cause).__name__
        payload["cause"] = {"name": cause_name, "message": scrub(str(cause))}
    return payload

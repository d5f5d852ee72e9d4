"""
auth/credentials.py -- Password credential derivation and verification.

Security design decisions:
  KDF: PBKDF2-HMAC-SHA512, 1000 iterations, 64-byte output, hex encoded.
       These parameters are kept bit-for-bit with the credentials already
       stored by the previous implementation of this service, so existing
       users keep logging in after migration. Raising the iteration count
       requires a rehash-on-login migration and is a deliberate, separate
       change -- not something to tweak here.

  Salt: 16 random bytes from `secrets`, hex encoded. The hex string itself
       (not the decoded bytes) is the PBKDF2 salt input, again for
       compatibility with stored credentials.

  Comparison: hmac.compare_digest, so verification time does not depend on
       how many leading characters of a wrong hash happen to match.

  Activation gate: verify_password() is False for any Subject without
       activated_at, even with the correct password. Invited users must go
       through the one-shot activation flow first.

Layer rule: no imports from api/ or tenancy/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from auth.models import Subject

KDF_ALGORITHM = "sha512"
KDF_ITERATIONS = 1000
KDF_KEY_LENGTH = 64
SALT_BYTES = 16


def new_salt() -> str:
    """Return a fresh random salt (32 hex chars). Unique per call."""
    return secrets.token_hex(SALT_BYTES)


def derive_credential(password: str, salt: str) -> str:
    """Derive the stored hash for (password, salt). Deterministic."""
    return hashlib.pbkdf2_hmac(
        KDF_ALGORITHM,
        password.encode("utf-8"),
        salt.encode("utf-8"),
        KDF_ITERATIONS,
        dklen=KDF_KEY_LENGTH,
    ).hex()


def set_password(subject: Subject, password: str) -> None:
    """Replace the Subject's credential with a new salt and hash.

    Mutates the dataclass only; the caller persists salt / hashed_password.
    The old salt is discarded, so the previous password stops verifying.
    """
    subject.salt = new_salt()
    subject.hashed_password = derive_credential(password, subject.salt)


def verify_password(subject: Subject, password: str) -> bool:
    """Return True if password matches the Subject's stored credential."""
    if not subject.hashed_password or not subject.salt or subject.activated_at is None:
        return False
    candidate = derive_credential(password, subject.salt)
    return hmac.compare_digest(candidate, subject.hashed_password)


# Timing equalization for logins with an unknown email.
# Computed once at import so every failed lookup costs one real derivation,
# the same as a wrong password against an existing account.
_DUMMY_SALT = new_salt()
_DUMMY_HASH = derive_credential("campusgate_timing_dummy", _DUMMY_SALT)


def burn_verification(password: str) -> None:
    """Spend the same work as verify_password() without a Subject."""
    hmac.compare_digest(derive_credential(password, _DUMMY_SALT), _DUMMY_HASH)

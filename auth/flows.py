"""
auth/flows.py -- Login, refresh, invitation, activation, recovery and reset.

AccountFlows is the layer between the HTTP routers and the primitives in
credentials.py / tokens.py / store.py. Routers translate HTTP to arguments
and results to response models; everything with a security-relevant order
lives here.

Activation and reset run their redemption and the Subject update in one
database transaction: if anything after the compare-and-set fails (already
active, Subject vanished) the redemption is rolled back with it and the
token stays ISSUED.

Password derivation happens before the transaction is opened so the write
lock is never held across PBKDF2.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from auth.credentials import burn_verification, set_password, verify_password
from auth.models import Subject, TokenScope
from auth.store import UserStore
from auth.tokens import TokenIssuer, token_ttl
from core.config import Settings
from core.db import utc_now
from core.errors import bad_request, conflict, forbidden, not_found, unauthorized
from tenancy.models import Organization
from tenancy.store import TenancyStore

logger = logging.getLogger("campusgate.auth.flows")


@dataclass
class Session:
    """A Subject together with a freshly issued ACCESS token."""

    subject: Subject
    access_token: str
    organization: Organization | None = None


class AccountFlows:
    def __init__(self, users: UserStore, tenancy: TenancyStore, issuer: TokenIssuer, settings: Settings) -> None:
        self.users = users
        self.tenancy = tenancy
        self.issuer = issuer
        self.settings = settings

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, now: datetime | None = None) -> Session:
        """Verify credentials and issue an ACCESS token.

        Unknown email and wrong password are the same Unauthorized, and both
        cost one key derivation. The organization check runs only after the
        password verified, so it cannot be used to probe accounts.
        """
        now = now or utc_now()
        subject = self.users.get_by_email(email)
        if subject is None:
            burn_verification(password)
            logger.info("Failed login (unknown email)")
            raise unauthorized("Invalid email or password")
        if not verify_password(subject, password):
            logger.info("Failed login for subject %s", subject.id)
            raise unauthorized("Invalid email or password")

        organization = self._organization_of(subject)
        if organization is not None and organization.is_deleted:
            raise forbidden("User belongs to a deleted organization. Please contact support")

        access_token = self._issue_access(subject, now)
        self.users.update_last_login(subject.id, now=now)
        subject.last_login_at = now
        logger.info("Subject %s logged in", subject.id)
        return Session(subject=subject, access_token=access_token, organization=organization)

    def refresh(self, subject: Subject, organization: Organization | None, now: datetime | None = None) -> Session:
        now = now or utc_now()
        if organization is not None and organization.is_deleted:
            raise bad_request("User belongs to a deleted organization. Please contact support")
        return Session(subject=subject, access_token=self._issue_access(subject, now), organization=organization)

    # ------------------------------------------------------------------
    # Invitation
    # ------------------------------------------------------------------

    def invite(self, subject: Subject, now: datetime | None = None) -> tuple[Subject, str]:
        """Create a not-yet-activated Subject and issue its ACTIVATE token.

        Raises Conflict when the email is taken, soft-deleted rows included.
        """
        now = now or utc_now()
        if self.users.email_exists(subject.email):
            raise conflict("User with this email already exists")
        try:
            subject.id = self.users.create_user(subject, now=now)
        except IntegrityError as exc:
            # Lost a race with a concurrent invite for the same email.
            raise conflict("User with this email already exists") from exc
        token = self.issuer.issue(
            subject, TokenScope.ACTIVATE, ttl_seconds=token_ttl(self.settings, TokenScope.ACTIVATE), now=now
        )
        return subject, token

    def hand_over(self, subject: Subject, new_email: str, now: datetime | None = None) -> tuple[Subject, str]:
        """Give an existing account to a new owner.

        The email changes, the credential and activation are cleared, and
        every outstanding one-shot token is revoked before a new ACTIVATE
        token is issued for the new address.
        """
        now = now or utc_now()
        if self.users.email_exists(new_email):
            raise conflict("User with this email already exists")
        try:
            self.users.update_user(
                subject.id,
                now=now,
                email=new_email,
                salt=None,
                hashed_password=None,
                activated_at=None,
            )
        except IntegrityError as exc:
            raise conflict("User with this email already exists") from exc
        self.users.revoke_outstanding(subject.id, now=now)
        updated = self._live_subject(subject.id)
        token = self.issuer.issue(
            updated, TokenScope.ACTIVATE, ttl_seconds=token_ttl(self.settings, TokenScope.ACTIVATE), now=now
        )
        logger.info("Subject %s handed over to a new owner", subject.id)
        return updated, token

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def activate(
        self,
        raw_token: str | None,
        password: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        now: datetime | None = None,
    ) -> Session:
        """Redeem an ACTIVATE token, set the credential if needed, open a session.

        Order: token present -> signature/expiry -> scope -> Subject exists ->
        organization active -> password supplied when none is set ->
        [transaction: compare-and-set redemption -> not yet activated -> write].
        """
        now = now or utc_now()
        if not raw_token:
            raise bad_request("Activation token not provided")
        claims = self.issuer.decode(raw_token, now=now)
        if claims.scope is not TokenScope.ACTIVATE:
            raise unauthorized(f"Invalid JWT Token: Scope is not {TokenScope.ACTIVATE.value}")

        subject = self._live_subject(claims.subject_id)
        self._ensure_organization_active(subject)

        updates: dict = {}
        if first_name:
            updates["first_name"] = first_name
        if last_name:
            updates["last_name"] = last_name
        if not subject.hashed_password:
            if not password:
                raise bad_request("Password is required to activate the user")
            set_password(subject, password)
            updates.update(salt=subject.salt, hashed_password=subject.hashed_password)

        with self.users.transaction() as conn:
            self.issuer.redeem(raw_token, TokenScope.ACTIVATE, now=now, conn=conn)
            if not self.users.activate_user(subject.id, now, conn=conn, **updates):
                raise bad_request("User is already active")

        logger.info("Subject %s activated", subject.id)
        activated = self._live_subject(subject.id)
        return Session(
            subject=activated,
            access_token=self._issue_access(activated, now),
            organization=self._organization_of(activated),
        )

    # ------------------------------------------------------------------
    # Recovery / reset
    # ------------------------------------------------------------------

    def start_recovery(self, email: str, now: datetime | None = None) -> tuple[Subject, str] | None:
        """Issue a RESET token for a live Subject, or None for an unknown email.

        The caller must answer both cases identically.
        """
        subject = self.users.get_by_email(email)
        if subject is None:
            return None
        token = self.issuer.issue(
            subject, TokenScope.RESET, ttl_seconds=token_ttl(self.settings, TokenScope.RESET), now=now
        )
        logger.info("Recovery token issued for subject %s", subject.id)
        return subject, token

    def reset_password(
        self,
        raw_token: str | None,
        email: str,
        password: str,
        now: datetime | None = None,
    ) -> Subject:
        """Redeem a RESET token and replace the credential.

        The body email must equal the Subject's current email exactly. It is
        checked before redemption, so a mismatch leaves both the token and the
        credential untouched.
        """
        now = now or utc_now()
        if not raw_token:
            raise bad_request("Reset token not provided")
        claims = self.issuer.decode(raw_token, now=now)
        if claims.scope is not TokenScope.RESET:
            raise unauthorized(f"Invalid JWT Token: Scope is not {TokenScope.RESET.value}")

        subject = self._live_subject(claims.subject_id)
        self._ensure_organization_active(subject)
        if subject.email != email:
            logger.warning("Reset attempt with mismatched email for subject %s", subject.id)
            raise unauthorized("Invalid JWT Token: Email does not match")

        set_password(subject, password)
        with self.users.transaction() as conn:
            self.issuer.redeem(raw_token, TokenScope.RESET, now=now, conn=conn)
            self.users.update_user(
                subject.id, now=now, conn=conn, salt=subject.salt, hashed_password=subject.hashed_password
            )

        # Any other reset link mailed earlier is now stale.
        self.users.revoke_outstanding(subject.id, scopes=(TokenScope.RESET,), now=now)
        logger.info("Password reset for subject %s", subject.id)
        return subject

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue_access(self, subject: Subject, now: datetime) -> str:
        return self.issuer.issue(
            subject, TokenScope.ACCESS, ttl_seconds=token_ttl(self.settings, TokenScope.ACCESS), now=now
        )

    def _live_subject(self, subject_id: str) -> Subject:
        subject = self.users.get_by_id(subject_id)
        if subject is None:
            raise not_found("User not found")
        return subject

    def _organization_of(self, subject: Subject) -> Organization | None:
        if subject.organization_id is None:
            return None
        return self.tenancy.get_organization(subject.organization_id)

    def _ensure_organization_active(self, subject: Subject) -> None:
        organization = self._organization_of(subject)
        if organization is not None and organization.is_deleted:
            raise forbidden("User belongs to a deleted organization. Please contact support")

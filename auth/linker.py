"""
auth/linker.py -- Reconcile an external OAuth profile with local accounts.

Resolution order for link(profile):
  1. Identity match   -- (provider, external_id) already linked. Refresh the
                         display name; adopt the provider email only when the
                         provider vouches for it.
  2. Email match      -- a live account owns profile.email. Attach the
                         identity, but only if the provider says the email is
                         verified. Anything else is refused: linking on an
                         unverified email hands the account to whoever typed
                         that address into the provider.
  3. Create           -- new account with the identity, default role, no
                         password.

Races:
  Two callbacks for the same new identity can both reach step 3. The database
  unique constraints pick one winner; the loser's IntegrityError restarts the
  resolution, where it now finds the winner's row in step 1 or 2. After
  _MAX_ROUNDS the conflict is reported as IdentityConflict.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    CannotUnlinkLastProvider,
    EmailMismatch,
    IdentityConflict,
    ProviderAlreadyLinked,
    ProviderLinkedElsewhere,
    ProviderNotLinked,
    UserNotFound,
)
from auth.models import OAuthProfile, User
from auth.results import LINK_CREATED, LINK_LINKED, LINK_MATCHED, LinkRefused, LinkResult
from auth.roles import DEFAULT_HIERARCHY, RoleHierarchy
from auth.store import UserStore, normalize_email

logger = logging.getLogger("identity.auth.linker")

_MAX_ROUNDS = 3

REFUSED_EMAIL_NOT_VERIFIED = "email_not_verified"


class OAuthIdentityLinker:
    def __init__(
        self,
        users: UserStore,
        hierarchy: RoleHierarchy = DEFAULT_HIERARCHY,
        default_role: str | None = None,
    ) -> None:
        self.users = users
        self.hierarchy = hierarchy
        self.default_role = default_role or hierarchy.default_role

    def link(self, profile: OAuthProfile) -> LinkResult | LinkRefused:
        """Find, link, or create the local account for profile.

        Raises IdentityConflict when concurrent writers keep winning the race.
        """
        for _ in range(_MAX_ROUNDS):
            try:
                return self._resolve(profile)
            except IntegrityError:
                logger.info(
                    "Uniqueness conflict linking %s identity %s, retrying",
                    profile.provider,
                    profile.external_id,
                )
        logger.warning("Giving up linking %s identity %s", profile.provider, profile.external_id)
        raise IdentityConflict()

    def _resolve(self, profile: OAuthProfile) -> LinkResult | LinkRefused:
        email = normalize_email(profile.email)
        verified = profile.email_verified is True

        # 1. Known identity
        user = self.users.get_by_provider(profile.provider, profile.external_id)
        if user is not None:
            # Deactivated accounts are reported as-is; the caller refuses them.
            if user.is_deleted:
                return LinkResult(user=user, action=LINK_MATCHED)
            self._refresh_profile(user, profile, email, verified)
            return LinkResult(user=self.users.get_by_id(user.id), action=LINK_MATCHED)

        # 2. Known email
        user = self.users.get_by_email(email)
        if user is not None:
            if not verified:
                logger.warning(
                    "Refused to link %s identity onto existing account: email not verified by provider",
                    profile.provider,
                )
                return LinkRefused(reason=REFUSED_EMAIL_NOT_VERIFIED)
            self.users.link_identity(user.id, profile.provider, profile.external_id, mark_verified=True)
            logger.info("Linked %s identity to user_id=%s", profile.provider, user.id)
            return LinkResult(user=self.users.get_by_id(user.id), action=LINK_LINKED)

        # 3. New account
        user_id = self.users.create_user(
            User(
                email=email,
                name=profile.name,
                role=self.default_role,
                hashed_password=None,
                linked_providers={profile.provider: profile.external_id},
                is_verified=verified,
            )
        )
        logger.info("Created user_id=%s from %s identity", user_id, profile.provider)
        return LinkResult(user=self.users.get_by_id(user_id), action=LINK_CREATED)

    def _refresh_profile(self, user: User, profile: OAuthProfile, email: str, verified: bool) -> None:
        if profile.name and profile.name != user.name:
            self.users.update_user(user.id, name=profile.name)
        if verified and email != user.email:
            try:
                self.users.update_user(user.id, email=email)
            except IntegrityError:
                # Another live account owns the new address; keep the old one.
                logger.warning("Skipped email update for user_id=%s: address already in use", user.id)

    # ------------------------------------------------------------------
    # Self-service linking
    # ------------------------------------------------------------------

    def link_to_account(self, user_id: int, profile: OAuthProfile) -> User:
        """Attach profile's identity to a signed-in user's account."""
        user = self.users.get_by_id(user_id)
        if user is None or user.is_deleted:
            raise UserNotFound()
        if profile.provider in user.linked_providers:
            raise ProviderAlreadyLinked()
        owner = self.users.get_by_provider(profile.provider, profile.external_id)
        if owner is not None and owner.id != user_id:
            raise ProviderLinkedElsewhere()
        if normalize_email(profile.email) != user.email:
            raise EmailMismatch()
        try:
            self.users.link_identity(user_id, profile.provider, profile.external_id)
        except IntegrityError:
            raise ProviderLinkedElsewhere() from None
        logger.info("User user_id=%s linked %s", user_id, profile.provider)
        return self.users.get_by_id(user_id)

    def unlink(self, user_id: int, provider: str) -> User:
        """Detach provider from the account, keeping at least one sign-in method."""
        user = self.users.get_by_id(user_id)
        if user is None or user.is_deleted:
            raise UserNotFound()
        if provider not in user.linked_providers:
            raise ProviderNotLinked()
        if user.hashed_password is None and len(user.linked_providers) == 1:
            raise CannotUnlinkLastProvider()
        self.users.unlink_identity(user_id, provider)
        logger.info("User user_id=%s unlinked %s", user_id, provider)
        return self.users.get_by_id(user_id)

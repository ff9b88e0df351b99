"""
Reconciliation of a single directory account with its local identity.

For each candidate the reconciler fetches the directory attributes, builds the
local profile, optionally checks the account restrictions, creates or updates
the local identity and finally synchronizes the enabled/disabled status.
"""

import logging
from typing import Callable, List, NamedTuple, Optional, Tuple

from ldap3.core.exceptions import LDAPException

from identity_sync.account_control import (
    account_control_value,
    describe,
    is_account_disabled,
    is_normal_account,
    is_smart_card_required,
)
from identity_sync.ldap_client import LDAPQueryError
from identity_sync.outcome import RunOutcome, SyncStatus
from identity_sync.stores.base import Credentials, IdentityStoreError, Profile

logger = logging.getLogger(__name__)


class RestrictionResult(NamedTuple):
    ok: bool
    reason: Optional[str] = None


def _in_directory(profile: Profile, flags: int) -> Optional[str]:
    if profile.attributes.is_empty():
        return f'User "{profile.user_login}" no longer found in Active Directory.'
    return None


def _normal_account(profile: Profile, flags: int) -> Optional[str]:
    if not is_normal_account(flags):
        return (f'User "{profile.user_login}" has no normal Active Directory user account. '
                f'Only user accounts can be synchronized.')
    return None


def _smart_card(profile: Profile, flags: int) -> Optional[str]:
    if is_smart_card_required(flags):
        return f'The account of user "{profile.user_login}" requires a smart card for login.'
    return None


# Evaluated in order, the first failing check wins
RESTRICTION_CHECKS: List[Tuple[str, Callable[[Profile, int], Optional[str]]]] = [
    ('in_directory', _in_directory),
    ('normal_account', _normal_account),
    ('smart_card', _smart_card),
]


def check_account_restrictions(profile: Profile) -> RestrictionResult:
    """
    Check whether a previously synchronized account may stay enabled.

    Accounts without a local identity always pass since there is nothing to
    disable yet.
    """
    if not profile.local_id:
        return RestrictionResult(True)

    flags = account_control_value(profile.attributes.raw)
    for name, check in RESTRICTION_CHECKS:
        reason = check(profile, flags)
        if reason:
            logger.debug(f"Restriction check '{name}' failed for {profile.user_login}")
            return RestrictionResult(False, reason)

    return RestrictionResult(True)


class UserReconciler:
    """Brings one local identity in line with its directory account."""

    def __init__(self, directory, store, disable_users: bool = False, notify_users: bool = True):
        """
        Args:
            directory: LDAPClient used to fetch account attributes
            store: IdentityStoreBase implementation receiving the writes
            disable_users: Disable local identities of restricted or disabled accounts
            notify_users: Ask the store to notify users on create/update
        """
        self.directory = directory
        self.store = store
        self.disable_users = disable_users
        self.notify_users = notify_users

    def reconcile_one(self, username: str, object_guid: str, outcome: RunOutcome) -> SyncStatus:
        """
        Synchronize a single user.

        Never raises: failures are logged and reported as SyncStatus.FAILED.
        """
        try:
            return self._reconcile(username, object_guid, outcome)
        except (LDAPQueryError, LDAPException) as e:
            logger.error(f"Directory lookup for {username} failed: {e}")
        except IdentityStoreError as e:
            logger.error(f"Identity store error for {username}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error synchronizing {username}: {e}", exc_info=True)
        return SyncStatus.FAILED

    def _reconcile(self, username: str, object_guid: str, outcome: RunOutcome) -> SyncStatus:
        with outcome.timed('directory'):
            attributes = self.directory.find_attributes(username, object_guid)

        profile = self.store.build_profile(Credentials(username, object_guid=object_guid), attributes)

        if self.disable_users:
            restriction = check_account_restrictions(profile)
            if not restriction.ok:
                logger.warning(f"Disable user '{username}': {restriction.reason}")
                self.store.disable(profile.local_id, restriction.reason)
                return SyncStatus.FAILED

        with outcome.timed('store'):
            status = self._create_or_update(profile)

        if status == SyncStatus.FAILED:
            return status

        try:
            self.synchronize_account_status(profile)
        except IdentityStoreError as e:
            logger.error(f"Could not synchronize account status of {username}: {e}")

        return status

    def _create_or_update(self, profile: Profile) -> SyncStatus:
        try:
            if not profile.local_id:
                identity = self.store.create(profile, self.notify_users)
                profile.local_id = identity.local_id
                logger.info(f"Created user {profile.user_login}")
                return SyncStatus.CREATED

            self.store.update(profile, self.notify_users)
            logger.debug(f"Updated user {profile.user_login}")
            return SyncStatus.UPDATED
        except IdentityStoreError as e:
            logger.error(f"Could not save user {profile.user_login}: {e}")
            return SyncStatus.FAILED

    def synchronize_account_status(self, profile: Profile) -> bool:
        """
        Mirror the directory's disabled bit onto the local identity.

        An account enabled in the directory is always enabled locally. A
        disabled account is only disabled locally when disable_users is set.

        Returns:
            True if the local identity is enabled afterwards
        """
        flags = account_control_value(profile.attributes.raw)
        logger.debug(f"userAccountControl of {profile.user_login}: {flags} {describe(flags)}")

        if not is_account_disabled(flags):
            logger.info(f"Enabling user '{profile.user_login}'.")
            self.store.enable(profile.local_id)
            return True

        logger.info(f"The user '{profile.user_login}' is disabled in Active Directory.")

        if not self.disable_users:
            return False

        logger.warning(f"Disabling user '{profile.user_login}'.")
        self.store.disable(profile.local_id, f'User "{profile.user_login}" is disabled in Active Directory.')
        return False

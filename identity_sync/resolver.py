"""
Resolution of the set of users to synchronize.

The candidate set combines the members of the configured security groups with
the local accounts that were created from the directory earlier. Local accounts
are included so that users who left the groups are still visited (and can be
disabled).
"""

import logging
from typing import Dict, Optional

from identity_sync.attributes import OBJECT_GUID_ATTRIBUTE
from identity_sync.outcome import RunOutcome

logger = logging.getLogger(__name__)


class UserSetResolver:
    """Builds the objectGUID -> username mapping of one synchronization run."""

    def __init__(self, directory, store, outcome: Optional[RunOutcome] = None):
        """
        Args:
            directory: LDAPClient (or anything with find_group_members/find_attributes)
            store: IdentityStoreBase implementation
            outcome: Optional run outcome receiving directory timings
        """
        self.directory = directory
        self.store = store
        self.outcome = outcome

    def resolve_candidates(self, groups: str) -> Dict[str, str]:
        """
        Return the users to synchronize, keyed by lower-cased objectGUID.

        Directory failures are not caught here.
        """
        directory_users = self._find_directory_users(groups)
        local_users = {guid.lower(): username
                       for guid, username in self.store.find_directory_linked_usernames().items()}

        logger.debug(f"{len(directory_users)} users from security groups, "
                     f"{len(local_users)} directory-linked local users")

        for guid, username in directory_users.items():
            known = local_users.get(guid)
            if known is not None and known.lower() != username.lower():
                logger.warning(f"Local account {known} is linked to {guid}, "
                               f"which the directory now reports as {username}")

        candidates = dict(local_users)
        candidates.update(directory_users)
        return candidates

    def _find_directory_users(self, groups: str) -> Dict[str, str]:
        if self.outcome is not None:
            with self.outcome.timed('directory'):
                return self._convert_directory_users(groups)
        return self._convert_directory_users(groups)

    def _convert_directory_users(self, groups: str) -> Dict[str, str]:
        result = {}
        for username in self.directory.find_group_members(groups):
            attributes = self.directory.find_attributes(username)
            guid = attributes.get_filtered_value(OBJECT_GUID_ATTRIBUTE).lower()
            if not guid:
                logger.warning(f"Skipping {username}: no objectGUID in directory")
                continue
            result[guid] = username
        return result

"""
Base identity store interface and the types exchanged with it.

An identity store holds the local accounts that are kept in agreement with the
directory. Store modules must subclass IdentityStoreBase; the orchestrator
loads them by module name from this package.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from identity_sync.attributes import AttributeBag, OBJECT_GUID_ATTRIBUTE

logger = logging.getLogger(__name__)


DEFAULT_ATTRIBUTE_MAPPING = {
    'mail': 'email',
    'givenname': 'first_name',
    'sn': 'last_name',
    'displayname': 'display_name',
}


class IdentityStoreError(Exception):
    """Base exception for identity store errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class IdentityStoreAuthenticationError(IdentityStoreError):
    """Raised when authentication to the identity store fails."""
    pass


@dataclass
class Credentials:
    sam_account_name: str
    user_principal_name: Optional[str] = None
    # objectGUID the account was resolved with, kept for accounts gone from the directory
    object_guid: Optional[str] = None


@dataclass
class Profile:
    """Canonical local profile built from the directory attributes of one account."""
    credentials: Credentials
    attributes: AttributeBag
    object_guid: str = ''
    local_id: int = 0
    fields: Dict[str, str] = field(default_factory=dict)

    @property
    def user_login(self) -> str:
        return self.credentials.sam_account_name

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            'username': self.user_login,
            'user_principal_name': self.credentials.user_principal_name or '',
            'object_guid': self.object_guid,
        }
        payload.update(self.fields)
        return payload


@dataclass
class LocalIdentity:
    local_id: int
    user_login: str
    enabled: bool = True
    disabled_reason: Optional[str] = None


class IdentityStoreBase(ABC):
    """
    Abstract base class for identity stores.

    Subclasses implement lookup and the write operations; profile construction
    from directory attributes is shared.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize identity store.

        Args:
            config: Store configuration dictionary
        """
        self.config = config
        self.name = config.get('name', type(self).__name__)

        mapping = config.get('attribute_mapping') or DEFAULT_ATTRIBUTE_MAPPING
        self.attribute_mapping = {k.lower(): v for k, v in mapping.items()}

    def authenticate(self) -> bool:
        """Perform any authentication the store needs before use."""
        return True

    def close_connection(self):
        """Release resources held by the store."""
        pass

    def build_profile(self, credentials: Credentials, attributes: AttributeBag) -> Profile:
        """
        Build the local profile of an account from its directory attributes.

        Sets the user principal name on the credentials and looks up the id of
        an existing local identity.
        """
        upn = attributes.get_filtered_value('userprincipalname')
        if upn:
            credentials.user_principal_name = upn

        object_guid = attributes.get_filtered_value(OBJECT_GUID_ATTRIBUTE) or (credentials.object_guid or '').lower()

        fields = {}
        for ldap_attr, profile_field in self.attribute_mapping.items():
            value = attributes.get_filtered_value(ldap_attr)
            if value:
                fields[profile_field] = value

        local_id = self.find_local_id(object_guid, credentials.sam_account_name)

        return Profile(
            credentials=credentials,
            attributes=attributes,
            object_guid=object_guid,
            local_id=local_id or 0,
            fields=fields,
        )

    @abstractmethod
    def find_directory_linked_usernames(self) -> Dict[str, str]:
        """
        Return the local accounts that were created from the directory.

        Returns:
            Mapping of objectGUID to username
        """
        pass

    @abstractmethod
    def find_local_id(self, object_guid: str, username: str) -> int:
        """Return the local id for the account, 0 if it does not exist yet."""
        pass

    @abstractmethod
    def create(self, profile: Profile, notify: bool = True) -> LocalIdentity:
        """
        Create a local identity.

        Raises:
            IdentityStoreError: If the store rejects the identity
        """
        pass

    @abstractmethod
    def update(self, profile: Profile, notify: bool = True) -> LocalIdentity:
        """
        Update an existing local identity.

        Raises:
            IdentityStoreError: If the store rejects the update
        """
        pass

    @abstractmethod
    def disable(self, local_id: int, reason: str):
        pass

    @abstractmethod
    def enable(self, local_id: int):
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()

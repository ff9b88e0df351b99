"""
LDAP client for connecting to and querying Active Directory.

This module provides the directory side of the synchronization: binding as the
sync service account, expanding group membership and fetching the attributes of
individual accounts.
"""

import logging
import re
import ssl
import uuid
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError, LDAPStartTLSError
from ldap3.utils.conv import escape_filter_chars, escape_bytes

from identity_sync.attributes import AttributeBag, normalize_guid
from identity_sync.config import ConfigLoader
from identity_sync.retry import MaxRetriesExceeded, create_retry_callback, is_retryable_error, retry_call

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
# LDAP_MATCHING_RULE_IN_CHAIN, resolves nested group membership
IN_CHAIN_OID = '1.2.840.113556.1.4.1941'

RESULT_SUCCESS = 0


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


def split_group_names(groups: Optional[str]) -> List[str]:
    """Split a ';' or ',' separated group list into trimmed, non-empty names."""
    if not groups:
        return []
    return [name.strip() for name in re.split(r'[;,]', groups) if name.strip()]


class LDAPClient:
    """
    LDAP client for Active Directory.

    Binds with the credentials passed to connect() rather than credentials from
    the configuration, so the same client can be used for the sync service
    account and for health checks.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.base_dn = config.get('base_dn', '')
        self.domain_suffix = config.get('domain_suffix', '')
        defaults = ConfigLoader.DEFAULTS['ldap']
        self.user_filter = config.get('user_filter', defaults['user_filter'])
        self.attributes = list(config.get('attributes', defaults['attributes']))

        # SSL/TLS configuration
        use_ssl = config.get('use_ssl')
        self.use_ssl = self.server_url.lower().startswith('ldaps://') if use_ssl is None else use_ssl
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def qualify_username(self, username: str) -> str:
        """Append the domain suffix unless the name is already qualified."""
        if not self.domain_suffix or any(c in username for c in ('@', '\\', '=')):
            return username
        suffix = self.domain_suffix if self.domain_suffix.startswith('@') else f"@{self.domain_suffix}"
        return f"{username}{suffix}"

    def connect(self, username: str, password: str, max_retries: Optional[int] = None,
                retry_wait: Optional[int] = None) -> bool:
        """
        Bind to the directory as the given account, retrying transient failures.

        Args:
            username: Account name (sAMAccountName, UPN or DN)
            password: Account password
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait or self.retry_wait
        bind_user = self.qualify_username(username)

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        # Only transient socket errors are retried; a rejected bind fails at once
        try:
            retry_call(
                self._bind,
                args=(bind_user, password),
                max_attempts=max_retries,
                delay=retry_wait,
                exceptions=(LDAPException,),
                should_retry=is_retryable_error,
                on_retry=create_retry_callback(f"LDAP bind to {self.server_url}")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}")
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to connect to LDAP: {e}")

        self._connected = True
        logger.info(f"Connected to {self.server_url} as {bind_user}")
        return True

    def _bind(self, bind_user: str, password: str):
        """Open a connection and bind once. ldap3 raises on socket failures."""
        self.connection = Connection(
            self.server,
            user=bind_user,
            password=password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )

        try:
            self.connection.open()

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPStartTLSError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed for {bind_user}: {self.connection.result.get('description')}")
        except LDAPException:
            self._drop_connection()
            raise

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while dropping connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def find_group_members(self, groups: str) -> List[str]:
        """
        Return the sAMAccountName of every member of the given groups.

        Args:
            groups: Group names separated by ';' or ','

        Returns:
            Usernames in directory order, without duplicates

        Raises:
            LDAPQueryError: If a search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        usernames = []
        seen = set()

        for group_name in split_group_names(groups):
            group_dn = self._find_group_dn(group_name)
            if not group_dn:
                logger.warning(f"Security group not found: {group_name}")
                continue

            search_filter = f"(&{self.user_filter}(memberOf:{IN_CHAIN_OID}:={escape_filter_chars(group_dn)}))"
            entries = self._paged_search(search_filter, ['sAMAccountName'])

            group_count = 0
            for entry in entries:
                values = entry.entry_attributes_as_dict.get('sAMAccountName') or []
                if not values:
                    logger.warning(f"Group member has no sAMAccountName: {entry.entry_dn}")
                    continue
                group_count += 1
                username = str(values[0])
                if username.lower() not in seen:
                    seen.add(username.lower())
                    usernames.append(username)

            logger.info(f"Group {group_name}: {group_count} members")

        logger.info(f"Retrieved {len(usernames)} distinct members of groups '{groups}'")
        return usernames

    def _find_group_dn(self, group_name: str) -> Optional[str]:
        name = escape_filter_chars(group_name)
        search_filter = f"(&(objectClass=group)(|(cn={name})(sAMAccountName={name})))"
        entries = self._search(self._get_domain_base(), search_filter, SUBTREE, ['cn'])
        if not entries:
            return None
        if len(entries) > 1:
            logger.warning(f"Group name {group_name} is ambiguous, using {entries[0].entry_dn}")
        return entries[0].entry_dn

    def find_attributes(self, username: str, object_guid: Optional[str] = None) -> AttributeBag:
        """
        Fetch the attributes of a single account.

        With an objectGUID the account is looked up by GUID first. The fallback
        lookup by sAMAccountName only accepts an account carrying the same GUID,
        so a reused username never resolves to a different account.

        Args:
            username: sAMAccountName of the account
            object_guid: Optional objectGUID to disambiguate the lookup

        Returns:
            AttributeBag, empty if the account does not exist

        Raises:
            LDAPQueryError: If the search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        entry = None
        if object_guid:
            guid_filter = self._guid_filter(object_guid)
            if guid_filter:
                entry = self._search_single(guid_filter)

        if entry is None:
            entry = self._search_single(
                f"(&{self.user_filter}(sAMAccountName={escape_filter_chars(username)}))"
            )
            if entry is not None and object_guid:
                found = AttributeBag(entry.entry_attributes_as_dict).get_filtered_value('objectGUID')
                if found and found != normalize_guid(object_guid):
                    logger.warning(f"Username {username} now belongs to a different account ({found})")
                    entry = None

        if entry is None:
            logger.debug(f"No directory account found for {username}")
            return AttributeBag()

        return AttributeBag(entry.entry_attributes_as_dict)

    def _guid_filter(self, object_guid: str) -> Optional[str]:
        try:
            guid_bytes = uuid.UUID(normalize_guid(object_guid)).bytes_le
        except ValueError:
            logger.debug(f"Not a valid objectGUID: {object_guid}")
            return None
        return f"(objectGUID={escape_bytes(guid_bytes)})"

    def _search_single(self, search_filter: str):
        entries = self._search(self._get_domain_base(), search_filter, SUBTREE, self.attributes)
        return entries[0] if entries else None

    def _search(self, search_base: str, search_filter: str, scope, attributes: List[str]) -> list:
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")
        try:
            success = self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes
            )
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP query failed: {e}")

        # ldap3 reports an empty result as an unsuccessful search
        if not success and self.connection.result.get('result') != RESULT_SUCCESS:
            raise LDAPQueryError(f"Search failed: {self.connection.result}")
        return list(self.connection.entries)

    def _paged_search(self, search_filter: str, attributes: List[str]) -> list:
        """Run a subtree search using the simple paged results control."""
        search_base = self._get_domain_base()
        entries = []
        cookie = None
        page_count = 0

        try:
            while True:
                success = self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )

                if not success and self.connection.result.get('result') != RESULT_SUCCESS:
                    raise LDAPQueryError(f"Search failed: {self.connection.result}")

                page_count += 1
                entries.extend(self.connection.entries)
                logger.debug(f"Page {page_count}: Retrieved {len(self.connection.entries)} entries")

                controls = self.connection.result.get('controls') or {}
                cookie = controls.get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
                if not cookie:
                    break
        except LDAPException as e:
            raise LDAPQueryError(f"Paginated search failed: {e}")

        return entries

    def _get_domain_base(self) -> str:
        """Return the configured base DN or the server's default naming context."""
        if self.base_dn:
            return self.base_dn

        if self.server and self.server.info and self.server.info.other.get('defaultNamingContext'):
            return self.server.info.other['defaultNamingContext'][0]

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine domain base DN")

    def get_server_info(self) -> Dict[str, Any]:
        """
        Get LDAP server information.

        Returns:
            Dictionary with server information
        """
        if not self.server or not self.server.info:
            return {}

        info = self.server.info
        return {
            'naming_contexts': getattr(info, 'naming_contexts', []),
            'vendor_name': getattr(info, 'vendor_name', 'Unknown'),
            'vendor_version': getattr(info, 'vendor_version', 'Unknown')
        }

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

"""
Identity store backed by a JSON REST API.

The API is expected to expose the local user accounts under ``/users``:

    GET  /users?directory_linked=true          list directory-linked accounts
    GET  /users?object_guid=<guid>&username=<u> look up one account
    POST /users                                create an account
    PUT  /users/<id>                           update an account
    POST /users/<id>/disable                   disable with a reason
    POST /users/<id>/enable                    enable
"""

import json
import ssl
import base64
import logging
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from identity_sync.retry import retry_with_config, MaxRetriesExceeded
from identity_sync.stores.base import (
    IdentityStoreBase,
    IdentityStoreError,
    IdentityStoreAuthenticationError,
    LocalIdentity,
    Profile,
)

logger = logging.getLogger(__name__)


class RestIdentityStore(IdentityStoreBase):
    """
    REST identity store client.

    Supports Basic and Bearer authentication and HTTPS with an optional CA
    bundle and client certificate.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize REST store client.

        Args:
            config: Store configuration dictionary
        """
        super().__init__(config)
        self.base_url = config['base_url']
        self.auth_config = config.get('auth') or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)
        self.error_config = config.get('error_handling', {})

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_cert_file = self.config.get('ca_cert_file')
        cert_file = self.config.get('cert_file')
        key_file = self.config.get('key_file')
        try:
            if ca_cert_file:
                self.ssl_context.load_verify_locations(cafile=ca_cert_file)
                logger.info(f"Loaded CA certificates: {ca_cert_file}")
            if cert_file:
                self.ssl_context.load_cert_chain(cert_file, keyfile=key_file)
                logger.info(f"Loaded client certificate: {cert_file}")
        except (OSError, ssl.SSLError) as e:
            raise IdentityStoreError(f"Failed to load certificates for {self.name}: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
                logger.debug(f"Configured Basic authentication for {self.name}")
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.name}")

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
                logger.debug(f"Configured Bearer token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def authenticate(self) -> bool:
        """
        Verify that the store accepts our credentials.

        Returns:
            True if the store answered an authenticated request
        """
        auth_method = self.auth_config.get('method', '').lower()
        if auth_method and auth_method not in ('basic', 'token', 'bearer'):
            return False

        try:
            self.request('GET', '/users', query={'limit': 1})
            return True
        except IdentityStoreError as e:
            logger.error(f"Authentication check against {self.name} failed: {e}")
            return False

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                query: Optional[Dict[str, Any]] = None, retry: bool = True) -> Dict[str, Any]:
        """
        Make an HTTP request, retrying transient failures.

        Args:
            method: HTTP method
            path: Endpoint path relative to base_url
            body: JSON request body
            query: Query string parameters
            retry: Retry transient failures; off for requests that are not
                safe to repeat

        Returns:
            Parsed JSON response

        Raises:
            IdentityStoreError: If the request fails
        """
        if not retry:
            return self._request_once(method, path, body, query)

        try:
            return retry_with_config(
                lambda: self._request_once(method, path, body, query),
                self.error_config,
                f"{self.name} {method} {path}",
                exceptions=(IdentityStoreError,)
            )
        except MaxRetriesExceeded as e:
            raise IdentityStoreError(str(e), getattr(e.last_exception, 'status_code', None))

    def _request_once(self, method: str, path: str, body: Optional[Dict],
                      query: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        full_path = f"{self.base_path}/{path.lstrip('/')}"
        if query:
            full_path += '?' + urlencode(query)

        headers = dict(self.auth_headers)
        headers['Accept'] = 'application/json'
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
            logger.debug(f"Response status: {response.status} {response.reason}")
        except (ConnectionError, OSError, HTTPException) as e:
            self.close_connection()
            raise IdentityStoreError(f"Connection error to {self.name}: {e}")

        if response.status == 401:
            raise IdentityStoreAuthenticationError(f"Authentication failed for {self.name}", 401)
        if response.status >= 400:
            raise IdentityStoreError(f"HTTP {response.status}: {response.reason} {response_data[:200]}",
                                     response.status)

        try:
            return json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise IdentityStoreError(f"Invalid JSON response from {self.name}: {e}")

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    def find_directory_linked_usernames(self) -> Dict[str, str]:
        result = {}
        page = 1

        while True:
            response = self.request('GET', '/users', query={'directory_linked': 'true', 'page': page})
            for user in response.get('users', []):
                guid = user.get('object_guid')
                username = user.get('username')
                if not guid or not username:
                    logger.debug(f"Skipping local account without directory link: {user.get('id')}")
                    continue
                result[guid.lower()] = username

            if not response.get('next_page'):
                break
            page = response['next_page']

        logger.info(f"{len(result)} directory-linked accounts found in {self.name}")
        return result

    def find_local_id(self, object_guid: str, username: str) -> int:
        query = {'username': username}
        if object_guid:
            query['object_guid'] = object_guid

        users = self.request('GET', '/users', query=query).get('users', [])
        if not users:
            return 0

        # An account linked by GUID wins over one that only shares the username
        for user in users:
            if object_guid and (user.get('object_guid') or '').lower() == object_guid.lower():
                return int(user['id'])
        return int(users[0]['id'])

    def _to_identity(self, data: Dict[str, Any], profile: Profile) -> LocalIdentity:
        if not data.get('id'):
            raise IdentityStoreError(f"{self.name} returned no id for {profile.user_login}")
        return LocalIdentity(
            local_id=int(data['id']),
            user_login=data.get('username', profile.user_login),
            enabled=data.get('enabled', True),
            disabled_reason=data.get('disabled_reason'),
        )

    def create(self, profile: Profile, notify: bool = True) -> LocalIdentity:
        body = profile.to_payload()
        body['notify'] = notify
        # A repeated POST could create a second identity for the same account
        identity = self._to_identity(self.request('POST', '/users', body=body, retry=False), profile)
        profile.local_id = identity.local_id
        logger.info(f"Created local identity {identity.local_id} for {profile.user_login}")
        return identity

    def update(self, profile: Profile, notify: bool = True) -> LocalIdentity:
        body = profile.to_payload()
        body['notify'] = notify
        identity = self._to_identity(self.request('PUT', f'/users/{profile.local_id}', body=body), profile)
        logger.debug(f"Updated local identity {identity.local_id} for {profile.user_login}")
        return identity

    def disable(self, local_id: int, reason: str):
        self.request('POST', f'/users/{local_id}/disable', body={'reason': reason})

    def enable(self, local_id: int):
        self.request('POST', f'/users/{local_id}/enable')

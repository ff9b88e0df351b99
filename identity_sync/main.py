"""
Main orchestrator for Directory Identity Sync.

This module drives one synchronization run: it checks that the run may start,
resolves the users to synchronize, reconciles each of them with the local
identity store and reports the outcome.
"""

import sys
import time
import logging
import importlib
from datetime import datetime
from typing import Dict, Any, Optional

from identity_sync.config import load_config, ConfigurationError
from identity_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from identity_sync.logging_setup import setup_logging, log_level_override
from identity_sync.notifications import (
    format_runtime,
    send_failure_notification,
    send_ldap_connection_failure,
    send_success_summary
)
from identity_sync.outcome import RunOutcome
from identity_sync.reconciler import UserReconciler
from identity_sync.resolver import UserSetResolver
from identity_sync.stores.base import IdentityStoreBase, IdentityStoreError

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class EmptyResultError(SyncError):
    """Raised when no users to synchronize were found."""
    pass


class SyncOrchestrator:
    """
    Orchestrator for directory to identity store synchronization.

    The directory client and the identity store are created from the
    configuration unless they are passed in.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, config_path: Optional[str] = None,
                 directory=None, store: Optional[IdentityStoreBase] = None):
        """
        Initialize sync orchestrator.

        Args:
            config: Already loaded configuration; loaded from config_path if None
            config_path: Path to configuration file
            directory: Optional LDAPClient to use instead of creating one
            store: Optional identity store to use instead of loading the configured module
        """
        self.config = config
        self.config_path = config_path
        self.ldap_client = directory
        self.store = store
        self.outcome = None

    def run(self) -> bool:
        """
        Run a complete synchronization.

        Returns:
            True if the run completed (individual users may still have failed),
            False if it was aborted
        """
        try:
            if self.config is None:
                self._load_configuration()
                self._setup_logging()

            self.outcome = RunOutcome()

            if not self._prepare_for_sync():
                return False

            sync_config = self.config.get('sync', {})
            bulk_level = self.config.get('logging', {}).get('bulk_level', 'INFO')

            with log_level_override(bulk_level):
                start = time.monotonic()
                logger.debug("START: resolving synchronizable users")
                candidates = self._find_synchronizable_users()
                logger.debug(f"END: resolving synchronizable users: {time.monotonic() - start:.2f} seconds")

                if not isinstance(candidates, dict) or not candidates:
                    raise EmptyResultError("No possible users for sync were found.")

                self._log_number_of_users(candidates)
                self._synchronize_users(candidates, sync_config)

            self.outcome.finish()
            self._log_sync_summary()
            self._send_success_notification()
            return True

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            self._send_failure_notification("Configuration Error", str(e))
            return False
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._send_ldap_connection_failure(str(e))
            return False
        except LDAPQueryError as e:
            logger.error(f"LDAP query failed while resolving users: {e}")
            self._send_failure_notification("Directory Query Failed", str(e))
            return False
        except EmptyResultError as e:
            logger.error(str(e))
            self._send_failure_notification("No Users Found", str(e))
            return False
        except (SyncError, IdentityStoreError) as e:
            logger.error(f"Sync aborted: {e}")
            self._send_failure_notification("Sync Aborted", str(e))
            return False
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return False
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _prepare_for_sync(self) -> bool:
        """
        Check that a run may start: sync enabled, service account configured,
        identity store available and the directory bind successful.

        Returns:
            False if sync is disabled

        Raises:
            ConfigurationError: If the service account is not configured
            SyncError: If the identity store cannot be used
            LDAPConnectionError: If the directory bind fails
        """
        sync_config = self.config.get('sync', {})
        if not sync_config.get('enabled', False):
            logger.info("Sync to the identity store is disabled.")
            return False

        logger.info("Start of sync to the identity store")

        service_account = sync_config.get('service_account') or {}
        username = service_account.get('username')
        password = service_account.get('password')
        if not username or not password:
            raise ConfigurationError("Sync service account username or password not set.")

        if self.store is None:
            self.store = self._load_store_module(self.config.get('store', {}))
        if not self.store.authenticate():
            raise SyncError(f"Authentication failed for identity store {self.store.name}")

        self._connect_ldap(username, password)
        return True

    def _connect_ldap(self, username: str, password: str):
        """Bind to the directory as the sync service account."""
        error_config = self.config.get('error_handling', {})

        if self.ldap_client is None:
            self.ldap_client = LDAPClient(self.config['ldap'])

        try:
            self.ldap_client.connect(
                username,
                password,
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _load_store_module(self, store_config: Dict[str, Any]) -> IdentityStoreBase:
        """Dynamically load the identity store module and create the store."""
        module_name = store_config.get('module', 'rest')
        full_module_name = f"identity_sync.stores.{module_name}"

        try:
            store_module = importlib.import_module(full_module_name)
        except ImportError as e:
            raise SyncError(f"Failed to import identity store module {module_name}: {e}")

        store_class = None
        for attr_name in dir(store_module):
            attr = getattr(store_module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, IdentityStoreBase) and
                    attr is not IdentityStoreBase and
                    attr.__module__ == store_module.__name__):
                store_class = attr
                break

        if not store_class:
            raise SyncError(f"No IdentityStoreBase subclass found in module {module_name}")

        try:
            return store_class(store_config)
        except (KeyError, ValueError, IdentityStoreError) as e:
            raise SyncError(f"Failed to initialize identity store {module_name}: {e}")

    def _find_synchronizable_users(self) -> Dict[str, str]:
        groups = self.config.get('sync', {}).get('security_groups', '') or ''
        resolver = UserSetResolver(self.ldap_client, self.store, self.outcome)
        return resolver.resolve_candidates(groups.strip())

    def _log_number_of_users(self, candidates: Dict[str, str]):
        logger.info(f"Number of users to import/update: {len(candidates)} "
                    f"({self.outcome.elapsed():.2f} seconds)")

    def _synchronize_users(self, candidates: Dict[str, str], sync_config: Dict[str, Any]):
        reconciler = UserReconciler(
            self.ldap_client,
            self.store,
            disable_users=sync_config.get('disable_users', False),
            notify_users=sync_config.get('notify_users', True)
        )

        for guid, username in candidates.items():
            status = reconciler.reconcile_one(username, guid, self.outcome)
            self.outcome.record(status)

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        outcome = self.outcome

        logger.info(f"{outcome.added} users have been added to the identity store.")
        logger.info(f"{outcome.updated} users from the identity store have been updated.")
        logger.info(f"{outcome.failed} users could not be synchronized.")
        logger.info(f"LDAP searches took: {outcome.directory_seconds:.2f} seconds")
        logger.info(f"Identity store actions took: {outcome.store_seconds:.2f} seconds")
        logger.info(f"Duration for sync: {format_runtime(outcome.elapsed_seconds)}")
        logger.info("End of sync to the identity store")

    def _send_failure_notification(self, title: str, error_message: str):
        """Send email notification for failures."""
        try:
            notifications_config = (self.config or {}).get('notifications', {})
            send_failure_notification(title, error_message, notifications_config)
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def _send_ldap_connection_failure(self, error_message: str):
        """Send email notification for LDAP connection failure."""
        try:
            notifications_config = self.config.get('notifications', {})
            retry_count = self.config.get('error_handling', {}).get('max_retries', 3)
            send_ldap_connection_failure(error_message, notifications_config, retry_count)
        except Exception as e:
            logger.error(f"Failed to send LDAP failure notification: {e}")

    def _send_success_notification(self):
        """Send email notification for a completed run."""
        try:
            notifications_config = self.config.get('notifications', {})
            send_success_summary(self.outcome.as_dict(), notifications_config)
        except Exception as e:
            logger.error(f"Failed to send success notification: {e}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            if self.config is None:
                self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        service_account = self.config.get('sync', {}).get('service_account') or {}
        try:
            test_client = LDAPClient(self.config['ldap'])
            test_client.connect(service_account.get('username', ''), service_account.get('password', ''),
                                max_retries=1, retry_wait=1)
            server_info = test_client.get_server_info()
            test_client.disconnect()

            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': f"LDAP connection successful ({server_info.get('vendor_name', 'Unknown')})"
            }
        except LDAPConnectionError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            store = self._load_store_module(self.config.get('store', {}))
            store.close_connection()
            health_status['checks']['store'] = {
                'status': 'pass',
                'message': 'Identity store module loaded successfully'
            }
        except SyncError as e:
            health_status['checks']['store'] = {
                'status': 'fail',
                'message': f'Identity store loading failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]

            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Notification configuration invalid: missing {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
        if self.store:
            self.store.close_connection()


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Directory Identity Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

        from identity_sync.notifications import test_notification_config
        if test_notification_config(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(0 if orchestrator.run() else 1)


if __name__ == "__main__":
    main()

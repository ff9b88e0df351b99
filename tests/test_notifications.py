#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import os
import smtplib
import sys
import unittest
from unittest.mock import patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync import notifications
from identity_sync.notifications import (
    format_runtime,
    send_email,
    send_failure_notification,
    send_ldap_connection_failure,
    send_success_summary,
)


class TestNotifications(unittest.TestCase):
    """Test cases for notification helpers."""

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts@example.com',
            'smtp_password': 'smtppass',
            'email_from': 'alerts@example.com',
            'email_to': ['admin@example.com', 'ops@example.com'],
        }

    def test_format_runtime(self):
        self.assertEqual(format_runtime(12.345), '12.35 seconds')
        self.assertEqual(format_runtime(185.5), '3m 5.5s')

    def test_email_disabled(self):
        with patch('identity_sync.notifications.smtplib.SMTP') as mock_smtp:
            self.assertFalse(send_email('subject', 'body', {'enable_email': False}))
        mock_smtp.assert_not_called()

    def test_missing_server_or_recipients(self):
        del self.config['smtp_server']
        self.assertFalse(send_email('subject', 'body', self.config))

        self.config['smtp_server'] = 'smtp.example.com'
        self.config['email_to'] = []
        self.assertFalse(send_email('subject', 'body', self.config))

    @patch('identity_sync.notifications.smtplib.SMTP')
    def test_send_email_with_starttls(self, mock_smtp):
        server = mock_smtp.return_value

        self.assertTrue(send_email('subject', 'body', self.config))

        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts@example.com', 'smtppass')
        from_addr, to_addrs, _ = server.sendmail.call_args[0]
        self.assertEqual(from_addr, 'alerts@example.com')
        self.assertEqual(to_addrs, ['admin@example.com', 'ops@example.com'])
        server.quit.assert_called_once()

    @patch('identity_sync.notifications.smtplib.SMTP_SSL')
    def test_send_email_over_ssl(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465
        self.config['email_to'] = 'admin@example.com'

        self.assertTrue(send_email('subject', 'body', self.config))

        mock_smtp_ssl.assert_called_once_with('smtp.example.com', 465)
        self.assertEqual(mock_smtp_ssl.return_value.sendmail.call_args[0][1], ['admin@example.com'])

    @patch('identity_sync.notifications.smtplib.SMTP')
    def test_smtp_failure_returns_false(self, mock_smtp):
        mock_smtp.return_value.sendmail.side_effect = smtplib.SMTPRecipientsRefused({})

        self.assertFalse(send_email('subject', 'body', self.config))
        mock_smtp.return_value.quit.assert_called_once()

    @patch('identity_sync.notifications.send_email', return_value=True)
    def test_failure_notification(self, mock_send):
        self.assertTrue(send_failure_notification('No Users Found', 'nothing to do', self.config))

        subject, body, _ = mock_send.call_args[0]
        self.assertEqual(subject, 'Directory Identity Sync Alert: No Users Found')
        self.assertIn('nothing to do', body)

    @patch('identity_sync.notifications.send_email')
    def test_failure_notification_disabled(self, mock_send):
        self.config['email_on_failure'] = False
        self.assertFalse(send_failure_notification('title', 'message', self.config))
        mock_send.assert_not_called()

    @patch('identity_sync.notifications.send_email', return_value=True)
    def test_ldap_connection_failure(self, mock_send):
        send_ldap_connection_failure('bind failed', self.config, retry_count=3)

        subject, body, _ = mock_send.call_args[0]
        self.assertIn('LDAP Connection Failed', subject)
        self.assertIn('Retry Attempts: 3', body)

    @patch('identity_sync.notifications.send_email', return_value=True)
    def test_success_summary(self, mock_send):
        outcome = {
            'users_added': 2,
            'users_updated': 5,
            'users_failed': 1,
            'directory_seconds': 1.5,
            'store_seconds': 0.75,
            'runtime_seconds': 3.0,
        }

        send_success_summary(outcome, self.config)

        body = mock_send.call_args[0][1]
        self.assertIn('Users added: 2', body)
        self.assertIn('Users updated: 5', body)
        self.assertIn('Users failed: 1', body)
        self.assertIn('LDAP searches: 1.50s', body)

    @patch('identity_sync.notifications.send_email')
    def test_success_summary_disabled_by_default(self, mock_send):
        del self.config['email_on_success']
        self.assertFalse(send_success_summary({}, self.config))
        mock_send.assert_not_called()

    @patch('identity_sync.notifications.send_email', return_value=True)
    def test_configuration_test_mail(self, mock_send):
        self.assertTrue(notifications.test_notification_config(self.config))
        self.assertIn('smtp.example.com', mock_send.call_args[0][1])


if __name__ == '__main__':
    unittest.main()

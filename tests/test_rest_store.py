#!/usr/bin/env python3
"""
Unit tests for the REST identity store.

The HTTP connection is replaced by a mock, so each test checks the requests
the store sends and how it interprets the responses.
"""

import base64
import json
import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.attributes import AttributeBag
from identity_sync.stores.base import (
    Credentials,
    IdentityStoreAuthenticationError,
    IdentityStoreError,
    Profile,
)
from identity_sync.stores.rest import RestIdentityStore

GUID = '6f1d2a3b-0c4e-4f5a-8b9c-0d1e2f3a4b5c'


def make_response(status=200, data=None, reason='OK'):
    response = Mock()
    response.status = status
    response.reason = reason
    response.read.return_value = json.dumps(data).encode('utf-8') if data is not None else b''
    return response


class TestRestIdentityStore(unittest.TestCase):
    """Test cases for RestIdentityStore."""

    def setUp(self):
        self.config = {
            'name': 'Portal',
            'base_url': 'https://identity.example.com/api/v1/',
            'auth': {'method': 'basic', 'username': 'sync', 'password': 'store-pass'},
            'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0},
        }
        self.store = RestIdentityStore(self.config)
        self.connection = Mock()
        patcher = patch.object(RestIdentityStore, '_get_connection', return_value=self.connection)
        patcher.start()
        self.addCleanup(patcher.stop)

    def respond(self, *responses):
        self.connection.getresponse.side_effect = list(responses)

    def sent(self, index=0):
        """Return (method, path, body, headers) of a request sent to the connection."""
        method, path, body, headers = self.connection.request.call_args_list[index][0]
        return method, path, json.loads(body) if body else None, headers

    def profile(self, local_id=0):
        return Profile(
            credentials=Credentials('alice', 'alice@example.com'),
            attributes=AttributeBag({'objectGUID': ['{' + GUID + '}'], 'mail': ['alice@example.com']}),
            object_guid=GUID,
            local_id=local_id,
            fields={'email': 'alice@example.com'},
        )

    def test_basic_auth_header(self):
        self.respond(make_response(data={'users': []}))

        self.assertTrue(self.store.authenticate())

        method, path, body, headers = self.sent()
        expected = base64.b64encode(b'sync:store-pass').decode()
        self.assertEqual(headers['Authorization'], f'Basic {expected}')
        self.assertEqual((method, path), ('GET', '/api/v1/users?limit=1'))

    def test_bearer_auth_header(self):
        config = dict(self.config, auth={'method': 'bearer', 'token': 'abc123'})
        store = RestIdentityStore(config)
        self.assertEqual(store.auth_headers['Authorization'], 'Bearer abc123')

    def test_authenticate_rejected(self):
        self.respond(make_response(401, reason='Unauthorized'))

        self.assertFalse(self.store.authenticate())
        self.assertEqual(self.connection.request.call_count, 1)

    def test_create_posts_profile(self):
        self.respond(make_response(201, {'id': 42, 'username': 'alice'}))
        profile = self.profile()

        identity = self.store.create(profile, notify=False)

        self.assertEqual(identity.local_id, 42)
        self.assertEqual(profile.local_id, 42)
        method, path, body, headers = self.sent()
        self.assertEqual((method, path), ('POST', '/api/v1/users'))
        self.assertEqual(body['username'], 'alice')
        self.assertEqual(body['object_guid'], GUID)
        self.assertEqual(body['email'], 'alice@example.com')
        self.assertFalse(body['notify'])
        self.assertEqual(headers['Content-Type'], 'application/json')

    def test_create_without_id_fails(self):
        self.respond(make_response(201, {}))

        with self.assertRaises(IdentityStoreError):
            self.store.create(self.profile())

    def test_update_puts_profile(self):
        self.respond(make_response(200, {'id': 7, 'username': 'alice'}))

        self.store.update(self.profile(local_id=7))

        method, path, body, _ = self.sent()
        self.assertEqual((method, path), ('PUT', '/api/v1/users/7'))
        self.assertTrue(body['notify'])

    def test_disable_and_enable(self):
        self.respond(make_response(204), make_response(204))

        self.store.disable(7, 'User "alice" is disabled in Active Directory.')
        self.store.enable(7)

        method, path, body, _ = self.sent(0)
        self.assertEqual((method, path), ('POST', '/api/v1/users/7/disable'))
        self.assertEqual(body, {'reason': 'User "alice" is disabled in Active Directory.'})
        method, path, body, _ = self.sent(1)
        self.assertEqual((method, path, body), ('POST', '/api/v1/users/7/enable', None))

    def test_client_error_is_not_retried(self):
        self.respond(make_response(404, {'error': 'not found'}, reason='Not Found'))

        with self.assertRaises(IdentityStoreError) as context:
            self.store.enable(99)

        self.assertEqual(context.exception.status_code, 404)
        self.assertEqual(self.connection.request.call_count, 1)

    def test_unauthorized_raises_authentication_error(self):
        self.respond(make_response(401, reason='Unauthorized'))

        with self.assertRaises(IdentityStoreAuthenticationError):
            self.store.enable(7)

    @patch('identity_sync.retry.time.sleep')
    def test_server_error_is_retried(self, mock_sleep):
        self.respond(make_response(503, reason='Service Unavailable'), make_response(200, {'id': 7}))

        self.store.update(self.profile(local_id=7))

        self.assertEqual(self.connection.request.call_count, 2)

    @patch('identity_sync.retry.time.sleep')
    def test_create_is_not_retried(self, mock_sleep):
        # The server may have stored the user before answering 502
        self.respond(make_response(502, reason='Bad Gateway'), make_response(201, {'id': 42}))

        with self.assertRaises(IdentityStoreError) as context:
            self.store.create(self.profile())

        self.assertEqual(context.exception.status_code, 502)
        self.assertEqual(self.connection.request.call_count, 1)
        self.assertEqual(self.sent()[0], 'POST')
        mock_sleep.assert_not_called()

    @patch('identity_sync.retry.time.sleep')
    def test_server_error_exhausts_retries(self, mock_sleep):
        self.respond(*[make_response(500, reason='Internal Server Error') for _ in range(3)])

        with self.assertRaises(IdentityStoreError) as context:
            self.store.enable(7)

        self.assertEqual(context.exception.status_code, 500)
        self.assertEqual(self.connection.request.call_count, 3)

    @patch('identity_sync.retry.time.sleep')
    def test_connection_error_closes_connection(self, mock_sleep):
        self.connection.request.side_effect = ConnectionResetError('connection reset by peer')

        with self.assertRaises(IdentityStoreError):
            self.store.enable(7)

        self.assertEqual(self.connection.request.call_count, 3)

    def test_invalid_json_response(self):
        response = make_response(200)
        response.read.return_value = b'<html>'
        self.respond(response)

        with self.assertRaises(IdentityStoreError):
            self.store.enable(7)

    def test_find_directory_linked_usernames_pages(self):
        self.respond(
            make_response(data={'users': [{'id': 1, 'username': 'alice', 'object_guid': GUID.upper()},
                                          {'id': 2, 'username': 'local-admin'}],
                                'next_page': 2}),
            make_response(data={'users': [{'id': 3, 'username': 'bob', 'object_guid': 'B-GUID'}]}),
        )

        linked = self.store.find_directory_linked_usernames()

        self.assertEqual(linked, {GUID: 'alice', 'b-guid': 'bob'})
        self.assertIn('directory_linked=true', self.sent(0)[1])
        self.assertIn('page=2', self.sent(1)[1])

    def test_find_local_id_prefers_guid_match(self):
        self.respond(make_response(data={'users': [
            {'id': 3, 'username': 'alice', 'object_guid': 'other'},
            {'id': 8, 'username': 'alice.renamed', 'object_guid': GUID.upper()},
        ]}))

        self.assertEqual(self.store.find_local_id(GUID, 'alice'), 8)

    def test_find_local_id_unknown(self):
        self.respond(make_response(data={'users': []}))

        self.assertEqual(self.store.find_local_id(GUID, 'alice'), 0)

    def test_close_connection(self):
        connection = Mock()
        self.store.connection = connection

        self.store.close_connection()

        connection.close.assert_called_once()
        self.assertIsNone(self.store.connection)


if __name__ == '__main__':
    unittest.main()

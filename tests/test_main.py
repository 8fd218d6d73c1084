#!/usr/bin/env python3
"""
Tests for the application layer: exit codes, command dispatch and the
interactive shell.
"""

import io
import os
import json
import sys
import tempfile
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ciam_bulk.main import (
    BulkSyncApp, build_parser, dispatch, run_shell,
    EXIT_SUCCESS, EXIT_PARTIAL_FAILURE, EXIT_CONFIGURATION_ERROR, EXIT_DIRECTORY_ERROR,
    EXIT_UNEXPECTED_ERROR, EXIT_CANCELLED
)
from ciam_bulk.throttle import OperationCancelled
from fakes import FakeDirectoryClient, make_entries


class TestBulkSyncApp(unittest.TestCase):
    """Test cases for BulkSyncApp.execute and health_check."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config = {
            'directory': {
                'backend': 'graph',
                'issuer_domain': 'contoso.onmicrosoft.com',
                'page_size': 10,
            },
            'bulk': {
                'prefix': 'test_user_',
                'batch_size': 20,
                'membership_chunk_size': 20,
                'create_delay_seconds': 0,
                'membership_delay_seconds': 0,
                'page_delay_seconds': 0,
                'initial_password': 'Initial#Pass1',
                'force_change_password': False,
                'snapshot_dir': self.temp_dir.name,
                'snapshot_name': 'users',
                'snapshot_every_pages': 50,
                'snapshot_shards': 3,
            },
            'error_handling': {'max_retries': 0, 'retry_wait_seconds': 0},
            'logging': {},
        }
        self.client = FakeDirectoryClient(make_entries('test_user_', 5) + make_entries('alice_', 2))

        patcher = patch('ciam_bulk.main.create_client', return_value=self.client)
        self.mock_create_client = patcher.start()
        self.addCleanup(patcher.stop)

        stdout_patcher = patch('sys.stdout', new_callable=io.StringIO)
        stderr_patcher = patch('sys.stderr', new_callable=io.StringIO)
        self.stdout = stdout_patcher.start()
        self.stderr = stderr_patcher.start()
        self.addCleanup(stdout_patcher.stop)
        self.addCleanup(stderr_patcher.stop)

        self.app = BulkSyncApp(config=self.config)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_create_success(self):
        code = self.app.execute('create', from_seq=6, to_seq=10)

        self.assertEqual(code, EXIT_SUCCESS)
        self.assertEqual([len(batch) for batch in self.client.batches], [4])
        payload = self.client.batches[0][0].payload
        self.assertEqual(payload['identities'][1]['issuerAssignedId'],
                         'test_user_0000006@contoso.onmicrosoft.com')
        self.assertTrue(self.client.closed)

    def test_create_with_rejected_operations_is_partial_failure(self):
        self.client.fail_labels = {'test_user_0000007'}

        self.assertEqual(self.app.execute('create', from_seq=6, to_seq=10), EXIT_PARTIAL_FAILURE)

    def test_invalid_range(self):
        self.assertEqual(self.app.execute('create', from_seq=0, to_seq=10), EXIT_CONFIGURATION_ERROR)
        self.assertEqual(self.app.execute('create', from_seq=10, to_seq=5), EXIT_CONFIGURATION_ERROR)
        self.assertEqual(self.client.batches, [])

    def test_add_missing_without_snapshot(self):
        code = self.app.execute('create', from_seq=1, to_seq=10, skip_existing=True)

        self.assertEqual(code, EXIT_CONFIGURATION_ERROR)
        self.assertEqual(self.client.batches, [])

    def test_add_missing_without_snapshot_never_authenticates(self):
        self.client.auth_error = True

        code = self.app.execute('create', from_seq=1, to_seq=10, skip_existing=True)

        # the missing snapshot is reported, not the bad credentials
        self.assertEqual(code, EXIT_CONFIGURATION_ERROR)
        self.assertEqual(self.client.auth_calls, 0)

    def test_create_without_initial_password(self):
        self.config['bulk']['initial_password'] = ''

        code = self.app.execute('create', from_seq=1, to_seq=10)

        self.assertEqual(code, EXIT_CONFIGURATION_ERROR)
        self.assertEqual(self.client.auth_calls, 0)
        self.assertEqual(self.client.batches, [])

    def test_create_without_issuer_domain(self):
        self.config['directory']['issuer_domain'] = ''

        self.assertEqual(self.app.execute('create', from_seq=1, to_seq=10), EXIT_CONFIGURATION_ERROR)
        self.assertEqual(self.client.batches, [])

    def test_delete_does_not_need_initial_password(self):
        self.config['bulk']['initial_password'] = ''

        self.assertEqual(self.app.execute('delete'), EXIT_SUCCESS)
        self.assertEqual(len(self.client.users), 2)

    def test_get_user_prints_json(self):
        code = self.app.execute('get-user', identifier='test_user_id-3')

        self.assertEqual(code, EXIT_SUCCESS)
        self.assertEqual(self.client.lookups, ['test_user_id-3'])
        user = json.loads(self.stdout.getvalue())
        self.assertEqual(user['id'], 'test_user_id-3')
        self.assertEqual(user['displayName'], 'test_user_0000003')
        self.assertTrue(self.client.closed)

    def test_get_user_not_found(self):
        code = self.app.execute('get-user', identifier='no-such-user')

        self.assertEqual(code, EXIT_DIRECTORY_ERROR)
        self.assertIn('Not found', self.stderr.getvalue())
        self.assertEqual(self.stdout.getvalue(), '')

    def test_get_user_requires_id(self):
        self.assertEqual(self.app.execute('get-user', identifier='  '), EXIT_CONFIGURATION_ERROR)
        self.assertEqual(self.client.lookups, [])

    def test_list_then_add_missing(self):
        self.assertEqual(self.app.execute('list-users'), EXIT_SUCCESS)

        code = self.app.execute('create', from_seq=1, to_seq=8, skip_existing=True)

        self.assertEqual(code, EXIT_SUCCESS)
        names = [op.payload['displayName'] for op in self.client.batches[0]]
        self.assertEqual(names, ['test_user_0000006', 'test_user_0000007'])

    def test_add_to_groups(self):
        code = self.app.execute('add-to-groups', group_ids=['g1'])

        self.assertEqual(code, EXIT_SUCCESS)
        self.assertEqual([(group, len(refs)) for group, refs in self.client.group_updates], [('g1', 5)])

    def test_add_to_groups_requires_ids(self):
        self.assertEqual(self.app.execute('add-to-groups', group_ids=[]), EXIT_CONFIGURATION_ERROR)

    def test_delete_immediate(self):
        code = self.app.execute('delete', immediate=True)

        self.assertEqual(code, EXIT_SUCCESS)
        self.assertEqual(len(self.client.deleted), 5)
        self.assertEqual(len(self.client.users), 2)

    def test_authentication_failure(self):
        self.client.auth_error = True

        self.assertEqual(self.app.execute('delete'), EXIT_DIRECTORY_ERROR)
        self.assertTrue(self.client.closed)

    def test_listing_failure(self):
        self.client.fail_list = True

        self.assertEqual(self.app.execute('delete'), EXIT_DIRECTORY_ERROR)

    def test_cancelled_run(self):
        with patch.object(BulkSyncApp, 'delete', side_effect=OperationCancelled('interrupted by operator')):
            self.assertEqual(self.app.execute('delete'), EXIT_CANCELLED)

    def test_unexpected_error(self):
        with patch.object(BulkSyncApp, 'delete', side_effect=RuntimeError('boom')):
            self.assertEqual(self.app.execute('delete'), EXIT_UNEXPECTED_ERROR)

    def test_missing_config_file(self):
        app = BulkSyncApp(config_path=os.path.join(self.temp_dir.name, 'absent.yaml'))

        self.assertEqual(app.execute('delete'), EXIT_CONFIGURATION_ERROR)
        self.mock_create_client.assert_not_called()

    def test_health_check(self):
        health = self.app.health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['directory']['status'], 'pass')
        self.assertEqual(health['checks']['snapshot']['status'], 'skip')

    def test_health_check_with_bad_credentials(self):
        self.client.auth_error = True

        health = self.app.health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['directory']['status'], 'fail')


class TestCommandLine(unittest.TestCase):
    """Test cases for argument parsing, dispatch and the shell."""

    def setUp(self):
        self.parser = build_parser()
        self.app = Mock()
        self.app.execute.return_value = EXIT_SUCCESS

    def test_list(self):
        dispatch(self.app, self.parser.parse_args(['list']))
        self.app.execute.assert_called_once_with('list-users')

    def test_create(self):
        dispatch(self.app, self.parser.parse_args(['create', '1', '1001']))
        self.app.execute.assert_called_once_with('create', from_seq=1, to_seq=1001)

    def test_add_missing_with_snapshot(self):
        dispatch(self.app, self.parser.parse_args(['add-missing', '1', '50', '--snapshot', 'snap.json']))
        self.app.execute.assert_called_once_with('create', from_seq=1, to_seq=50,
                                                 skip_existing=True, snapshot_path='snap.json')

    def test_add_to_groups_splits_ids(self):
        dispatch(self.app, self.parser.parse_args(['add-to-groups', 'g1, g2,,']))
        self.app.execute.assert_called_once_with('add-to-groups', group_ids=['g1', 'g2'])

    def test_delete_immediate(self):
        dispatch(self.app, self.parser.parse_args(['delete', '--immediate']))
        self.app.execute.assert_called_once_with('delete', immediate=True)

    def test_get_user(self):
        dispatch(self.app, self.parser.parse_args(['get-user', 'user-guid-1']))
        self.app.execute.assert_called_once_with('get-user', identifier='user-guid-1')

    def test_health_check_exit_code(self):
        self.app.health_check.return_value = {'status': 'unhealthy', 'checks': {}}

        with patch('sys.stdout', new_callable=io.StringIO):
            code = dispatch(self.app, self.parser.parse_args(['health-check']))

        self.assertEqual(code, EXIT_PARTIAL_FAILURE)

    @patch('sys.stderr', new_callable=io.StringIO)
    @patch('sys.stdout', new_callable=io.StringIO)
    def test_shell_runs_commands_until_exit(self, mock_stdout, mock_stderr):
        inputs = iter(['help', '', 'bogus', 'create 1 3', 'exit', 'delete'])

        code = run_shell(self.app, self.parser, input_func=lambda prompt: next(inputs))

        self.assertEqual(code, EXIT_SUCCESS)
        self.app.execute.assert_called_once_with('create', from_seq=1, to_seq=3)
        self.assertIn('add-to-groups', mock_stdout.getvalue())
        self.assertIn('get-user', mock_stdout.getvalue())

    @patch('sys.stdout', new_callable=io.StringIO)
    def test_shell_ends_on_eof(self, mock_stdout):
        def raise_eof(prompt):
            raise EOFError

        self.assertEqual(run_shell(self.app, self.parser, input_func=raise_eof), EXIT_SUCCESS)
        self.app.execute.assert_not_called()


if __name__ == '__main__':
    unittest.main()

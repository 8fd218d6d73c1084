#!/usr/bin/env python3
"""
Tests for the bulk delete workflow against an in-memory directory.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ciam_bulk.directory.base import TransportError
from ciam_bulk.models import DirectoryEntry, OperationKind
from ciam_bulk.throttle import CancelToken, OperationCancelled
from ciam_bulk.workflows import BulkDeleteWorkflow, DeleteMode
from fakes import FakeDirectoryClient, RecordingThrottle, make_entries


def mixed_directory():
    """25 test identities interleaved with 5 real users."""
    test_users = make_entries('test_user_', 25)
    real_users = make_entries('alice_', 5)
    entries = []
    for index, entry in enumerate(test_users):
        entries.append(entry)
        if index % 5 == 0:
            entries.append(real_users[index // 5])
    return entries


class TestBulkDeleteWorkflow(unittest.TestCase):
    """Test cases for BulkDeleteWorkflow."""

    def setUp(self):
        self.client = FakeDirectoryClient(mixed_directory(), page_size=7)
        self.throttle = RecordingThrottle(seconds=0.2)

    def test_batched_mode_deletes_only_prefixed_entries(self):
        workflow = BulkDeleteWorkflow(self.client, 'test_user_', batch_size=10, throttle=self.throttle)

        stats = workflow.run()

        self.assertEqual([len(batch) for batch in self.client.batches], [10, 10, 5])
        self.assertTrue(all(op.kind == OperationKind.DELETE for batch in self.client.batches for op in batch))
        self.assertEqual(stats.matched, 25)
        self.assertEqual(stats.succeeded, 25)
        self.assertEqual({user.display_name[:6] for user in self.client.users}, {'alice_'})
        self.assertEqual(len(self.client.users), 5)
        self.assertEqual(self.throttle.waits, [0.2, 0.2])

    def test_batched_mode_addresses_user_path(self):
        BulkDeleteWorkflow(self.client, 'test_user_', throttle=self.throttle).run()

        first = self.client.batches[0][0]
        self.assertEqual(first.target_path, '/users/test_user_id-1')
        self.assertEqual(first.label, 'test_user_0000001')

    def test_immediate_mode_deletes_one_at_a_time(self):
        workflow = BulkDeleteWorkflow(self.client, 'test_user_', mode=DeleteMode.IMMEDIATE)

        stats = workflow.run()

        self.assertEqual(self.client.batches, [])
        self.assertEqual(self.client.deleted, [f'test_user_id-{n}' for n in range(1, 26)])
        self.assertEqual(stats.succeeded, 25)

    def test_immediate_mode_counts_failures_and_continues(self):
        client = FakeDirectoryClient(make_entries('test_user_', 4), fail_deletes=['test_user_id-2'])

        stats = BulkDeleteWorkflow(client, 'test_user_', mode=DeleteMode.IMMEDIATE).run()

        self.assertEqual(len(client.deleted), 4)
        self.assertEqual(stats.failed, 1)
        self.assertEqual(stats.succeeded, 3)

    def test_entries_without_display_name_are_kept(self):
        entries = [DirectoryEntry('no-name', ''), DirectoryEntry('x', 'test_user_0000001')]
        client = FakeDirectoryClient(entries)

        stats = BulkDeleteWorkflow(client, 'test_user_', mode=DeleteMode.IMMEDIATE).run()

        self.assertEqual(client.deleted, ['x'])
        self.assertEqual(stats.matched, 1)

    def test_no_matches_makes_no_writes(self):
        client = FakeDirectoryClient(make_entries('alice_', 12), page_size=5)

        stats = BulkDeleteWorkflow(client, 'test_user_').run()

        self.assertEqual(client.batches, [])
        self.assertEqual(stats.matched, 0)

    def test_empty_prefix_is_rejected(self):
        with self.assertRaises(ValueError):
            BulkDeleteWorkflow(self.client, '')

    def test_listing_failure_aborts_run(self):
        client = FakeDirectoryClient(fail_list=True)

        with self.assertRaises(TransportError):
            BulkDeleteWorkflow(client, 'test_user_').run()

    def test_cancellation_discards_buffered_deletes(self):
        token = CancelToken()
        self.throttle.on_wait = lambda: token.cancel('operator')
        workflow = BulkDeleteWorkflow(self.client, 'test_user_', batch_size=10,
                                      throttle=self.throttle, cancel_token=token)

        with self.assertRaises(OperationCancelled):
            workflow.run()

        self.assertEqual(len(self.client.batches), 1)
        self.assertEqual(len(self.client.users), 20)


if __name__ == '__main__':
    unittest.main()

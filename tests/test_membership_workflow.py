#!/usr/bin/env python3
"""
Tests for the group membership workflow against an in-memory directory.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ciam_bulk.throttle import CancelToken, OperationCancelled
from ciam_bulk.workflows import GroupMembershipWorkflow
from fakes import FakeDirectoryClient, RecordingThrottle, make_entries


class TestGroupMembershipWorkflow(unittest.TestCase):
    """Test cases for GroupMembershipWorkflow."""

    def setUp(self):
        entries = make_entries('test_user_', 45) + make_entries('alice_', 3)
        self.client = FakeDirectoryClient(entries, page_size=10)
        self.throttle = RecordingThrottle(seconds=1.0)

    def make_workflow(self, client=None, chunk_size=20, cancel_token=None):
        return GroupMembershipWorkflow(client or self.client, 'test_user_', chunk_size=chunk_size,
                                       throttle=self.throttle, cancel_token=cancel_token)

    def test_chunks_are_sent_to_every_group(self):
        stats = self.make_workflow().run(['g1', 'g2'])

        updates = [(group, len(refs)) for group, refs in self.client.group_updates]
        self.assertEqual(updates, [('g1', 20), ('g2', 20), ('g1', 20), ('g2', 20), ('g1', 5), ('g2', 5)])
        self.assertEqual(stats.matched, 45)
        self.assertEqual(stats.succeeded, 90)
        # pause after each full chunk only
        self.assertEqual(self.throttle.waits, [1.0, 1.0])

    def test_every_test_identity_reaches_every_group(self):
        self.make_workflow().run(['g1', 'g2'])

        expected = {f'ref:test_user_id-{n}' for n in range(1, 46)}
        for group in ('g1', 'g2'):
            members = {ref for g, refs in self.client.group_updates if g == group for ref in refs}
            self.assertEqual(members, expected)

    def test_exact_multiple_sends_no_empty_chunk(self):
        client = FakeDirectoryClient(make_entries('test_user_', 40), page_size=10)

        self.make_workflow(client=client).run(['g1'])

        self.assertEqual([len(refs) for _, refs in client.group_updates], [20, 20])

    def test_group_ids_are_trimmed_and_deduplicated(self):
        self.make_workflow().run(['g1', ' g1 ', '', '  '])

        self.assertEqual({group for group, _ in self.client.group_updates}, {'g1'})

    def test_no_groups_skips_listing(self):
        stats = self.make_workflow().run([])

        self.assertEqual(self.client.list_calls, 0)
        self.assertEqual(stats.matched, 0)

    def test_failing_group_does_not_block_others(self):
        client = FakeDirectoryClient(make_entries('test_user_', 45), page_size=10, fail_groups=['g2'])

        stats = self.make_workflow(client=client).run(['g1', 'g2'])

        self.assertEqual(stats.succeeded, 45)
        self.assertEqual(stats.failed, 45)
        self.assertEqual(stats.failed_batches, 3)
        g1_total = sum(len(refs) for group, refs in client.group_updates if group == 'g1')
        self.assertEqual(g1_total, 45)

    def test_invalid_chunk_size(self):
        with self.assertRaises(ValueError):
            self.make_workflow(chunk_size=0)

    def test_cancellation_stops_after_current_chunk(self):
        token = CancelToken()
        self.throttle.on_wait = lambda: token.cancel('operator')
        workflow = self.make_workflow(cancel_token=token)

        with self.assertRaises(OperationCancelled):
            workflow.run(['g1', 'g2'])

        self.assertEqual(len(self.client.group_updates), 2)


if __name__ == '__main__':
    unittest.main()

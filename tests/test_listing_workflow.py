#!/usr/bin/env python3
"""
Tests for the listing and snapshot workflow against an in-memory directory.
"""

import os
import sys
import tempfile
import unittest
from unittest.mock import patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ciam_bulk.models import DirectoryEntry
from ciam_bulk.snapshot import SnapshotStore, SnapshotNotFoundError
from ciam_bulk.throttle import CancelToken, OperationCancelled
from ciam_bulk.workflows import ListAndSnapshotWorkflow
from fakes import FakeDirectoryClient, RecordingThrottle, make_entries


class TestListAndSnapshotWorkflow(unittest.TestCase):
    """Test cases for ListAndSnapshotWorkflow."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = SnapshotStore(self.temp_dir.name, shard_count=3)
        self.entries = make_entries('test_user_', 12)
        self.client = FakeDirectoryClient(self.entries, page_size=5)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_lists_everything_into_complete_snapshot(self):
        workflow = ListAndSnapshotWorkflow(self.client, self.store)

        mapping = workflow.run()

        expected = {entry.display_name: entry.identifier for entry in self.entries}
        self.assertEqual(mapping, expected)
        self.assertEqual(self.store.load_complete(), expected)
        self.assertEqual(workflow.last_stats.pages, 3)
        self.assertEqual(workflow.last_stats.matched, 12)

    def test_checkpoints_between_pages(self):
        workflow = ListAndSnapshotWorkflow(self.client, self.store, snapshot_every_pages=1)

        sizes = []
        with patch.object(self.store, 'save_checkpoint', side_effect=lambda mapping: sizes.append(len(mapping))):
            workflow.run()

        self.assertEqual(sizes, [5, 10])

    def test_checkpoint_interval(self):
        client = FakeDirectoryClient(make_entries('test_user_', 50), page_size=5)
        workflow = ListAndSnapshotWorkflow(client, self.store, snapshot_every_pages=4)

        with patch.object(self.store, 'save_checkpoint') as checkpoint:
            workflow.run()

        # 10 pages, 9 boundaries: checkpoints after pages 4 and 8
        self.assertEqual(checkpoint.call_count, 2)

    def test_duplicate_display_names_keep_first(self):
        entries = [
            DirectoryEntry('id-1', 'test_user_0000001'),
            DirectoryEntry('id-2', 'test_user_0000001'),
            DirectoryEntry('id-3', ''),
        ]
        client = FakeDirectoryClient(entries)
        workflow = ListAndSnapshotWorkflow(client, self.store)

        mapping = workflow.run()

        self.assertEqual(mapping, {'test_user_0000001': 'id-1'})
        self.assertEqual(workflow.last_stats.duplicates, 1)
        self.assertEqual(workflow.last_stats.skipped, 1)

    def test_cancellation_writes_checkpoint_not_complete_file(self):
        token = CancelToken()
        throttle = RecordingThrottle(on_wait=lambda: token.cancel('operator'))
        workflow = ListAndSnapshotWorkflow(self.client, self.store, throttle=throttle,
                                           page_delay_seconds=0.5, cancel_token=token)

        with self.assertRaises(OperationCancelled):
            workflow.run()

        self.assertEqual(throttle.waits, [0.5])
        self.assertEqual(len(self.store.load_shards()), 5)
        with self.assertRaises(SnapshotNotFoundError):
            self.store.load_complete()

    def test_invalid_checkpoint_interval(self):
        with self.assertRaises(ValueError):
            ListAndSnapshotWorkflow(self.client, self.store, snapshot_every_pages=0)


if __name__ == '__main__':
    unittest.main()

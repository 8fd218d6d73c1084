#!/usr/bin/env python3
"""
Unit tests for the directory paginator.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ciam_bulk.paginator import DirectoryPaginator
from ciam_bulk.throttle import CancelToken, OperationCancelled
from fakes import FakeDirectoryClient, RecordingThrottle, make_entries


class TestDirectoryPaginator(unittest.TestCase):
    """Test cases for DirectoryPaginator."""

    def setUp(self):
        self.entries = make_entries('test_user_', 7)
        self.client = FakeDirectoryClient(self.entries, page_size=3)

    def test_yields_every_entry_once_in_order(self):
        paginator = DirectoryPaginator(self.client)

        delivered = list(paginator)

        self.assertEqual(delivered, self.entries)
        self.assertEqual(paginator.pages_fetched, 3)
        self.assertEqual(paginator.entries_delivered, 7)

    def test_hook_runs_between_pages_only(self):
        calls = []
        paginator = DirectoryPaginator(self.client)

        list(paginator.entries(on_page_boundary=lambda request: calls.append(request.continuation)))

        self.assertEqual(calls, ['3', '6'])

    def test_hook_can_delay_next_request(self):
        throttle = RecordingThrottle()

        def slow_down(request):
            request.delay_seconds = 0.5
            return request

        paginator = DirectoryPaginator(self.client, throttle=throttle)
        list(paginator.entries(on_page_boundary=slow_down))

        self.assertEqual(throttle.waits, [0.5, 0.5])

    def test_single_page_listing_never_calls_hook(self):
        client = FakeDirectoryClient(make_entries('test_user_', 2), page_size=10)
        calls = []
        paginator = DirectoryPaginator(client)

        delivered = paginator.iterate(lambda entry: True, lambda request: calls.append(request))

        self.assertEqual(delivered, 2)
        self.assertEqual(calls, [])
        self.assertEqual(client.next_page_calls, 0)

    def test_empty_listing(self):
        client = FakeDirectoryClient([], page_size=10)
        paginator = DirectoryPaginator(client)

        self.assertEqual(list(paginator), [])
        self.assertEqual(paginator.pages_fetched, 1)

    def test_early_stop_fetches_no_more_pages(self):
        calls = []
        seen = []

        def stop_after_two(entry):
            seen.append(entry)
            return len(seen) < 2

        paginator = DirectoryPaginator(self.client)
        delivered = paginator.iterate(stop_after_two, lambda request: calls.append(request))

        self.assertEqual(delivered, 2)
        self.assertEqual(self.client.next_page_calls, 0)
        self.assertEqual(calls, [])

    def test_cancellation_at_page_boundary(self):
        token = CancelToken()
        paginator = DirectoryPaginator(self.client, cancel_token=token)

        def cancel(request):
            token.cancel('test')
            return request

        with self.assertRaises(OperationCancelled):
            paginator.iterate(lambda entry: True, cancel)
        self.assertEqual(self.client.next_page_calls, 0)

    def test_traversal_restarts_from_first_page(self):
        paginator = DirectoryPaginator(self.client)
        list(paginator)
        second = list(paginator)

        self.assertEqual(second, self.entries)
        self.assertEqual(self.client.list_calls, 2)


if __name__ == '__main__':
    unittest.main()

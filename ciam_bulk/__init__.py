"""
CIAM Bulk Tools - Bulk maintenance of test identities in a remote user directory.

This package creates, lists, deletes and groups large numbers of synthetic test
identities while respecting the directory service's batch-size limits and
keeping request rates under its throttling thresholds.
"""

__version__ = "1.0.0"
__author__ = "CIAM Tools Team"

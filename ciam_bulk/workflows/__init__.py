"""
Bulk workflows: create, list, delete and add-to-groups.
"""

from ciam_bulk.workflows.base import BulkWorkflow
from ciam_bulk.workflows.create import BulkCreateWorkflow
from ciam_bulk.workflows.delete import BulkDeleteWorkflow, DeleteMode
from ciam_bulk.workflows.listing import ListAndSnapshotWorkflow
from ciam_bulk.workflows.membership import GroupMembershipWorkflow

__all__ = [
    'BulkWorkflow',
    'BulkCreateWorkflow',
    'BulkDeleteWorkflow',
    'DeleteMode',
    'GroupMembershipWorkflow',
    'ListAndSnapshotWorkflow',
]

"""
Base directory client interface.

This module defines the abstract base class that every directory backend must
implement. The bulk workflows only talk to a directory through this interface,
so a backend decides its own wire format, addressing scheme and batching.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Sequence

from ciam_bulk.models import (
    BatchedOperation, BatchResult, DirectoryPage, OperationKind, PageRequest
)

logger = logging.getLogger(__name__)

DEFAULT_SELECT_FIELDS = ['id', 'displayName', 'identities']
USER_DETAIL_FIELDS = ['displayName', 'givenName', 'surname', 'jobTitle', 'companyName', 'id', 'identities']


class DirectoryAPIError(Exception):
    """Base exception for directory client errors."""
    pass


class TransportError(DirectoryAPIError):
    """
    Raised when a remote call fails (network, HTTP or protocol error).

    ``status_code`` carries the HTTP status when there was one so callers can
    tell throttling and server errors apart from client errors.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DirectoryAuthenticationError(TransportError):
    """Raised when the directory rejects the client's credentials."""
    pass


class EntryNotFoundError(TransportError):
    """Raised when a single-entry lookup names an entry the directory does not have."""

    def __init__(self, message: str, status_code: Optional[int] = 404):
        super().__init__(message, status_code)


class DirectoryClientBase(ABC):
    """
    Abstract base class for directory backends.

    Subclasses implement listing, single lookups, batch submission, membership
    updates and single deletes, plus the helpers that build backend-specific
    operations.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory client.

        Args:
            config: The ``directory`` section of the configuration
        """
        self.config = config
        self.name = config.get('name', self.__class__.__name__)
        self.page_size = config.get('page_size', 100)

    def authenticate(self) -> bool:
        """
        Perform any authentication needed before the first call.

        Returns:
            True if the client is ready to make requests
        """
        return True

    def close(self):
        """Release connections held by the client."""
        pass

    @abstractmethod
    def list_entries(self, select: Optional[List[str]] = None, filter: Optional[str] = None,
                     order_by: Optional[str] = None, page_size: Optional[int] = None) -> DirectoryPage:
        """
        Fetch the first page of the user listing.

        Args:
            select: Fields to return for each entry
            filter: Backend-specific filter expression
            order_by: Backend-specific ordering
            page_size: Requested page size (server may return fewer)

        Returns:
            First page, with ``next_request`` set if more pages exist

        Raises:
            TransportError: If the listing call fails
        """
        pass

    @abstractmethod
    def get_next_page(self, request: PageRequest) -> DirectoryPage:
        """
        Fetch the page a continuation request points at.

        Raises:
            TransportError: If the call fails
        """
        pass

    @abstractmethod
    def get_entry(self, identifier: str) -> Dict[str, Any]:
        """
        Read one user with its profile fields.

        Returns:
            Graph-shaped user record with the keys of ``USER_DETAIL_FIELDS``

        Raises:
            EntryNotFoundError: If no user has ``identifier``
            TransportError: If the lookup fails
        """
        pass

    @abstractmethod
    def submit_batch(self, operations: Sequence[BatchedOperation]) -> BatchResult:
        """
        Submit a batch of write operations in one call.

        Returns:
            Per-operation results in the order of ``operations``

        Raises:
            TransportError: If the batch as a whole could not be submitted
        """
        pass

    @abstractmethod
    def update_group_members(self, group_id: str, member_refs: Sequence[str]):
        """
        Add the referenced directory objects to a group in one call.

        Raises:
            TransportError: If the update fails
        """
        pass

    @abstractmethod
    def delete_entry(self, identifier: str):
        """
        Delete a single entry immediately.

        Raises:
            TransportError: If the delete fails
        """
        pass

    @abstractmethod
    def member_reference(self, identifier: str) -> str:
        """Reference string used to name an entry in a membership update."""
        pass

    @abstractmethod
    def users_path(self) -> str:
        """Path of the user collection, target of create operations."""
        pass

    @abstractmethod
    def user_path(self, identifier: str) -> str:
        """Path addressing a single user, target of delete operations."""
        pass

    def create_operation(self, payload: Dict[str, Any], label: str = '') -> BatchedOperation:
        return BatchedOperation(OperationKind.CREATE, self.users_path(), payload, label)

    def delete_operation(self, identifier: str, label: str = '') -> BatchedOperation:
        return BatchedOperation(OperationKind.DELETE, self.user_path(identifier), None, label or identifier)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

"""
Data types shared by the directory clients and the bulk workflows.

Directory entries are read-only snapshots of remote records; batched operations
and batch results describe one wire-level batch and are discarded once the
batch response has been processed.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any, Optional, Tuple


@dataclass(frozen=True)
class SignInIdentity:
    """One way of signing in to an account (user name, email address, ...)."""
    sign_in_type: str
    issuer: str
    issuer_assigned_id: str


@dataclass(frozen=True)
class DirectoryEntry:
    """A user record as returned by a directory listing."""
    identifier: str
    display_name: str
    identities: Tuple[SignInIdentity, ...] = ()

    def has_prefix(self, prefix: str) -> bool:
        return bool(self.display_name) and self.display_name.startswith(prefix)


class OperationKind(Enum):
    CREATE = 'create'
    DELETE = 'delete'
    UPDATE = 'update'


@dataclass
class BatchedOperation:
    """
    A single write destined for a batch request.

    Operations are built by the directory client (see
    ``DirectoryClientBase.create_operation``) so the target path matches the
    client's own addressing scheme.
    """
    kind: OperationKind
    target_path: str
    payload: Optional[Dict[str, Any]] = None
    label: str = ''


@dataclass
class OperationResult:
    """Outcome of one operation inside a submitted batch."""
    operation: BatchedOperation
    success: bool
    status: int = 0
    error: Optional[str] = None
    body: Optional[Dict[str, Any]] = None

    @property
    def created_identifier(self) -> Optional[str]:
        if self.success and self.body:
            return self.body.get('id')
        return None


@dataclass
class BatchResult:
    """Per-operation outcome of one batch submission."""
    results: List[OperationResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.success)

    def __len__(self) -> int:
        return len(self.results)


@dataclass
class PageRequest:
    """
    The pending request for the next page of a listing.

    A page-boundary hook may adjust ``delay_seconds`` or ``options`` before the
    request is issued.
    """
    continuation: str
    delay_seconds: float = 0.0
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DirectoryPage:
    """One page of a listing plus the request for the page after it, if any."""
    entries: List[DirectoryEntry]
    next_request: Optional[PageRequest] = None


@dataclass
class RunStats:
    """Counters for a single workflow run, passed explicitly to each callback."""
    started_at: float = field(default_factory=time.monotonic)
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    invalid: int = 0
    batches: int = 0
    failed_batches: int = 0
    matched: int = 0
    pages: int = 0
    duplicates: int = 0
    discarded: int = 0
    created: Dict[str, str] = field(default_factory=dict)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at

    def record_batch(self, result: BatchResult):
        """Fold one batch result into the counters."""
        self.batches += 1
        self.succeeded += result.succeeded
        self.failed += result.failed
        for op_result in result.results:
            identifier = op_result.created_identifier
            if identifier and op_result.operation.label:
                self.created[op_result.operation.label] = identifier

    def summary(self) -> Dict[str, Any]:
        return {
            'submitted': self.submitted,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'invalid': self.invalid,
            'matched': self.matched,
            'batches': self.batches,
            'failed_batches': self.failed_batches,
            'pages': self.pages,
            'duplicates': self.duplicates,
            'discarded': self.discarded,
            'runtime_seconds': round(self.elapsed_seconds, 2),
        }

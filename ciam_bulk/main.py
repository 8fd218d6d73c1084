"""
Operator entry point for CIAM Bulk Tools.

This module wires configuration, logging and the directory client to the bulk
workflows, maps failures to exit codes and provides both a one-shot command
line and an interactive shell.
"""

import sys
import json
import shlex
import signal
import logging
import argparse
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Any, List, Optional
from urllib.parse import urlparse

from ciam_bulk.config import load_config, ConfigurationError
from ciam_bulk.directory import create_client, DirectoryClientBase, DirectoryAPIError
from ciam_bulk.directory.base import TransportError, DirectoryAuthenticationError, EntryNotFoundError
from ciam_bulk.identities import IdentityFactory
from ciam_bulk.logging_setup import setup_logging
from ciam_bulk.models import RunStats
from ciam_bulk.snapshot import SnapshotStore, SnapshotError
from ciam_bulk.throttle import CancelToken, OperationCancelled, throttle_from_seconds
from ciam_bulk.workflows import (
    BulkCreateWorkflow, BulkDeleteWorkflow, DeleteMode, GroupMembershipWorkflow, ListAndSnapshotWorkflow
)

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_CANCELLED = 130


class BulkSyncError(Exception):
    """Raised for invalid operator input to a command."""
    pass


class BulkSyncApp:
    """
    Runs one bulk workflow at a time against the configured directory.

    Each command builds a fresh client and workflow, so commands share nothing
    but the snapshot files.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        self.config_path = config_path
        self.config = config
        self.cancel_token = CancelToken()

    def load(self):
        """Load configuration and configure logging (once)."""
        if self.config is None:
            self.config = load_config(self.config_path)
            setup_logging(self.config.get('logging', {}))

    @property
    def bulk(self) -> Dict[str, Any]:
        return self.config['bulk']

    def _create_client(self) -> DirectoryClientBase:
        return create_client(self.config['directory'], self.config.get('error_handling', {}))

    def _store(self) -> SnapshotStore:
        return SnapshotStore(
            directory=self.bulk['snapshot_dir'],
            name=self.bulk['snapshot_name'],
            shard_count=self.bulk['snapshot_shards']
        )

    def _factory(self) -> IdentityFactory:
        """
        Build the identity factory for a create run.

        Raises:
            ConfigurationError: If no initial password or issuer domain is configured
        """
        directory = self.config['directory']
        issuer = directory.get('issuer_domain') or urlparse(directory.get('server_url', '')).hostname or ''
        if not self.bulk.get('initial_password'):
            raise ConfigurationError(
                "bulk.initial_password (or CIAM_INITIAL_PASSWORD) is required to create identities"
            )
        if not issuer:
            raise ConfigurationError("directory.issuer_domain is required to create identities")
        return IdentityFactory(
            prefix=self.bulk['prefix'],
            issuer_domain=issuer,
            password=self.bulk['initial_password'],
            force_change_password=self.bulk['force_change_password']
        )

    def _page_settings(self) -> Dict[str, Any]:
        return {
            'page_size': self.config['directory'].get('page_size'),
            'page_delay_seconds': self.bulk['page_delay_seconds'],
            'cancel_token': self.cancel_token,
        }

    # Commands. Each one validates its input before authenticating, so a bad
    # request never opens a directory connection.

    def list_users(self, client: DirectoryClientBase) -> RunStats:
        client.authenticate()
        workflow = ListAndSnapshotWorkflow(
            client,
            self._store(),
            snapshot_every_pages=self.bulk['snapshot_every_pages'],
            **self._page_settings()
        )
        mapping = workflow.run()
        print(f"Listed {len(mapping)} users; snapshot written to {workflow.store.complete_path}")
        return workflow.last_stats

    def create(self, client: DirectoryClientBase, from_seq: int, to_seq: int,
               skip_existing: bool = False, snapshot_path: Optional[str] = None) -> RunStats:
        if from_seq < 1 or to_seq < from_seq:
            raise BulkSyncError(f"Invalid sequence range [{from_seq}, {to_seq})")
        factory = self._factory()
        store = self._store()
        existing = store.load_latest(snapshot_path) if skip_existing else None

        client.authenticate()
        workflow = BulkCreateWorkflow(
            client,
            factory,
            store=store,
            batch_size=self.bulk['batch_size'],
            throttle=throttle_from_seconds(self.bulk['create_delay_seconds']),
            cancel_token=self.cancel_token
        )
        stats = workflow.run(from_seq, to_seq, skip_existing=skip_existing,
                             snapshot_path=snapshot_path, existing=existing)
        print(f"Created {stats.succeeded} of {stats.submitted} identities "
              f"({stats.skipped} skipped, {stats.failed} failed)")
        return stats

    def add_to_groups(self, client: DirectoryClientBase, group_ids: List[str]) -> RunStats:
        if not group_ids:
            raise BulkSyncError("At least one group ID is required")
        client.authenticate()
        workflow = GroupMembershipWorkflow(
            client,
            self.bulk['prefix'],
            chunk_size=self.bulk['membership_chunk_size'],
            throttle=throttle_from_seconds(self.bulk['membership_delay_seconds']),
            **self._page_settings()
        )
        stats = workflow.run(group_ids)
        print(f"Added {stats.matched} identities to {len(group_ids)} groups ({stats.failed} failed additions)")
        return stats

    def delete(self, client: DirectoryClientBase, immediate: bool = False) -> RunStats:
        client.authenticate()
        workflow = BulkDeleteWorkflow(
            client,
            self.bulk['prefix'],
            mode=DeleteMode.IMMEDIATE if immediate else DeleteMode.BATCHED,
            batch_size=self.bulk['batch_size'],
            throttle=throttle_from_seconds(self.bulk['create_delay_seconds']),
            **self._page_settings()
        )
        stats = workflow.run()
        print(f"Deleted {stats.succeeded} of {stats.matched} test identities ({stats.failed} failed)")
        return stats

    def get_user(self, client: DirectoryClientBase, identifier: str) -> RunStats:
        """Print one user's profile fields as JSON."""
        identifier = identifier.strip()
        if not identifier:
            raise BulkSyncError("A user ID is required")
        client.authenticate()
        user = client.get_entry(identifier)
        print(json.dumps(user, indent=2))
        return RunStats(matched=1)

    def execute(self, command: str, **kwargs) -> int:
        """
        Run one command and translate its outcome into an exit code.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        started = datetime.now()
        client = None
        self.cancel_token = CancelToken()
        try:
            self.load()
            handler = getattr(self, command.replace('-', '_'))

            client = self._create_client()
            with self._interrupt_cancels():
                stats = handler(client, **kwargs)

            runtime = (datetime.now() - started).total_seconds()
            if stats.failed or stats.failed_batches or stats.invalid:
                logger.warning(f"{command} completed with failures in {runtime:.2f} seconds")
                return EXIT_PARTIAL_FAILURE
            logger.info(f"{command} completed successfully in {runtime:.2f} seconds")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION_ERROR
        except (SnapshotError, BulkSyncError) as e:
            logger.error(f"{command} aborted: {e}")
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION_ERROR
        except OperationCancelled as e:
            logger.warning(f"{command} cancelled: {e}")
            print(f"Cancelled: {e}", file=sys.stderr)
            return EXIT_CANCELLED
        except EntryNotFoundError as e:
            logger.error(f"{command}: {e}")
            print(f"Not found: {e}", file=sys.stderr)
            return EXIT_DIRECTORY_ERROR
        except (DirectoryAuthenticationError, TransportError, DirectoryAPIError) as e:
            logger.error(f"Directory error during {command}: {e}")
            print(f"Directory error: {e}", file=sys.stderr)
            return EXIT_DIRECTORY_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            print(f"Unexpected error: {e}", file=sys.stderr)
            return EXIT_UNEXPECTED_ERROR
        finally:
            if client is not None:
                client.close()

    @contextmanager
    def _interrupt_cancels(self):
        """Turn the first Ctrl-C into a cooperative cancellation of the running workflow."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def on_interrupt(signum, frame):
            self.cancel_token.cancel('interrupted by operator')
            signal.signal(signal.SIGINT, previous)

        previous = signal.signal(signal.SIGINT, on_interrupt)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous)

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration and directory connectivity without writing anything.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self.load()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {'status': 'fail', 'message': f'Configuration error: {e}'}
            health_status['status'] = 'unhealthy'
            return health_status

        client = None
        try:
            client = self._create_client()
            client.authenticate()
            client.list_entries(select=['id', 'displayName'], page_size=1)
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': f"{self.config['directory']['backend']} directory reachable"
            }
        except (DirectoryAPIError, TransportError) as e:
            health_status['checks']['directory'] = {'status': 'fail', 'message': f'Directory check failed: {e}'}
            health_status['status'] = 'unhealthy'
        finally:
            if client is not None:
                client.close()

        store = self._store()
        try:
            snapshot = store.load_complete()
            health_status['checks']['snapshot'] = {
                'status': 'pass',
                'message': f'{len(snapshot)} entries in {store.complete_path}'
            }
        except SnapshotError as e:
            health_status['checks']['snapshot'] = {'status': 'skip', 'message': str(e)}

        return health_status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ciam-bulk',
        description='Bulk maintenance of test identities in a user directory'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    subparsers = parser.add_subparsers(dest='command')

    subparsers.add_parser('list', help='List all users and write the snapshot')

    create_parser = subparsers.add_parser('create', help='Create test identities for a sequence range')
    create_parser.add_argument('from_seq', type=int, help='First sequence number')
    create_parser.add_argument('to_seq', type=int, help='One past the last sequence number')

    missing_parser = subparsers.add_parser('add-missing',
                                           help='Create test identities missing from the snapshot')
    missing_parser.add_argument('from_seq', type=int, help='First sequence number')
    missing_parser.add_argument('to_seq', type=int, help='One past the last sequence number')
    missing_parser.add_argument('--snapshot', help='Snapshot file (default: the complete snapshot)')

    groups_parser = subparsers.add_parser('add-to-groups', help='Add test identities to groups')
    groups_parser.add_argument('group_ids', help='Comma-delimited group IDs')

    delete_parser = subparsers.add_parser('delete', help='Delete all test identities')
    delete_parser.add_argument('--immediate', action='store_true',
                               help='Delete one entry per request instead of batching')

    user_parser = subparsers.add_parser('get-user', help='Show one user by ID as JSON')
    user_parser.add_argument('user_id', help='Object ID (or DN for LDAP directories)')

    subparsers.add_parser('health-check', help='Check configuration and directory connectivity')
    subparsers.add_parser('shell', help='Start the interactive shell')
    return parser


def dispatch(app: BulkSyncApp, args: argparse.Namespace) -> int:
    """Run the command described by parsed arguments."""
    if args.command == 'list':
        return app.execute('list-users')
    if args.command == 'create':
        return app.execute('create', from_seq=args.from_seq, to_seq=args.to_seq)
    if args.command == 'add-missing':
        return app.execute('create', from_seq=args.from_seq, to_seq=args.to_seq,
                           skip_existing=True, snapshot_path=args.snapshot)
    if args.command == 'add-to-groups':
        group_ids = [group_id.strip() for group_id in args.group_ids.split(',') if group_id.strip()]
        return app.execute('add-to-groups', group_ids=group_ids)
    if args.command == 'delete':
        return app.execute('delete', immediate=args.immediate)
    if args.command == 'get-user':
        return app.execute('get-user', identifier=args.user_id)
    if args.command == 'health-check':
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        return EXIT_SUCCESS if health_status['status'] == 'healthy' else EXIT_PARTIAL_FAILURE
    raise BulkSyncError(f"Unknown command: {args.command}")


SHELL_HELP = """Commands:
  list                          List all users and write the snapshot
  create FROM TO                Create test identities for sequence numbers FROM..TO-1
  add-missing FROM TO [--snapshot PATH]
                                Create only identities missing from the snapshot
  add-to-groups ID[,ID...]      Add all test identities to the given groups
  delete [--immediate]          Delete all test identities
  get-user ID                   Show one user as JSON
  health-check                  Check configuration and connectivity
  help                          Show this help
  exit                          Leave the shell"""


def run_shell(app: BulkSyncApp, parser: argparse.ArgumentParser, input_func=input) -> int:
    """
    Interactive loop reading one command per line.

    Returns:
        Exit code of the last command run
    """
    print("CIAM bulk shell. Type 'help' for commands.")
    last_code = EXIT_SUCCESS
    while True:
        try:
            line = input_func('ciam-bulk> ').strip()
        except EOFError:
            print()
            return last_code

        if not line:
            continue
        if line in ('exit', 'quit'):
            return last_code
        if line in ('help', '?'):
            print(SHELL_HELP)
            continue

        try:
            tokens = shlex.split(line)
            args = parser.parse_args(tokens)
        except ValueError as e:
            print(f"Could not parse command: {e}")
            continue
        except SystemExit:
            continue

        if args.command in (None, 'shell'):
            print(SHELL_HELP)
            continue
        last_code = dispatch(app, args)
        print(f"[exit code {last_code}]")


def main():
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args()

    app = BulkSyncApp(config_path=args.config)

    if args.command in (None, 'shell'):
        sys.exit(run_shell(app, parser))
    sys.exit(dispatch(app, args))


if __name__ == "__main__":
    main()

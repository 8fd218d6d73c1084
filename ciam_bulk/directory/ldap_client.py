"""
LDAP directory client.

Lets the bulk workflows run against an LDAP directory (OpenLDAP, 389-ds,
Active Directory lab instances). Listings use the simple paged results
control, whose cookie serves as the continuation token; LDAP has no batch
endpoint, so a batch is applied one operation at a time over the same
connection.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional, Sequence

from ldap3 import Server, Connection, BASE, SUBTREE, ALL, Tls, MODIFY_ADD, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException, LDAPCommunicationError, LDAPBindError
from ldap3.utils.dn import escape_rdn

from ciam_bulk.directory.base import (
    DirectoryClientBase, TransportError, DirectoryAuthenticationError, EntryNotFoundError
)
from ciam_bulk.models import (
    BatchedOperation, BatchResult, DirectoryEntry, DirectoryPage, OperationKind,
    OperationResult, PageRequest, SignInIdentity
)
from ciam_bulk.retry import retry_call, retry_settings, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
USER_ATTRIBUTES = ['displayName', 'cn', 'uid', 'mail']
DETAIL_ATTRIBUTES = USER_ATTRIBUTES + ['givenName', 'sn', 'title', 'o']
NO_SUCH_OBJECT = 32
USER_OBJECT_CLASSES = ['top', 'person', 'organizationalPerson', 'inetOrgPerson']


class LDAPDirectoryClient(DirectoryClientBase):
    """
    Directory client for LDAP servers.

    Entry identifiers are distinguished names. Membership references are the
    member DNs themselves, added to the group's ``member`` attribute (or the
    attribute named by ``group_attribute``).
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config['user_base_dn']
        self.user_filter = config.get('user_filter', '(objectClass=inetOrgPerson)')
        self.group_attribute = config.get('group_attribute', 'member')
        self.issuer = config.get('issuer_domain') or self.server_url

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.error_config = error_config or {}

        self.server = None
        self.connection = None
        self._connected = False

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("SSL certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
        return Tls(**tls_config)

    def _bind(self):
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not connection.open():
                raise LDAPCommunicationError(f"Failed to open connection: {connection.result}")
            if self.start_tls and not self.use_ssl and not connection.start_tls():
                raise LDAPCommunicationError(f"Failed to start TLS: {connection.result}")
            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")
        except LDAPException:
            try:
                connection.unbind()
            except LDAPException:
                pass
            raise
        return connection

    def authenticate(self) -> bool:
        """
        Connect and bind, retrying transient connection failures.

        Raises:
            DirectoryAuthenticationError: If the bind is rejected
            TransportError: If the server stays unreachable
        """
        if self._connected:
            return True

        self.server = Server(
            self.server_url,
            use_ssl=self.use_ssl,
            tls=self._create_tls_config(),
            get_info=ALL,
            connect_timeout=self.connection_timeout
        )

        try:
            self.connection = retry_call(
                self._bind,
                exceptions=(LDAPCommunicationError,),
                on_retry=create_retry_callback(f"LDAP connection to {self.server_url}"),
                **retry_settings(self.error_config)
            )
        except LDAPBindError as e:
            raise DirectoryAuthenticationError(f"LDAP bind failed for {self.bind_dn}: {e}")
        except MaxRetriesExceeded as e:
            raise TransportError(f"Failed to connect to LDAP server {self.server_url}: {e}")
        except LDAPException as e:
            raise TransportError(f"LDAP connection error: {e}")

        self._connected = True
        logger.info(f"Connected and bound to LDAP server {self.server_url}")
        return True

    def close(self):
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
        self._connected = False
        self.connection = None

    def _require_connection(self) -> Connection:
        if not self._connected:
            self.authenticate()
        return self.connection

    def _result_message(self) -> str:
        result = self.connection.result or {}
        return f"{result.get('description', 'error')}: {result.get('message', '')}".rstrip(': ')

    # Directory interface

    def users_path(self) -> str:
        return self.user_base_dn

    def user_path(self, identifier: str) -> str:
        return identifier

    def member_reference(self, identifier: str) -> str:
        return identifier

    def list_entries(self, select: Optional[List[str]] = None, filter: Optional[str] = None,
                     order_by: Optional[str] = None, page_size: Optional[int] = None) -> DirectoryPage:
        """
        Start a paged search below ``user_base_dn``.

        ``select`` names directory-neutral fields and is ignored; the client
        always reads the attributes it needs to build entries. ``filter`` is
        an LDAP filter ANDed with ``user_filter``. Server-side sorting is not
        requested, so ``order_by`` is ignored as well.
        """
        if order_by:
            logger.debug(f"Ignoring order_by={order_by!r} for LDAP listing")
        search_filter = f"(&{self.user_filter}{filter})" if filter else self.user_filter
        return self._search_page(search_filter, page_size or self.page_size, None)

    def get_next_page(self, request: PageRequest) -> DirectoryPage:
        cookie = bytes.fromhex(request.continuation)
        return self._search_page(request.options['filter'], request.options['page_size'], cookie)

    def _search_page(self, search_filter: str, page_size: int, cookie: Optional[bytes]) -> DirectoryPage:
        connection = self._require_connection()
        try:
            success = connection.search(
                search_base=self.user_base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=USER_ATTRIBUTES,
                paged_size=page_size,
                paged_cookie=cookie
            )
        except LDAPException as e:
            raise TransportError(f"Paged search failed: {e}")

        if not success and (connection.result or {}).get('result', 0) != 0:
            raise TransportError(f"Paged search failed: {self._result_message()}")

        entries = [self._parse_entry(entry) for entry in connection.entries]

        next_cookie = None
        controls = (connection.result or {}).get('controls') or {}
        paged_control = controls.get(PAGED_RESULTS_OID)
        if paged_control:
            next_cookie = paged_control.get('value', {}).get('cookie')

        next_request = None
        if next_cookie:
            next_request = PageRequest(
                continuation=next_cookie.hex(),
                options={'filter': search_filter, 'page_size': page_size}
            )
        return DirectoryPage(entries=entries, next_request=next_request)

    def get_entry(self, identifier: str) -> Dict[str, Any]:
        """
        Read the entry whose DN is ``identifier`` with a base-scope search.

        LDAP attributes are renamed to the Graph user fields they correspond
        to (``sn`` to ``surname``, ``title`` to ``jobTitle``, ``o`` to
        ``companyName``); absent attributes come back as None.
        """
        connection = self._require_connection()
        try:
            connection.search(
                search_base=identifier,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=DETAIL_ATTRIBUTES
            )
        except LDAPException as e:
            raise TransportError(f"Lookup of {identifier} failed: {e}")

        result_code = (connection.result or {}).get('result', 0)
        if result_code == NO_SUCH_OBJECT or (result_code == 0 and not connection.entries):
            raise EntryNotFoundError(f"User {identifier} not found in {self.name}")
        if result_code != 0:
            raise TransportError(f"Lookup of {identifier} failed: {self._result_message()}")

        entry = connection.entries[0]
        attributes = entry.entry_attributes_as_dict
        parsed = self._parse_entry(entry)
        return {
            'displayName': parsed.display_name or None,
            'givenName': _first_value(attributes, 'givenName') or None,
            'surname': _first_value(attributes, 'sn') or None,
            'jobTitle': _first_value(attributes, 'title') or None,
            'companyName': _first_value(attributes, 'o') or None,
            'id': parsed.identifier,
            'identities': [
                {
                    'signInType': identity.sign_in_type,
                    'issuer': identity.issuer,
                    'issuerAssignedId': identity.issuer_assigned_id,
                }
                for identity in parsed.identities
            ],
        }

    def _parse_entry(self, entry) -> DirectoryEntry:
        attributes = entry.entry_attributes_as_dict

        def first(name: str) -> str:
            return _first_value(attributes, name)

        identities = []
        if first('uid'):
            identities.append(SignInIdentity('userName', self.issuer, first('uid')))
        if first('mail'):
            identities.append(SignInIdentity('emailAddress', self.issuer, first('mail')))

        return DirectoryEntry(
            identifier=str(entry.entry_dn),
            display_name=first('displayName') or first('cn'),
            identities=tuple(identities)
        )

    def _user_attributes(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Map a Graph-shaped user body onto inetOrgPerson attributes."""
        display_name = payload['displayName']
        attributes = {'cn': display_name, 'sn': display_name, 'displayName': display_name}

        for identity in payload.get('identities', []):
            if identity.get('signInType') == 'userName':
                attributes['uid'] = identity['issuerAssignedId']
            elif identity.get('signInType') == 'emailAddress':
                attributes['mail'] = identity['issuerAssignedId']

        if payload.get('jobTitle'):
            attributes['title'] = payload['jobTitle']
        password = (payload.get('passwordProfile') or {}).get('password')
        if password:
            attributes['userPassword'] = password
        return attributes

    def _apply(self, connection: Connection, operation: BatchedOperation) -> OperationResult:
        if operation.kind == OperationKind.CREATE:
            display_name = operation.payload['displayName']
            dn = f"cn={escape_rdn(display_name)},{operation.target_path}"
            success = connection.add(dn, USER_OBJECT_CLASSES, self._user_attributes(operation.payload))
            body = {'id': dn} if success else None
        elif operation.kind == OperationKind.DELETE:
            success = connection.delete(operation.target_path)
            body = None
        else:
            changes = {name: [(MODIFY_REPLACE, [value])] for name, value in (operation.payload or {}).items()}
            success = connection.modify(operation.target_path, changes)
            body = None

        status = (connection.result or {}).get('result', 0)
        if success:
            return OperationResult(operation, True, status, body=body)
        return OperationResult(operation, False, status, self._result_message())

    def submit_batch(self, operations: Sequence[BatchedOperation]) -> BatchResult:
        connection = self._require_connection()
        results = []
        for operation in operations:
            try:
                results.append(self._apply(connection, operation))
            except LDAPCommunicationError as e:
                raise TransportError(f"LDAP connection lost during batch: {e}")
            except LDAPException as e:
                results.append(OperationResult(operation, False, 0, str(e)))
        return BatchResult(results)

    def update_group_members(self, group_id: str, member_refs: Sequence[str]):
        if not member_refs:
            return
        connection = self._require_connection()
        try:
            success = connection.modify(group_id, {self.group_attribute: [(MODIFY_ADD, list(member_refs))]})
        except LDAPException as e:
            raise TransportError(f"Failed to update members of {group_id}: {e}")
        if not success:
            raise TransportError(f"Failed to update members of {group_id}: {self._result_message()}")
        logger.debug(f"Added {len(member_refs)} members to group {group_id}")

    def delete_entry(self, identifier: str):
        connection = self._require_connection()
        try:
            success = connection.delete(identifier)
        except LDAPException as e:
            raise TransportError(f"Failed to delete {identifier}: {e}")
        if not success:
            raise TransportError(f"Failed to delete {identifier}: {self._result_message()}")
        logger.debug(f"Deleted entry {identifier}")


def _first_value(attributes: Dict[str, List[Any]], name: str) -> str:
    values = attributes.get(name) or []
    return str(values[0]) if values else ''

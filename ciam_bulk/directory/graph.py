"""
Microsoft Graph directory client.

Talks to the Graph REST API over ``http.client`` using an OAuth2
client-credentials token. Writes go through the ``$batch`` endpoint, listings
follow ``@odata.nextLink`` continuation URLs.
"""

import json
import ssl
import time
import logging
from http.client import HTTPSConnection, HTTPConnection, HTTPException
from typing import Dict, List, Any, Optional, Sequence, Union
from urllib.parse import urlparse, urlencode, quote

from ciam_bulk.directory.base import (
    DirectoryClientBase, TransportError, DirectoryAuthenticationError, EntryNotFoundError,
    DEFAULT_SELECT_FIELDS, USER_DETAIL_FIELDS
)
from ciam_bulk.models import (
    BatchedOperation, BatchResult, DirectoryEntry, DirectoryPage, OperationKind,
    OperationResult, PageRequest, SignInIdentity
)
from ciam_bulk.retry import (
    retry_call, retry_settings, create_retry_callback, RetryableError, MaxRetriesExceeded
)

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = 'https://graph.microsoft.com/v1.0'
GRAPH_SCOPE = 'https://graph.microsoft.com/.default'
TOKEN_URL_TEMPLATE = 'https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token'
MAX_BATCH_REQUESTS = 20

HTTP_METHODS = {
    OperationKind.CREATE: 'POST',
    OperationKind.DELETE: 'DELETE',
    OperationKind.UPDATE: 'PATCH',
}


class GraphDirectoryClient(DirectoryClientBase):
    """
    Directory client for Microsoft Graph (Entra ID / Azure AD B2C tenants).

    Configuration keys: ``tenant_id``, ``client_id``, ``client_secret`` and
    optionally ``base_url``, ``token_url``, ``scope``, ``verify_ssl``,
    ``ca_cert_file``, ``timeout``, ``page_size``.
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.tenant_id = config['tenant_id']
        self.client_id = config['client_id']
        self.client_secret = config['client_secret']
        self.base_url = config.get('base_url', GRAPH_BASE_URL).rstrip('/')
        self.token_url = config.get('token_url') or TOKEN_URL_TEMPLATE.format(tenant_id=self.tenant_id)
        self.scope = config.get('scope', GRAPH_SCOPE)
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)
        self.error_config = error_config or {}

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.access_token = None
        self._token_expires_at = 0.0

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()
        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            self.ssl_context.load_verify_locations(cafile=ca_cert_file)
            logger.info(f"Loaded CA certificates from {ca_cert_file}")

    def _open_connection(self, parsed) -> Union[HTTPSConnection, HTTPConnection]:
        if parsed.scheme == 'https':
            return HTTPSConnection(parsed.netloc, context=self.ssl_context, timeout=self.timeout)
        return HTTPConnection(parsed.netloc, timeout=self.timeout)

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create the connection to the Graph host."""
        if self.connection is None:
            self.connection = self._open_connection(self.parsed_url)
        return self.connection

    # Authentication

    def _fetch_token(self):
        """
        Request an access token with the client-credentials grant.

        Raises:
            RetryableError: For connection problems and server-side failures
            DirectoryAuthenticationError: If the token endpoint rejects the request
        """
        parsed_token_url = urlparse(self.token_url)
        token_body = urlencode({
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'scope': self.scope,
        })
        token_headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        token_conn = self._open_connection(parsed_token_url)
        try:
            logger.debug(f"Requesting access token for {self.name}")
            token_conn.request('POST', parsed_token_url.path or '/', token_body, token_headers)
            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (OSError, HTTPException) as e:
            raise RetryableError(f"Token request to {parsed_token_url.netloc} failed: {e}")
        finally:
            token_conn.close()

        if response.status >= 500 or response.status == 429:
            raise RetryableError(f"Token endpoint returned {response.status} {response.reason}")
        if response.status != 200:
            raise DirectoryAuthenticationError(
                f"Token request rejected for {self.name}: {response.status} {response.reason}",
                status_code=response.status
            )

        try:
            token_response = json.loads(response_data)
        except json.JSONDecodeError as e:
            raise DirectoryAuthenticationError(f"Invalid JSON in token response for {self.name}: {e}")

        access_token = token_response.get('access_token')
        if not access_token:
            raise DirectoryAuthenticationError(f"Token response missing access_token for {self.name}")

        self.access_token = access_token
        expires_in = int(token_response.get('expires_in', 3600))
        self._token_expires_at = time.time() + expires_in - 60
        logger.info(f"Obtained access token for {self.name}")

    def _is_token_valid(self) -> bool:
        return bool(self.access_token) and time.time() < self._token_expires_at

    def authenticate(self) -> bool:
        """
        Obtain an access token, retrying transient token-endpoint failures.

        Raises:
            DirectoryAuthenticationError: If no token could be obtained
        """
        if self._is_token_valid():
            logger.debug(f"Access token still valid for {self.name}")
            return True

        try:
            retry_call(
                self._fetch_token,
                exceptions=(RetryableError,),
                on_retry=create_retry_callback(f"Token request for {self.name}"),
                **retry_settings(self.error_config)
            )
        except MaxRetriesExceeded as e:
            raise DirectoryAuthenticationError(f"Could not obtain access token for {self.name}: {e}")
        return True

    # HTTP plumbing

    def _split_target(self, path: str) -> str:
        """Return the request target for a relative API path or an absolute continuation URL."""
        if path.startswith('http://') or path.startswith('https://'):
            parsed = urlparse(path)
            if parsed.netloc != self.host:
                raise TransportError(f"Refusing to follow link to foreign host {parsed.netloc}")
            return parsed.path + (f'?{parsed.query}' if parsed.query else '')
        return self.base_path + '/' + path.lstrip('/')

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                headers: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make an HTTP request to the Graph API.

        Args:
            method: HTTP method
            path: API path relative to ``base_url``, or an absolute continuation URL
            body: JSON request body
            headers: Additional headers

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            TransportError: If the request fails or returns an error status
        """
        target = self._split_target(path)
        request_body = json.dumps(body) if body is not None else None

        for auth_attempt in range(2):
            if not self._is_token_valid():
                self.authenticate()

            request_headers = {
                'Authorization': f'Bearer {self.access_token}',
                'Accept': 'application/json',
            }
            if request_body is not None:
                request_headers['Content-Type'] = 'application/json'
            if headers:
                request_headers.update(headers)

            try:
                conn = self._get_connection()
                logger.debug(f"Making {method} request to {self.host}{target}")
                conn.request(method, target, request_body, request_headers)
                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
            except (OSError, HTTPException) as e:
                self.close()
                raise TransportError(f"Connection error to {self.name}: {e}")

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401 and auth_attempt == 0:
                logger.info(f"401 received, refreshing access token for {self.name}")
                self.access_token = None
                continue

            if response.status >= 400:
                message = self._error_message(response_data) or response.reason
                if response.status == 401:
                    raise DirectoryAuthenticationError(
                        f"Authentication failed for {self.name}: {message}", status_code=401
                    )
                raise TransportError(f"HTTP {response.status}: {message}", status_code=response.status)

            if not response_data:
                return {}
            try:
                return json.loads(response_data)
            except json.JSONDecodeError as e:
                raise TransportError(f"Invalid JSON response from {self.name}: {e}")

        raise TransportError(f"Request failed for {self.name} after token refresh", status_code=401)

    @staticmethod
    def _error_message(response_data: str) -> str:
        try:
            error = json.loads(response_data).get('error', {})
        except (json.JSONDecodeError, AttributeError):
            return ''
        if isinstance(error, dict):
            code = error.get('code', '')
            message = error.get('message', '')
            return f"{code}: {message}" if code else message
        return str(error)

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    # Directory interface

    def users_path(self) -> str:
        return '/users'

    def user_path(self, identifier: str) -> str:
        return f'/users/{identifier}'

    def member_reference(self, identifier: str) -> str:
        return f'{self.base_url}/directoryObjects/{identifier}'

    def list_entries(self, select: Optional[List[str]] = None, filter: Optional[str] = None,
                     order_by: Optional[str] = None, page_size: Optional[int] = None) -> DirectoryPage:
        params = [('$select', ','.join(select or DEFAULT_SELECT_FIELDS))]
        if filter:
            params.append(('$filter', filter))
        if order_by:
            params.append(('$orderby', order_by))
        params.append(('$top', str(page_size or self.page_size)))

        query = urlencode(params, quote_via=quote, safe="$,'()")
        response = self.request('GET', f'{self.users_path()}?{query}')
        return self._parse_page(response)

    def get_next_page(self, request: PageRequest) -> DirectoryPage:
        response = self.request('GET', request.continuation, headers=request.options.get('headers'))
        return self._parse_page(response)

    def get_entry(self, identifier: str) -> Dict[str, Any]:
        query = urlencode([('$select', ','.join(USER_DETAIL_FIELDS))], quote_via=quote, safe="$,")
        try:
            return self.request('GET', f"{self.user_path(quote(identifier, safe=''))}?{query}")
        except TransportError as e:
            if e.status_code == 404:
                raise EntryNotFoundError(f"User {identifier} not found in {self.name}")
            raise

    def _parse_page(self, response: Dict[str, Any]) -> DirectoryPage:
        entries = [self._parse_entry(user) for user in response.get('value', [])]
        next_link = response.get('@odata.nextLink')
        next_request = PageRequest(continuation=next_link) if next_link else None
        return DirectoryPage(entries=entries, next_request=next_request)

    @staticmethod
    def _parse_entry(user: Dict[str, Any]) -> DirectoryEntry:
        identities = tuple(
            SignInIdentity(
                sign_in_type=identity.get('signInType', ''),
                issuer=identity.get('issuer', ''),
                issuer_assigned_id=identity.get('issuerAssignedId', '')
            )
            for identity in user.get('identities') or []
        )
        return DirectoryEntry(
            identifier=user.get('id', ''),
            display_name=user.get('displayName') or '',
            identities=identities
        )

    def _batch_request(self, request_id: str, operation: BatchedOperation) -> Dict[str, Any]:
        batch_request = {
            'id': request_id,
            'method': HTTP_METHODS[operation.kind],
            'url': operation.target_path,
        }
        if operation.payload is not None:
            batch_request['body'] = operation.payload
            batch_request['headers'] = {'Content-Type': 'application/json'}
        return batch_request

    def submit_batch(self, operations: Sequence[BatchedOperation]) -> BatchResult:
        """
        Submit up to 20 operations through the ``$batch`` endpoint.

        Graph returns 200 for the batch even when individual requests fail, so
        success is decided per response status.
        """
        if len(operations) > MAX_BATCH_REQUESTS:
            raise ValueError(f"Graph batches are limited to {MAX_BATCH_REQUESTS} requests, got {len(operations)}")
        if not operations:
            return BatchResult()

        requests_by_id = {str(i + 1): op for i, op in enumerate(operations)}
        payload = {
            'requests': [self._batch_request(request_id, op) for request_id, op in requests_by_id.items()]
        }

        response = self.request('POST', '/$batch', body=payload)
        responses = {str(item.get('id')): item for item in response.get('responses', [])}

        results = []
        for request_id, operation in requests_by_id.items():
            item = responses.get(request_id)
            if item is None:
                results.append(OperationResult(operation, False, 0, 'no response in batch'))
                continue
            status = int(item.get('status', 0))
            body = item.get('body') if isinstance(item.get('body'), dict) else None
            if status < 300:
                results.append(OperationResult(operation, True, status, body=body))
            else:
                error = self._error_message(json.dumps(body)) if body else f'HTTP {status}'
                results.append(OperationResult(operation, False, status, error or f'HTTP {status}', body))
                logger.debug(f"Batch request {request_id} ({operation.label}) failed: {status} {error}")

        return BatchResult(results)

    def update_group_members(self, group_id: str, member_refs: Sequence[str]):
        if not member_refs:
            return
        self.request('PATCH', f'/groups/{group_id}', body={'members@odata.bind': list(member_refs)})
        logger.debug(f"Added {len(member_refs)} members to group {group_id}")

    def delete_entry(self, identifier: str):
        self.request('DELETE', self.user_path(identifier))
        logger.debug(f"Deleted user {identifier}")

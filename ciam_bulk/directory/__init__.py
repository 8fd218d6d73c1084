"""
Directory backends.

Each backend implements ``DirectoryClientBase``; ``create_client`` picks one
from the ``directory.backend`` configuration value.
"""

import importlib
import logging
from typing import Dict, Any, Optional

from ciam_bulk.directory.base import (
    DirectoryClientBase, DirectoryAPIError, TransportError, DirectoryAuthenticationError, EntryNotFoundError
)

logger = logging.getLogger(__name__)

BACKENDS = {
    'graph': ('ciam_bulk.directory.graph', 'GraphDirectoryClient'),
    'ldap': ('ciam_bulk.directory.ldap_client', 'LDAPDirectoryClient'),
}


def create_client(directory_config: Dict[str, Any],
                  error_config: Optional[Dict[str, Any]] = None) -> DirectoryClientBase:
    """
    Instantiate the directory client named by ``directory_config['backend']``.

    Raises:
        DirectoryAPIError: If the backend is unknown or cannot be loaded
    """
    backend = directory_config.get('backend', 'graph').lower()
    if backend not in BACKENDS:
        raise DirectoryAPIError(f"Unknown directory backend '{backend}', expected one of {sorted(BACKENDS)}")

    module_name, class_name = BACKENDS[backend]
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise DirectoryAPIError(f"Failed to import directory backend {module_name}: {e}")

    client_class = getattr(module, class_name)
    logger.debug(f"Using {class_name} for backend '{backend}'")
    return client_class(directory_config, error_config)


__all__ = [
    'BACKENDS',
    'DirectoryClientBase',
    'DirectoryAPIError',
    'TransportError',
    'DirectoryAuthenticationError',
    'EntryNotFoundError',
    'create_client',
]

"""
Connection health check for pooled backend handles.
"""

import logging
from typing import Any

from querydispatch.connectors.base import Connector

_log = logging.getLogger(__name__)


def health_check(connector: Connector, handle: Any) -> bool:
    """Return True if *connector* can still talk through *handle*. Never raises."""
    try:
        return bool(connector.ping(handle))
    except Exception as e:
        _log.debug("Health check failed for %s: %s", connector.kind.value, e)
        return False

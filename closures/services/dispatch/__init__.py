"""
Adapter dispatch services.

Provides adapter dispatcher implementations and host selection.
"""

from closures.services.dispatch.base import (
    AdapterDispatcher,
    resolve_placement,
    select_host,
)
from closures.services.dispatch.http import HttpAdapterDispatcher
from closures.services.dispatch.local import LocalAdapterDispatcher
from closures.services.dispatch.mock import MockAdapterDispatcher, echo_handler

__all__ = [
    # Base
    "AdapterDispatcher",
    "resolve_placement",
    "select_host",
    # Implementations
    "HttpAdapterDispatcher",
    "LocalAdapterDispatcher",
    "MockAdapterDispatcher",
    "echo_handler",
]

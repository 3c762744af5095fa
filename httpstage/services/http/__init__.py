"""HTTP client service package.

Provides the shared connection pool every execution sends through.
"""

from httpstage.services.http.client import (
    ConnectionPoolService,
    PoolGeneration,
    PoolHandle,
    TlsContextProvider,
)
from httpstage.services.http.keepalive import (
    KeepAlivePolicy,
    Route,
    effective_keep_alive,
    parse_keep_alive,
)

__all__ = [
    "ConnectionPoolService",
    "KeepAlivePolicy",
    "PoolGeneration",
    "PoolHandle",
    "Route",
    "TlsContextProvider",
    "effective_keep_alive",
    "parse_keep_alive",
]

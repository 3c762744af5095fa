"""httpstage: templated HTTP request execution for record pipelines.

Renders a request per record from a template, sends it over a shared
connection pool and routes the record by outcome.
"""

from importlib.metadata import PackageNotFoundError, version as _pkg_version

from httpstage.config import PoolConfig, StageSettings, TemplateConfig, get_settings
from httpstage.errors import (
    ClientProtocolError,
    PoolUnavailableError,
    StageError,
    StreamingError,
    TemplateError,
    TransportError,
)
from httpstage.executor import HttpTemplateExecutor
from httpstage.lifecycle import HttpTemplateStage, lifespan_stage
from httpstage.records import (
    ATTR_ERROR_RESPONSE,
    ATTR_MESSAGE,
    ATTR_STATUS,
    ATTR_URL,
    Failure,
    Outcome,
    Record,
    Relationship,
    Success,
)
from httpstage.services.http import ConnectionPoolService
from httpstage.session import MemorySession, RecordSession
from httpstage.template import Template

__all__ = [
    # Stage
    "HttpTemplateStage",
    "HttpTemplateExecutor",
    "ConnectionPoolService",
    "Template",
    "lifespan_stage",
    # Config
    "PoolConfig",
    "StageSettings",
    "TemplateConfig",
    "get_settings",
    # Records
    "Record",
    "Relationship",
    "Success",
    "Failure",
    "Outcome",
    "RecordSession",
    "MemorySession",
    "ATTR_STATUS",
    "ATTR_MESSAGE",
    "ATTR_URL",
    "ATTR_ERROR_RESPONSE",
    # Errors
    "StageError",
    "TemplateError",
    "PoolUnavailableError",
    "TransportError",
    "ClientProtocolError",
    "StreamingError",
]

try:
    __version__ = _pkg_version("httpstage")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

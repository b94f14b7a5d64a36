"""
Providers
=========

Uniform streaming-query interface over AI coding-agent backends.
"""

from automode.providers.base import (
    ERROR_DURING_EXECUTION,
    ERROR_MAX_STRUCTURED_OUTPUT_RETRIES,
    ERROR_MAX_TURNS,
    AssistantText,
    BaseProvider,
    ExecuteOptions,
    ProviderConfig,
    ProviderEvent,
    ResultError,
    ResultSuccess,
    Thinking,
    ToolUse,
)
from automode.providers.gateway import (
    DEFAULT_MODEL,
    ProviderGateway,
    QueryResult,
    build_query_options,
    require_complete,
    resolve_model,
    simple_query,
)

__all__ = [
    "ERROR_DURING_EXECUTION",
    "ERROR_MAX_STRUCTURED_OUTPUT_RETRIES",
    "ERROR_MAX_TURNS",
    "AssistantText",
    "BaseProvider",
    "DEFAULT_MODEL",
    "ExecuteOptions",
    "ProviderConfig",
    "ProviderEvent",
    "ProviderGateway",
    "QueryResult",
    "ResultError",
    "ResultSuccess",
    "Thinking",
    "ToolUse",
    "build_query_options",
    "require_complete",
    "resolve_model",
    "simple_query",
]

"""
Provider Base
=============

Shared capability interface for AI coding-agent backends, the options a
query takes, and the tagged ProviderEvent variants every backend emits.

Each backend converts its own message shapes into ProviderEvents at this
boundary, so the orchestration loop never sees backend-specific fields.
A stream always ends with exactly one ResultSuccess or ResultError.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, ClassVar, Union

# ResultError subtypes
ERROR_MAX_TURNS = "error_max_turns"
ERROR_MAX_STRUCTURED_OUTPUT_RETRIES = "error_max_structured_output_retries"
ERROR_DURING_EXECUTION = "error_during_execution"


# =============================================================================
# Options
# =============================================================================

@dataclass
class ProviderConfig:
    """Alternate Anthropic-compatible endpoint to route a query through."""

    name: str
    base_url: str
    api_key: str | None = None
    # Where the key comes from: "inline" (api_key), "env" or "credentials"
    api_key_source: str = "inline"
    use_auth_token: bool = False
    timeout_ms: int | None = None
    # {"haiku": ..., "sonnet": ..., "opus": ...}
    model_mappings: dict[str, str] = field(default_factory=dict)
    disable_nonessential_traffic: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderConfig":
        return cls(
            name=data.get("name", "custom"),
            base_url=data["base_url"],
            api_key=data.get("api_key"),
            api_key_source=data.get("api_key_source", "inline"),
            use_auth_token=bool(data.get("use_auth_token", False)),
            timeout_ms=data.get("timeout_ms"),
            model_mappings=dict(data.get("model_mappings") or {}),
            disable_nonessential_traffic=bool(data.get("disable_nonessential_traffic", False)),
        )


@dataclass
class ExecuteOptions:
    """Everything a provider needs to run one agent query."""

    # Plain text, or a list of content blocks (text/image) for multi-part prompts
    prompt: str | list[dict[str, Any]]
    model: str
    cwd: str
    system_prompt: str | None = None
    # None lets the backend decide
    allowed_tools: list[str] | None = None
    max_turns: int = 20
    # JSON schema for structured output
    output_format: dict[str, Any] | None = None
    cancel_event: asyncio.Event | None = None

    # Routing hints
    ccr_enabled: bool = False
    provider_config: ProviderConfig | None = None
    # {"api_keys": {"anthropic": "...", "openai": "..."}}
    credentials: dict[str, Any] | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def prompt_text(self) -> str:
        """Flatten a multi-part prompt to its text blocks."""
        if isinstance(self.prompt, str):
            return self.prompt
        return "\n\n".join(
            block.get("text", "")
            for block in self.prompt
            if isinstance(block, dict) and block.get("type") == "text"
        )


# =============================================================================
# Events
# =============================================================================

@dataclass(frozen=True)
class AssistantText:
    type: ClassVar[str] = "assistant_text"
    text: str


@dataclass(frozen=True)
class ToolUse:
    type: ClassVar[str] = "tool_use"
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str | None = None


@dataclass(frozen=True)
class Thinking:
    type: ClassVar[str] = "thinking"
    text: str


@dataclass(frozen=True)
class ResultSuccess:
    type: ClassVar[str] = "result_success"
    result: str | None = None
    structured_output: Any = None
    num_turns: int | None = None


@dataclass(frozen=True)
class ResultError:
    type: ClassVar[str] = "result_error"
    subtype: str
    message: str = ""
    num_turns: int | None = None

    @property
    def is_max_turns(self) -> bool:
        return self.subtype == ERROR_MAX_TURNS

    @property
    def is_structured_output_exhausted(self) -> bool:
        return self.subtype == ERROR_MAX_STRUCTURED_OUTPUT_RETRIES


ProviderEvent = Union[AssistantText, ToolUse, Thinking, ResultSuccess, ResultError]
RESULT_EVENTS = (ResultSuccess, ResultError)


# =============================================================================
# Provider interface
# =============================================================================

class BaseProvider(ABC):
    """
    Abstract base class for agent backends (Claude Agent SDK, Codex CLI, ...).

    Providers receive bare model ids; prefix stripping happens in the gateway.
    """

    supported_features: ClassVar[frozenset[str]] = frozenset({"tools", "text"})

    @property
    @abstractmethod
    def name(self) -> str:
        """Short provider name used in logs and errors."""

    @abstractmethod
    def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        """
        Run one query and yield its events.

        Implementations are async generators. They must release any process
        or connection they hold when the consumer stops iterating early or
        the consuming task is cancelled.

        Raises:
            ProviderTransportError: If the backend cannot be reached
        """

    def supports_feature(self, feature: str) -> bool:
        return feature in self.supported_features

    def available_models(self) -> list[dict[str, Any]]:
        return []

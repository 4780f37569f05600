"""Shared data models for the agent.

Conversation records (Message, ToolCall, CompactedMemory, StreamEvent,
LLMTrace) are plain dataclasses. Anything that arrives from the tenant
backend or crosses a tool boundary (ToolResult, TenantConfig and friends)
is a pydantic model so snake_case payloads are normalised on validation.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system", "tool"]

SUMMARY_PREFIX = "[Memory Summary]"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


@dataclass
class ContentPart:
    """One segment of multimodal message content."""

    type: Literal["text", "image_url"]
    text: str | None = None
    image_url: str | None = None


@dataclass
class Message:
    """A single message in a session log."""

    role: Role
    content: str | list[ContentPart]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_summary(self) -> bool:
        """True for the synthetic message produced by compaction."""
        return (
            self.role == "system"
            and isinstance(self.content, str)
            and self.content.startswith(SUMMARY_PREFIX)
        )

    def text(self) -> str:
        """Flatten content to plain text (image parts are serialised as JSON)."""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(
            [
                {"type": p.type, "text": p.text}
                if p.type == "text"
                else {"type": p.type, "image_url": {"url": p.image_url}}
                for p in self.content
            ],
            ensure_ascii=False,
        )


@dataclass
class CompactedMemory:
    """Permanent record of one compaction.

    from_index/to_index are positions in the session's lifetime sequence of
    original messages (to_index exclusive).
    """

    summary: str
    message_count: int
    from_index: int
    to_index: int


@dataclass
class SessionContext:
    """Caller-supplied context for one execute() call."""

    session_id: str
    user_id: str = ""
    current_url: str = ""
    current_page: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    """A tool invocation parsed from model output."""

    name: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def dedup_key(self) -> str:
        """Canonical serialisation used for structural equality."""
        return json.dumps(
            {"name": self.name, "parameters": self.parameters},
            sort_keys=True,
            ensure_ascii=False,
            default=str,
        )


class ToolResult(BaseModel):
    """Outcome of one tool execution."""

    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)

    @classmethod
    def coerce(cls, value: Any) -> ToolResult:
        """Normalise whatever an executor returned into a ToolResult.

        Mappings carrying a "success" key are read as result envelopes;
        any other value counts as a successful result payload.
        """
        if isinstance(value, ToolResult):
            return value
        if isinstance(value, Mapping) and "success" in value:
            if "result" in value:
                payload = value["result"]
            else:
                extra = {k: v for k, v in value.items() if k not in ("success", "error")}
                payload = extra or None
            error = value.get("error")
            return cls(
                success=bool(value["success"]),
                result=payload,
                error=str(error) if error is not None else None,
            )
        return cls(success=True, result=value)

    def to_payload(self) -> dict[str, Any]:
        """Dict without unset optional fields."""
        return self.model_dump(exclude_none=True)


class ExecutionMode(StrEnum):
    PLATFORM = "PLATFORM"
    CUSTOMER = "CUSTOMER"


class ToolExecutionConfig(BaseModel):
    """Per-tenant execution settings for one tool.

    Unset timeout_ms/max_retries fall back to the Settings defaults.
    """

    model_config = ConfigDict(populate_by_name=True)

    is_enabled: bool = Field(True, validation_alias=AliasChoices("is_enabled", "isEnabled"))
    execution_mode: ExecutionMode = Field(
        ExecutionMode.PLATFORM,
        validation_alias=AliasChoices("execution_mode", "executionMode"),
    )
    customer_endpoint: str | None = Field(
        None, validation_alias=AliasChoices("customer_endpoint", "customerEndpoint")
    )
    timeout_ms: int | None = Field(None, validation_alias=AliasChoices("timeout_ms", "timeoutMs"))
    max_retries: int | None = Field(
        None, ge=0, validation_alias=AliasChoices("max_retries", "maxRetries")
    )
    provider_config: dict[str, Any] | None = Field(
        None, validation_alias=AliasChoices("provider_config", "providerConfig")
    )


class ToolRegistryItem(BaseModel):
    """A tool registered for the tenant."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    name: str
    display_name: str = Field("", validation_alias=AliasChoices("display_name", "displayName"))
    description: str = ""
    type: Literal["builtin", "custom", "mcp"] = "custom"
    args_schema: dict[str, Any] | None = Field(
        None, validation_alias=AliasChoices("args_schema", "schema")
    )
    config: dict[str, Any] | None = None
    execution: ToolExecutionConfig | None = Field(
        None, validation_alias=AliasChoices("execution", "tool_config")
    )


class Skill(BaseModel):
    """A tenant-defined prompt macro invoked as /name in a query."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    name: str
    display_name: str = Field("", validation_alias=AliasChoices("display_name", "displayName"))
    prompt: str
    description: str | None = None
    temperature: float | None = None
    max_tokens: int | None = Field(None, validation_alias=AliasChoices("max_tokens", "maxTokens"))
    enabled_tools: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("enabled_tools", "enabledTools")
    )


class TenantConfig(BaseModel):
    """Tenant configuration loaded once per agent."""

    model_config = ConfigDict(populate_by_name=True)

    system_prompt: str | None = Field(
        None, validation_alias=AliasChoices("system_prompt", "systemPrompt")
    )
    prompts: list[dict[str, Any]] = Field(default_factory=list)
    skills: list[Skill] = Field(default_factory=list)
    tools: list[ToolRegistryItem] = Field(
        default_factory=list, validation_alias=AliasChoices("tools", "tool_registry")
    )
    version: str = Field("1.0.0", validation_alias=AliasChoices("version", "config_version"))

    def find_tool(self, name: str) -> ToolRegistryItem | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


# ---------------------------------------------------------------------------
# Events and traces
# ---------------------------------------------------------------------------


class StreamEventType(StrEnum):
    TEXT_DELTA = "text_delta"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ERROR = "error"
    DONE = "done"


@dataclass
class StreamEvent:
    """A lifecycle event yielded by SupervisorAgent.execute()."""

    type: StreamEventType
    content: str = ""
    tool_call: ToolCall | None = None
    tool_result: ToolResult | None = None
    error: str = ""
    code: str = ""  # aborted, max_turns, busy, error (terminal errors only)

    @property
    def is_terminal(self) -> bool:
        return self.type in (StreamEventType.DONE, StreamEventType.ERROR)


@dataclass
class LLMTrace:
    """Record of one model call."""

    session_id: str
    user_id: str
    input: list[Message]
    output: str
    model: str
    provider: str
    status: Literal["SUCCESS", "ERROR", "TIMEOUT"]
    latency_ms: int
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

"""Agent core -- turn loop, streaming tool-call extraction, compacting memory.

SupervisorAgent drives the model; ToolCallExtractor splits its stream into
text and tool calls; MemoryStore keeps the per-session log and compacts it.
"""

from lens.agent.memory import MemoryStore, TokenEstimator
from lens.agent.models import (
    CompactedMemory,
    ContentPart,
    ExecutionMode,
    LLMTrace,
    Message,
    SessionContext,
    Skill,
    StreamEvent,
    StreamEventType,
    TenantConfig,
    ToolCall,
    ToolExecutionConfig,
    ToolRegistryItem,
    ToolResult,
)
from lens.agent.parser import ExtractResult, ToolCallExtractor, parse_tool_block
from lens.agent.protocols import (
    ActionHandler,
    Backend,
    ModelStream,
    PromptBuilder,
    Summarizer,
    TraceSink,
)
from lens.agent.skills import SkillMatch, SkillParser
from lens.agent.supervisor import SupervisorAgent, deduplicate_tool_calls
from lens.agent.tools import ManualTool, ToolExecutor

__all__ = [
    "SupervisorAgent",
    "MemoryStore",
    "TokenEstimator",
    "ToolCallExtractor",
    "ToolExecutor",
    "ManualTool",
    "SkillParser",
    "SkillMatch",
    "ExtractResult",
    "parse_tool_block",
    "deduplicate_tool_calls",
    "ActionHandler",
    "Backend",
    "ModelStream",
    "PromptBuilder",
    "Summarizer",
    "TraceSink",
    "CompactedMemory",
    "ContentPart",
    "ExecutionMode",
    "LLMTrace",
    "Message",
    "SessionContext",
    "Skill",
    "StreamEvent",
    "StreamEventType",
    "TenantConfig",
    "ToolCall",
    "ToolExecutionConfig",
    "ToolRegistryItem",
    "ToolResult",
]

"""Execution loop, tool executor and providers."""

from .cancellation import CancellationToken
from .loop import ExecutionLoop, format_tool_results
from .models import (
    CompletionResult,
    FinishReason,
    LoopResult,
    Message,
    ProviderMode,
    Role,
    SignalKind,
    StopReason,
    TaskSignal,
    ToolCall,
    ToolCallSource,
    ToolResult,
    ToolSpec,
)
from .providers import ExecutionProvider, create_provider
from .tool_calls import extract_inline_tool_calls, normalize_tool_calls
from .tools import TOOL_SPECS, ToolExecutor

__all__ = [
    "CancellationToken",
    "CompletionResult",
    "ExecutionLoop",
    "ExecutionProvider",
    "FinishReason",
    "LoopResult",
    "Message",
    "ProviderMode",
    "Role",
    "SignalKind",
    "StopReason",
    "TOOL_SPECS",
    "TaskSignal",
    "ToolCall",
    "ToolCallSource",
    "ToolExecutor",
    "ToolResult",
    "ToolSpec",
    "create_provider",
    "extract_inline_tool_calls",
    "format_tool_results",
    "normalize_tool_calls",
]

"""Pydantic models for the execution loop and its providers."""

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ProviderMode(str, Enum):
    """Which system prompt the provider frames the conversation with."""
    PLANNER = "planner"
    AGENT = "agent"


class ToolCallSource(str, Enum):
    STRUCTURED = "structured"  # Native tool_calls from the provider
    INLINE = "inline"          # Parsed out of the response text


class FinishReason(str, Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    ERROR = "error"
    LENGTH = "length"
    CANCELLED = "cancelled"


class StopReason(str, Enum):
    """Why an execution loop ended."""
    COMPLETED = "completed"              # Model answered without calling tools
    SIGNAL = "signal"                    # A terminal tool was called
    ITERATION_LIMIT = "iteration_limit"  # Soft stop at the cap
    CANCELLED = "cancelled"
    LIMIT_EXCEEDED = "limit_exceeded"
    ERROR = "error"


class SignalKind(str, Enum):
    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"


class ToolCall(BaseModel):
    """One tool invocation, whichever way the provider expressed it."""

    id: str = Field(default_factory=new_call_id)
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    source: ToolCallSource = ToolCallSource.STRUCTURED


class ToolResult(BaseModel):
    """What a tool call produced, as reported back to the model."""

    call_id: str
    name: str
    success: bool
    output: str = ""
    denied: bool = Field(default=False, description="Refused by the policy gate")


class ToolSpec(BaseModel):
    """Tool definition sent to the provider (JSON-schema parameters)."""

    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    role: Role
    content: str
    tool_calls: List[ToolCall] = Field(default_factory=list)


class CompletionResult(BaseModel):
    """A provider's answer to one turn."""

    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    finish_reason: FinishReason = FinishReason.STOP
    error: Optional[str] = None


class TaskSignal(BaseModel):
    """Raised by a terminal tool to end the loop with an outcome."""

    kind: SignalKind
    summary: str = ""
    reason: str = ""
    question: Optional[str] = None
    next_steps: List[str] = Field(default_factory=list)
    acceptance_results: List[Dict[str, Any]] = Field(default_factory=list)


class LoopResult(BaseModel):
    """Outcome of one execution loop.

    ``content`` holds the final answer or, for a cancelled or capped
    loop, whatever text had streamed so far.
    """

    content: str = ""
    messages: List[Message] = Field(default_factory=list)
    iterations: int = 0
    tool_calls_made: int = 0
    stop_reason: StopReason = StopReason.COMPLETED
    hit_iteration_limit: bool = False
    cancelled: bool = False
    signal: Optional[TaskSignal] = None
    error: Optional[str] = None
    limit_name: Optional[str] = None
    limit_current: Optional[float] = None
    limit_maximum: Optional[float] = None

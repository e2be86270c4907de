"""Execution provider interface and shared prompt rendering.

A provider turns a message history into one ``CompletionResult``. It
never raises for backend problems: errors come back as
``finish_reason=error`` and cancellation as ``finish_reason=cancelled``
with whatever text had streamed so far.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import structlog

from ..cancellation import CancellationToken
from ..models import CompletionResult, Message, ProviderMode, Role, ToolSpec

logger = structlog.get_logger("foreman.agent")

ChunkCallback = Callable[[str], Awaitable[None]]

SYSTEM_PROMPTS = {
    ProviderMode.PLANNER: (
        "You are a planning assistant for a software project. Read the "
        "task, inspect the code with the read-only tools if needed, and "
        "answer with a concrete step-by-step plan. Do not modify files."
    ),
    ProviderMode.AGENT: (
        "You are an autonomous software engineer working inside a git "
        "branch dedicated to one task. Use the tools to inspect and change "
        "the project. Every file and command operation is checked against "
        "the project's policy; denied operations come back as "
        "'Policy denied' results, so choose another approach instead of "
        "retrying them. Run one program per command, without shell "
        "operators. When every acceptance criterion is met, call "
        "task_complete. If you need a human decision, call task_blocked "
        "with a specific question. If the task cannot be done, call "
        "task_failed with the reason and next steps."
    ),
}


def render_prompt(
    messages: List[Message],
    tools: Optional[List[ToolSpec]],
    mode: ProviderMode,
) -> str:
    """Flatten a conversation into one prompt for text-only backends.

    Tools are described in the prompt and the model is asked to answer
    with fenced JSON payloads, which the loop parses as inline calls.
    """
    sections = [SYSTEM_PROMPTS[mode]]

    system = [m.content for m in messages if m.role == Role.SYSTEM]
    if system:
        sections.append("\n\n".join(system))

    if tools:
        lines = [
            "## Available Tools",
            "",
            "Use a tool by answering with a JSON block:",
            "",
            '```json\n{"tool": "tool_name", "arguments": {...}}\n```',
            "",
        ]
        for tool in tools:
            lines.append(f"### {tool.name}")
            lines.append(tool.description)
            lines.append(f"Parameters: {json.dumps(tool.parameters)}")
            lines.append("")
        sections.append("\n".join(lines).rstrip())

    conversation = []
    for message in messages:
        if message.role == Role.USER:
            conversation.append(f"User: {message.content}")
        elif message.role == Role.ASSISTANT:
            conversation.append(f"Assistant: {message.content}")
    if conversation:
        sections.append("\n\n".join(conversation))

    return "\n\n---\n\n".join(sections)


async def emit_chunk(on_chunk: Optional[ChunkCallback], text: str) -> None:
    """Deliver streamed text to the sink; sink errors are logged, never raised."""
    if on_chunk is None or not text:
        return
    try:
        await on_chunk(text)
    except (OSError, RuntimeError, ValueError) as e:
        logger.warning("stream_callback_error", error=str(e))


class ExecutionProvider(ABC):
    """A language-model backend the execution loop talks to."""

    name: str = "provider"

    def __init__(self):
        self.working_directory: Optional[Path] = None

    def set_working_directory(self, path: Path) -> None:
        self.working_directory = Path(path)

    @abstractmethod
    async def complete(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSpec]] = None,
        on_chunk: Optional[ChunkCallback] = None,
        mode: ProviderMode = ProviderMode.AGENT,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CompletionResult:
        """Answer one turn."""

    @abstractmethod
    async def cancel(self) -> None:
        """Abort whatever call is in flight."""

    async def close(self) -> None:
        """Release connections; a no-op for subprocess backends."""

"""Bounded execution loop: one conversation between a provider and the tools.

Each iteration asks the provider for a turn, normalizes its tool calls
(structured first, inline payloads otherwise), runs them through the
tool executor, and feeds the results back as a ``[TOOL RESULTS]``
message. The loop ends when the model answers without calling tools,
when a terminal tool is called, at the iteration cap (a soft stop),
on cancellation, on a provider error, or when a limit is exceeded.
"""

from typing import List, Optional

import structlog

from ..exceptions import LimitExceeded
from .cancellation import CancellationToken
from .models import (
    FinishReason,
    LoopResult,
    Message,
    ProviderMode,
    Role,
    StopReason,
    ToolResult,
)
from .providers.base import ChunkCallback, ExecutionProvider, emit_chunk
from .tool_calls import normalize_tool_calls
from .tools import ToolExecutor

logger = structlog.get_logger("foreman.agent")

DEFAULT_MAX_ITERATIONS = 5
TOOL_RESULTS_HEADER = "[TOOL RESULTS]"


def format_tool_results(results: List[ToolResult]) -> str:
    """Render tool results as the synthetic user message the model sees next."""
    parts = [TOOL_RESULTS_HEADER]
    for result in results:
        status = "DENIED" if result.denied else ("OK" if result.success else "ERROR")
        parts.append(f"[{result.name}] {status}\n{result.output}".rstrip())
    return "\n\n".join(parts)


class ExecutionLoop:
    """Runs one bounded provider/tool conversation.

    Args:
        provider: Backend that answers each turn.
        tools: Executor for the run (owns the policy and limit tracker).
        max_iterations: Provider turns before the soft stop.
        mode: System prompt flavor passed to the provider.
    """

    def __init__(
        self,
        provider: ExecutionProvider,
        tools: ToolExecutor,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        mode: ProviderMode = ProviderMode.AGENT,
    ):
        self.provider = provider
        self.tools = tools
        self.max_iterations = max(1, max_iterations)
        self.mode = mode

    async def run(
        self,
        messages: List[Message],
        *,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> LoopResult:
        token = cancel_token or CancellationToken()
        history = list(messages)
        streamed: List[str] = []
        last_content = ""
        calls_made = 0
        iteration = 0

        async def sink(text: str) -> None:
            streamed.append(text)
            await emit_chunk(on_chunk, text)

        def finish(stop_reason: StopReason, content: str, **extra) -> LoopResult:
            result = LoopResult(
                content=content,
                messages=history,
                iterations=iteration,
                tool_calls_made=calls_made,
                stop_reason=stop_reason,
                cancelled=stop_reason == StopReason.CANCELLED,
                hit_iteration_limit=stop_reason == StopReason.ITERATION_LIMIT,
                **extra,
            )
            logger.info(
                "execution_loop_finished",
                stop_reason=stop_reason.value,
                iterations=iteration,
                tool_calls=calls_made,
            )
            return result

        try:
            while iteration < self.max_iterations:
                if token.cancelled:
                    return finish(StopReason.CANCELLED, last_content)
                self.tools.limits.check_runtime()

                iteration += 1
                streamed.clear()
                logger.debug("execution_loop_iteration", iteration=iteration, messages=len(history))

                completion = await self.provider.complete(
                    history, self.tools.specs, sink, self.mode, token,
                )

                if completion.finish_reason == FinishReason.CANCELLED or token.cancelled:
                    partial = completion.content or "".join(streamed) or last_content
                    return finish(StopReason.CANCELLED, partial)

                if completion.finish_reason == FinishReason.ERROR:
                    logger.warning("provider_error", error=(completion.error or "")[:300])
                    partial = completion.content or "".join(streamed) or last_content
                    return finish(StopReason.ERROR, partial, error=completion.error or "Provider error")

                calls, cleaned = normalize_tool_calls(completion)
                last_content = cleaned

                if not calls:
                    history.append(Message(role=Role.ASSISTANT, content=completion.content))
                    return finish(StopReason.COMPLETED, cleaned)

                results: List[ToolResult] = []
                for call in calls:
                    if token.cancelled:
                        break
                    logger.info(
                        "tool_call",
                        tool=call.name,
                        source=call.source.value,
                        iteration=iteration,
                    )
                    results.append(await self.tools.execute(call, token))
                calls_made += len(results)

                names = ", ".join(call.name for call in calls)
                history.append(Message(
                    role=Role.ASSISTANT,
                    content=cleaned or f"[Executing tools: {names}]",
                    tool_calls=calls,
                ))
                history.append(Message(role=Role.USER, content=format_tool_results(results)))

                if token.cancelled:
                    return finish(StopReason.CANCELLED, last_content)
                if self.tools.signal is not None:
                    return finish(StopReason.SIGNAL, last_content, signal=self.tools.signal)

        except LimitExceeded as e:
            return finish(
                StopReason.LIMIT_EXCEEDED,
                last_content,
                error=e.message,
                limit_name=e.limit_name,
                limit_current=e.current,
                limit_maximum=e.maximum,
            )

        logger.warning("iteration_limit_reached", max_iterations=self.max_iterations)
        return finish(StopReason.ITERATION_LIMIT, last_content)

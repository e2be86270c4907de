"""Provider backed by a coding CLI in print mode.

Spawns ``<cli> -p --output-format stream-json --verbose`` with the
rendered prompt on stdin and reads NDJSON events from stdout:

    assistant            full message with text content blocks
    content_block_delta  incremental text (possibly wrapped in stream_event)
    result               final event; carries is_error and the result text

stderr is drained concurrently so a chatty CLI cannot deadlock the
pipe. The process is killed on timeout or cancellation and the text
streamed so far is returned.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from ...security import strip_control_chars
from ..cancellation import CancellationToken
from ..models import CompletionResult, FinishReason, Message, ProviderMode, ToolSpec
from .base import ChunkCallback, ExecutionProvider, emit_chunk, render_prompt

logger = structlog.get_logger("foreman.agent")

DEFAULT_TIMEOUT = 1800  # seconds


@dataclass
class _StreamState:
    """Mutable state for one CLI invocation."""

    process: Optional[asyncio.subprocess.Process] = None
    text_parts: List[str] = field(default_factory=list)
    saw_delta: bool = False
    final_event: Optional[dict] = None
    cancelled: bool = False

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


class CLIProvider(ExecutionProvider):
    """Runs each turn as one CLI subprocess.

    Args:
        cli_path: CLI executable.
        model: Model name passed with ``--model``.
        timeout: Seconds before the subprocess is killed.
    """

    name = "cli"

    def __init__(self, cli_path: str = "claude", model: str = "sonnet", timeout: int = DEFAULT_TIMEOUT):
        super().__init__()
        self.cli_path = cli_path
        self.model = model
        self.timeout = timeout
        self._active: Optional[_StreamState] = None

    def _build_command(self) -> List[str]:
        return [
            self.cli_path, "-p",
            "--output-format", "stream-json",
            "--verbose",
            "--model", self.model,
        ]

    async def complete(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSpec]] = None,
        on_chunk: Optional[ChunkCallback] = None,
        mode: ProviderMode = ProviderMode.AGENT,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CompletionResult:
        if cancel_token is not None and cancel_token.cancelled:
            return CompletionResult(finish_reason=FinishReason.CANCELLED, error="Cancelled before start")

        prompt = strip_control_chars(render_prompt(messages, tools, mode))
        cwd = str(self.working_directory) if self.working_directory else None
        start = time.monotonic()
        logger.info("cli_provider_start", prompt_length=len(prompt), model=self.model, cwd=cwd)

        state = _StreamState()
        self._active = state
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *self._build_command(),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                )
            except FileNotFoundError:
                logger.error("cli_not_found", cli_path=self.cli_path)
                return CompletionResult(
                    finish_reason=FinishReason.ERROR,
                    error=f"CLI not found: {self.cli_path}",
                )
            except OSError as e:
                logger.error("cli_spawn_error", error=str(e))
                return CompletionResult(finish_reason=FinishReason.ERROR, error=f"Failed to start CLI: {e}")

            state.process = process
            unregister = (
                cancel_token.add_callback(lambda: self._kill(state))
                if cancel_token else (lambda: None)
            )
            try:
                return await self._stream(process, state, prompt, on_chunk, start)
            finally:
                unregister()
        finally:
            self._active = None

    async def _stream(
        self,
        process: asyncio.subprocess.Process,
        state: _StreamState,
        prompt: str,
        on_chunk: Optional[ChunkCallback],
        start: float,
    ) -> CompletionResult:
        stderr_chunks: List[bytes] = []

        async def drain_stderr():
            data = await process.stderr.read()
            if data:
                stderr_chunks.append(data)

        stderr_task = asyncio.create_task(drain_stderr())

        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("cli_stdin_closed", error=str(e))

        try:
            await asyncio.wait_for(self._read_events(process, state, on_chunk), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._kill(state)
            await process.wait()
            stderr_task.cancel()
            elapsed = int((time.monotonic() - start) / 60)
            logger.warning("cli_provider_timeout", timeout=self.timeout, elapsed_min=elapsed)
            return CompletionResult(
                content=state.text,
                finish_reason=FinishReason.ERROR,
                error=f"CLI timed out after {elapsed} minutes",
            )

        if state.cancelled:
            await process.wait()
            stderr_task.cancel()
            logger.info("cli_provider_cancelled", partial_length=len(state.text))
            return CompletionResult(
                content=state.text,
                finish_reason=FinishReason.CANCELLED,
                error="Cancelled",
            )

        await process.wait()
        await stderr_task
        stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")

        final = state.final_event
        if final and final.get("is_error"):
            error = final.get("result") or stderr.strip() or "CLI reported an error"
            logger.warning("cli_provider_error", error=error[:300])
            return CompletionResult(content=state.text, finish_reason=FinishReason.ERROR, error=error)

        if final is None and process.returncode != 0:
            error = stderr.strip() or f"CLI exited with code {process.returncode}"
            logger.warning("cli_provider_failed", exit_code=process.returncode, stderr=stderr[:300])
            return CompletionResult(content=state.text, finish_reason=FinishReason.ERROR, error=error)

        text = state.text or (final or {}).get("result", "")
        if final:
            usage = final.get("usage", {})
            logger.info(
                "cli_provider_usage",
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
                duration_ms=final.get("duration_ms", 0),
                cost_usd=final.get("total_cost_usd", 0),
            )
        return CompletionResult(content=text, finish_reason=FinishReason.STOP)

    async def _read_events(
        self,
        process: asyncio.subprocess.Process,
        state: _StreamState,
        on_chunk: Optional[ChunkCallback],
    ) -> None:
        while True:
            line = await process.stdout.readline()
            if not line or state.cancelled:
                break
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(event, dict):
                continue

            etype = event.get("type")
            if etype == "stream_event":
                event = event.get("event") or {}
                etype = event.get("type")

            if etype == "content_block_delta":
                delta = event.get("delta") or {}
                text = delta.get("text", "")
                if text:
                    state.saw_delta = True
                    state.text_parts.append(text)
                    await emit_chunk(on_chunk, text)

            elif etype == "assistant":
                # Deltas already carried this text
                if state.saw_delta:
                    continue
                for block in (event.get("message") or {}).get("content", []):
                    if block.get("type") == "text" and block.get("text"):
                        state.text_parts.append(block["text"])
                        await emit_chunk(on_chunk, block["text"])

            elif etype == "result":
                state.final_event = event

    def _kill(self, state: _StreamState) -> None:
        state.cancelled = True
        process = state.process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def cancel(self) -> None:
        if self._active is not None:
            self._kill(self._active)
            logger.info("cli_provider_cancel_requested")

"""Executors: the opaque workers a dispatched job runs on.

An executor streams log lines and finishes with exactly one ResultEnvelope.
The dispatcher treats a stream that ends without an envelope as a failure.
"""

import asyncio
import json
import shlex
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from flowpatch.errors import FailureReason
from flowpatch.logging import get_logger
from flowpatch.models import JobType

logger = get_logger(__name__)

# Tool results longer than this are truncated in the log stream
MAX_TOOL_RESULT_CHARS = 2000


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING_APPROVAL = "pending_approval"


class ResultEnvelope(BaseModel):
    """Terminal result of one execution."""

    status: ResultStatus
    summary: str = ""
    artifacts: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    reason: FailureReason | None = None

    def to_result(self) -> dict[str, Any]:
        """JSON form stored on the job record."""
        return self.model_dump(mode="json", exclude_none=True)


ExecutorEvent = str | ResultEnvelope


class Executor(Protocol):
    def run(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        worktree_path: Path | None,
    ) -> AsyncIterator[ExecutorEvent]: ...


@dataclass
class ExecutionMetrics:
    """Metrics collected from an agent's stream-json output."""

    tool_call_count: int = 0
    turn_count: int = 0
    commands_run: list[str] = field(default_factory=list)
    total_cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0


def build_prompt(job_type: JobType, payload: dict[str, Any]) -> str:
    """Markdown task description handed to the agent on stdin."""
    parts = [f"# Job\n**Type**: {job_type.value}"]
    if payload.get("issue_number"):
        parts.append(f"**Issue Number**: #{payload['issue_number']}")
    if payload.get("labels"):
        parts.append(f"**Labels**: {', '.join(payload['labels'])}")

    if job_type == JobType.WORKER_RUN:
        parts.append(f"\n# Task\n**Title**: {payload.get('title', '')}\n")
        if payload.get("body"):
            parts.append(f"**Description**:\n{payload['body']}\n")
        if payload.get("approved"):
            parts.append(
                "\n# Approval\nA human approved continuing this task. "
                "Pick up the changes already present in the working tree."
            )
        parts.append("""
# Instructions

- Work only inside the current directory; it is a dedicated git worktree.
- Commit your changes on the current branch when you are done.
- If you need a decision from a human before continuing, ask with
  `AskUserQuestion` and stop.
""")
    else:
        details = {k: v for k, v in payload.items() if k != "type"}
        parts.append(f"\n# Payload\n```json\n{json.dumps(details, indent=2, default=str)}\n```")

    return "\n".join(parts)


class StreamJsonParser:
    """
    Turns agent ``stream-json`` lines into log lines and a result envelope.

    Lines that are not JSON are passed through as plain log text. A
    ``result`` message closes the run; ``AskUserQuestion`` tool calls turn a
    successful run into ``pending_approval``.
    """

    def __init__(self) -> None:
        self.metrics = ExecutionMetrics()
        self.final_text_parts: list[str] = []
        self.questions: list[dict[str, Any]] = []
        self.result: dict[str, Any] | None = None
        self.saw_json = False

    def feed(self, line: str) -> list[str]:
        line = line.rstrip("\r\n")
        if not line.strip():
            return []
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            return [line]
        if not isinstance(message, dict) or "type" not in message:
            return [line]
        return self.feed_message(message)

    def feed_message(self, message: dict[str, Any]) -> list[str]:
        """Handle one already-decoded stream-json message."""
        self.saw_json = True
        kind = message["type"]
        if kind == "system":
            return [f"[system] {message.get('subtype', 'init')}"]
        if kind == "assistant":
            return self._assistant(message)
        if kind == "user":
            return self._tool_results(message)
        if kind == "result":
            self.result = message
            usage = message.get("usage") or {}
            self.metrics.total_cost_usd = message.get("total_cost_usd") or 0.0
            self.metrics.turn_count = message.get("num_turns") or self.metrics.turn_count
            self.metrics.input_tokens = usage.get("input_tokens", 0) or 0
            self.metrics.output_tokens = usage.get("output_tokens", 0) or 0
            state = "error" if message.get("is_error") else "ok"
            return [f"[result] {state} turns={self.metrics.turn_count}"]
        return []

    def _assistant(self, message: dict[str, Any]) -> list[str]:
        self.metrics.turn_count += 1
        lines: list[str] = []
        for block in (message.get("message") or {}).get("content", []):
            if block.get("type") == "text":
                self.final_text_parts.append(block["text"])
                lines.append(block["text"])
            elif block.get("type") == "tool_use":
                self.metrics.tool_call_count += 1
                name = block.get("name", "?")
                tool_input = block.get("input") or {}
                if name == "Bash" and tool_input.get("command"):
                    self.metrics.commands_run.append(tool_input["command"])
                if name == "AskUserQuestion":
                    self.questions.extend(tool_input.get("questions", []))
                lines.append(f"[tool] {name} {json.dumps(tool_input, default=str)[:200]}")
        return lines

    def _tool_results(self, message: dict[str, Any]) -> list[str]:
        lines: list[str] = []
        for block in (message.get("message") or {}).get("content", []):
            if block.get("type") != "tool_result":
                continue
            content = block.get("content")
            if not isinstance(content, str):
                content = json.dumps(content, default=str)
            if len(content) > MAX_TOOL_RESULT_CHARS:
                content = content[:MAX_TOOL_RESULT_CHARS] + "\n... (truncated)"
            lines.append(f"[tool_result] {content}")
        return lines

    def envelope(self, exit_code: int = 0) -> ResultEnvelope:
        """Result of the run once the stream is exhausted."""
        artifacts: dict[str, Any] = {"metrics": self.metrics.__dict__.copy()}
        final_text = "\n".join(self.final_text_parts)

        if self.result is not None:
            summary = str(self.result.get("result") or final_text)
            if self.result.get("is_error"):
                return ResultEnvelope(
                    status=ResultStatus.FAILURE,
                    summary=summary,
                    artifacts=artifacts,
                    error=summary or "Agent reported an error",
                    reason=FailureReason.EXECUTOR_FAILURE,
                )
            if self.questions:
                artifacts["questions"] = self.questions
                return ResultEnvelope(
                    status=ResultStatus.PENDING_APPROVAL, summary=summary, artifacts=artifacts
                )
            if self.result.get("card_status"):
                artifacts["card_status"] = self.result["card_status"]
            return ResultEnvelope(status=ResultStatus.SUCCESS, summary=summary, artifacts=artifacts)

        if exit_code != 0:
            return ResultEnvelope(
                status=ResultStatus.FAILURE,
                summary=final_text,
                artifacts=artifacts,
                error=f"Agent exited with code {exit_code}",
                reason=FailureReason.EXECUTOR_FAILURE,
            )
        if self.saw_json:
            return ResultEnvelope(
                status=ResultStatus.FAILURE,
                summary=final_text,
                artifacts=artifacts,
                error="Agent stream ended without a result message",
                reason=FailureReason.NO_RESULT,
            )
        # Plain command that exited cleanly
        return ResultEnvelope(status=ResultStatus.SUCCESS, summary=final_text, artifacts=artifacts)


class CommandExecutor:
    """Runs an agent CLI as a subprocess inside the worktree.

    The command is split with shlex and executed without a shell; the prompt
    is written to stdin and stdout/stderr are streamed back line by line.
    """

    def __init__(self, command: str, env: Mapping[str, str] | None = None):
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("Executor command is empty")
        self.env = dict(env) if env is not None else None

    async def run(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        worktree_path: Path | None,
    ) -> AsyncIterator[ExecutorEvent]:
        prompt = build_prompt(job_type, payload)
        parser = StreamJsonParser()
        proc = await asyncio.create_subprocess_exec(
            *self.argv,
            cwd=str(worktree_path) if worktree_path else None,
            env=self.env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        logger.info(
            "executor.process_started",
            pid=proc.pid,
            command=self.argv[0],
            job_type=job_type.value,
            cwd=str(worktree_path) if worktree_path else None,
        )
        try:
            assert proc.stdin is not None and proc.stdout is not None
            try:
                proc.stdin.write(prompt.encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.warning("executor.stdin_closed", pid=proc.pid)
            finally:
                proc.stdin.close()

            async for raw in proc.stdout:
                for line in parser.feed(raw.decode("utf-8", errors="replace")):
                    yield line
            exit_code = await proc.wait()
        finally:
            if proc.returncode is None:
                logger.info("executor.process_killed", pid=proc.pid)
                proc.kill()
                await proc.wait()

        logger.info("executor.process_exited", pid=proc.pid, exit_code=exit_code)
        yield parser.envelope(exit_code)


LogSink = Callable[[str], None]
Handler = Callable[[dict[str, Any], Path | None, LogSink], Awaitable[ResultEnvelope]]


class HandlerExecutor:
    """Runs in-process async handlers registered per job type.

    Types without a handler go to ``fallback`` when one is set, and fail
    otherwise. Exceptions raised by a handler propagate to the dispatcher.
    """

    def __init__(
        self,
        handlers: Mapping[JobType, Handler] | None = None,
        fallback: Executor | None = None,
    ):
        self.handlers: dict[JobType, Handler] = dict(handlers or {})
        self.fallback = fallback

    def register(self, job_type: JobType, handler: Handler) -> None:
        self.handlers[job_type] = handler

    async def run(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        worktree_path: Path | None,
    ) -> AsyncIterator[ExecutorEvent]:
        handler = self.handlers.get(job_type)
        if handler is None:
            if self.fallback is not None:
                async for event in self.fallback.run(job_type, payload, worktree_path):
                    yield event
                return
            yield ResultEnvelope(
                status=ResultStatus.FAILURE,
                error=f"No handler registered for job type {job_type.value}",
                reason=FailureReason.EXECUTOR_FAILURE,
            )
            return

        lines: asyncio.Queue[str | None] = asyncio.Queue()
        task = asyncio.create_task(handler(payload, worktree_path, lines.put_nowait))
        task.add_done_callback(lambda _: lines.put_nowait(None))
        try:
            while (line := await lines.get()) is not None:
                yield line
            envelope = await task
        finally:
            if not task.done():
                task.cancel()
        yield envelope

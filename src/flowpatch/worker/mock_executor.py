"""Scenario-driven executor for tests and dry runs.

Scenarios are scripted agent ``stream-json`` messages fed through the same
parser the CommandExecutor uses, so the mock exercises the real result path.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator
from uuid import uuid4

from flowpatch.errors import ExecutorFailure
from flowpatch.logging import get_logger
from flowpatch.models import JobType
from flowpatch.worker.executor import ExecutorEvent, StreamJsonParser

logger = get_logger(__name__)


@dataclass
class MockScenario:
    """Defines what messages the mock executor should emit."""

    name: str
    # Messages emitted in order
    messages: list[dict[str, Any]] = field(default_factory=list)
    # Messages emitted instead once the payload is marked approved
    continuation_messages: list[dict[str, Any]] = field(default_factory=list)
    # Delay between messages (seconds)
    message_delay: float = 0.01
    # Block after the messages until cancelled
    hang: bool = False
    # Raise instead of finishing
    crash: bool = False


def _text(text: str) -> dict[str, Any]:
    return {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}


def _tool(name: str, tool_input: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "assistant",
        "message": {
            "content": [
                {
                    "type": "tool_use",
                    "id": f"toolu_{uuid4().hex[:12]}",
                    "name": name,
                    "input": tool_input,
                }
            ]
        },
    }


def _tool_result(content: str) -> dict[str, Any]:
    return {
        "type": "user",
        "message": {"content": [{"type": "tool_result", "content": content}]},
    }


def _result(is_error: bool, text: str, turns: int, **extra: Any) -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": "error" if is_error else "success",
        "session_id": f"mock_{uuid4().hex[:8]}",
        "is_error": is_error,
        "num_turns": turns,
        "result": text,
        "total_cost_usd": 0.01 * turns,
        "usage": {"input_tokens": 500 * turns, "output_tokens": 100 * turns},
        **extra,
    }


def create_success_scenario() -> MockScenario:
    """A run that explores, edits and completes."""
    return MockScenario(
        name="success",
        messages=[
            {"type": "system", "subtype": "init"},
            _text("Let me analyze the task and explore the codebase."),
            _tool("Glob", {"pattern": "**/*.py"}),
            _tool_result("src/main.py\ntests/test_main.py"),
            _text("Updated src/main.py and committed the change."),
            _result(False, "Implemented the requested change.", turns=2),
        ],
    )


def create_failure_scenario() -> MockScenario:
    """A run the agent reports as failed."""
    return MockScenario(
        name="failure",
        messages=[
            {"type": "system", "subtype": "init"},
            _tool("Bash", {"command": "git status"}),
            _tool_result("fatal: not a git repository"),
            _result(True, "Could not inspect the repository.", turns=1),
        ],
    )


def create_pending_approval_scenario() -> MockScenario:
    """A run that stops for a human decision and finishes once approved."""
    return MockScenario(
        name="pending_approval",
        messages=[
            {"type": "system", "subtype": "init"},
            _text("Two approaches are possible; asking before changing the schema."),
            _tool(
                "AskUserQuestion",
                {
                    "questions": [
                        {
                            "question": "Should the migration drop the legacy column?",
                            "options": ["yes", "no"],
                        }
                    ]
                },
            ),
            _result(False, "Waiting for a decision.", turns=1),
        ],
        continuation_messages=[
            {"type": "system", "subtype": "init"},
            _text("Continuing with the approved approach."),
            _result(False, "Applied the approved migration.", turns=1),
        ],
    )


def create_hang_scenario() -> MockScenario:
    """A run that never finishes on its own (timeouts, cancellation)."""
    return MockScenario(
        name="hang",
        messages=[{"type": "system", "subtype": "init"}, _text("Working...")],
        hang=True,
    )


def create_crash_scenario() -> MockScenario:
    return MockScenario(
        name="crash",
        messages=[{"type": "system", "subtype": "init"}],
        crash=True,
    )


# Registry of available scenarios
MOCK_SCENARIOS = {
    "success": create_success_scenario,
    "failure": create_failure_scenario,
    "error": create_failure_scenario,  # Alias
    "pending_approval": create_pending_approval_scenario,
    "needs_human": create_pending_approval_scenario,  # Alias
    "hang": create_hang_scenario,
    "crash": create_crash_scenario,
}


class MockExecutor:
    """
    Executor that replays a named scenario.

    ``scenario`` applies to every job; ``per_job_type`` overrides it for
    specific job types.
    """

    def __init__(
        self,
        scenario: str = "success",
        per_job_type: dict[JobType, str] | None = None,
        message_delay: float | None = None,
    ):
        if scenario not in MOCK_SCENARIOS:
            raise ValueError(f"Unknown mock scenario: {scenario}")
        self.scenario_name = scenario
        self.per_job_type = per_job_type or {}
        self.message_delay = message_delay
        self.runs: list[tuple[JobType, dict[str, Any], Path | None]] = []

    def _scenario(self, job_type: JobType) -> MockScenario:
        name = self.per_job_type.get(job_type, self.scenario_name)
        return MOCK_SCENARIOS[name]()

    async def run(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        worktree_path: Path | None,
    ) -> AsyncIterator[ExecutorEvent]:
        self.runs.append((job_type, payload, worktree_path))
        scenario = self._scenario(job_type)
        delay = scenario.message_delay if self.message_delay is None else self.message_delay
        messages = scenario.messages
        if payload.get("approved") and scenario.continuation_messages:
            messages = scenario.continuation_messages
        logger.debug("mock_executor.started", scenario=scenario.name, job_type=job_type.value)

        parser = StreamJsonParser()
        for message in messages:
            await asyncio.sleep(delay)
            for line in parser.feed_message(message):
                yield line

        if scenario.crash:
            raise ExecutorFailure(f"Mock scenario '{scenario.name}' crashed")
        if scenario.hang:
            await asyncio.Event().wait()

        yield parser.envelope()

"""Controllers for agent-dispatch CLI commands."""

from __future__ import annotations

import json
import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import Any

from agent_dispatch.agents import (
    AgentConfig,
    AgentInvocationError,
    AgentInvoker,
    AgentProvider,
    CredentialEntry,
    InMemoryProcessRegistry,
    InvocationRequest,
    RunState,
    StaticCredentialResolver,
)
from agent_dispatch.agents.models import OutputSink
from agent_dispatch.agents.streaming import AgentRun, RunOutcome
from agent_dispatch.config import Settings
from agent_dispatch.tasks import build_ready_set, resolve_columns, task_from_issue

logger = logging.getLogger(__name__)

EXIT_SIGINT = 130
EXIT_SIGTERM = 143


@dataclass(slots=True)
class InvokeCommand:
    """CLI input for a one-shot conversational invocation."""

    provider: str
    prompt: str
    model: str | None = None
    cli_command: str | None = None
    system_prompt: str | None = None
    cwd: Path | None = None
    project_id: str | None = None
    stream: bool = False


@dataclass(slots=True)
class RunCommand:
    """CLI input for a long-lived task execution."""

    provider: str
    task_file: Path
    model: str | None = None
    cli_command: str | None = None
    cwd: Path | None = None
    output_log: Path | None = None
    role: str | None = None
    timeout_seconds: float | None = None


@dataclass(slots=True)
class BoardCommand:
    """CLI input for kanban column resolution."""

    tasks_path: Path
    ready_ids: tuple[str, ...] = ()
    review_task_id: str | None = None


@dataclass(slots=True)
class CommandResult:
    """Lines to render and the process exit code."""

    lines: list[str]
    exit_code: int = 0


InvokerFactory = Callable[[Settings], AgentInvoker]


class AgentDispatchCliController:
    """Coordinates invoke, run and board CLI operations."""

    def __init__(self, invoker_factory: InvokerFactory | None = None) -> None:
        self._invoker_factory = invoker_factory or _default_invoker

    def invoke(
        self,
        command: InvokeCommand,
        *,
        on_chunk: OutputSink | None = None,
    ) -> CommandResult:
        settings = _load_settings()
        try:
            config = _agent_config(command.provider, command.model, command.cli_command)
            result = self._invoker_factory(settings).invoke(
                InvocationRequest(
                    config=config,
                    prompt=command.prompt,
                    system_prompt=command.system_prompt,
                    cwd=command.cwd,
                    project_id=command.project_id,
                    on_chunk=on_chunk if command.stream else None,
                ),
            )
        except AgentInvocationError as error:
            return CommandResult(lines=[_error_line(error)], exit_code=1)

        lines = [] if command.stream else [result.content]
        if result.truncated:
            lines.append("[output truncated]")
        return CommandResult(lines=lines)

    def run(self, command: RunCommand, *, on_output: OutputSink | None = None) -> CommandResult:
        """Run a task to completion; SIGINT/SIGTERM cancel the agent and set 130/143."""

        settings = _load_settings()
        invoker = self._invoker_factory(settings)
        try:
            config = _agent_config(command.provider, command.model, command.cli_command)
            run = invoker.run_long_lived(
                config,
                command.task_file,
                command.cwd or Path.cwd(),
                on_output=on_output,
                role=command.role,
                output_log_path=command.output_log,
                timeout_seconds=command.timeout_seconds,
            )
        except AgentInvocationError as error:
            return CommandResult(lines=[_error_line(error)], exit_code=1)

        with _cancel_on_signals(run) as received:
            outcome = run.wait()
        assert outcome is not None

        lines: list[str] = []
        if outcome.error is not None:
            lines.append(_error_line(outcome.error))
        lines.append(f"Run finished: state={outcome.state.value} exit_code={outcome.exit_code}")
        return CommandResult(lines=lines, exit_code=_exit_code(outcome, received))

    def board(self, command: BoardCommand) -> CommandResult:
        try:
            raw = json.loads(command.tasks_path.read_text("utf-8"))
            tasks = [task_from_issue(issue) for issue in _issue_list(raw)]
        except ValueError as error:
            logger.warning("Cannot load tasks from %s: %s", command.tasks_path, error)
            return CommandResult(lines=[f"Invalid tasks file: {error}"], exit_code=1)
        requested = set(command.ready_ids)
        ready_ids = build_ready_set(task for task in tasks if task.id in requested)
        columns = resolve_columns(tasks, ready_ids, review_task_id=command.review_task_id)
        return CommandResult(
            lines=[f"{task_id}\t{column.value}" for task_id, column in columns.items()],
        )


def _default_invoker(settings: Settings) -> AgentInvoker:
    return AgentInvoker(
        settings,
        process_registry=InMemoryProcessRegistry(),
        credential_resolver=_default_resolver(settings),
    )


def _default_resolver(settings: Settings) -> StaticCredentialResolver:
    """Resolver over AGENT_DISPATCH_*_API_KEYS; the plain env key is the fallback."""

    credentials = settings.credentials
    entries = {
        key_name: [
            CredentialEntry(id=f"{key_name.lower()}-{index}", value=value)
            for index, value in enumerate(values, start=1)
        ]
        for key_name, values in credentials.api_keys.items()
    }
    return StaticCredentialResolver(entries, cooldown_hours=credentials.limit_cooldown_hours)


def _load_settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


def _agent_config(provider: str, model: str | None, cli_command: str | None) -> AgentConfig:
    return AgentConfig(
        provider=AgentProvider.parse(provider),
        model=model or None,
        cli_command=cli_command or None,
    )


def _error_line(error: AgentInvocationError) -> str:
    return f"Agent error [{error.kind.value}]: {error}"


def _issue_list(raw: Any) -> list[dict[str, Any]]:
    if isinstance(raw, dict):
        raw = raw.get("issues", [])
    if not isinstance(raw, list):
        raise ValueError("Tasks file must hold a list of issues or an object with \"issues\".")
    return [item for item in raw if isinstance(item, dict)]


def _exit_code(outcome: RunOutcome, received: list[int]) -> int:
    if received:
        return EXIT_SIGINT if received[0] == signal.SIGINT else EXIT_SIGTERM
    if outcome.state is RunState.COMPLETED:
        return 0
    if outcome.exit_code is None:
        return 1
    if outcome.exit_code < 0:
        return 128 - outcome.exit_code
    return outcome.exit_code or 1


@contextmanager
def _cancel_on_signals(run: AgentRun) -> Iterator[list[int]]:
    received: list[int] = []

    def _handler(signum: int, _frame: FrameType | None) -> None:
        logger.info("Received signal %s; cancelling agent run", signum)
        received.append(signum)
        run.cancel()

    previous = {
        signum: signal.signal(signum, _handler) for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield received
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

"""Command-line agent providers: argument vectors, synchronous attempts, supervised runs."""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import tempfile
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from agent_dispatch.agents.base import StrategyContext
from agent_dispatch.agents.credentials import (
    PROVIDER_KEY_NAMES,
    ResolvedCredential,
    credential_env,
)
from agent_dispatch.agents.errors import (
    AgentConfigurationError,
    AgentInvocationError,
    AgentProviderError,
    AgentTimeoutError,
    FailureKind,
)
from agent_dispatch.agents.failure_classifier import (
    classification_for,
    error_from_raw,
    hint_for,
)
from agent_dispatch.agents.models import (
    AgentConfig,
    AgentProvider,
    ConversationTurn,
    InvocationRequest,
    InvocationResult,
    LongLivedRequest,
    OutputSink,
    RunState,
)
from agent_dispatch.agents.process import ManagedProcess, ProcessLifecycleManager
from agent_dispatch.agents.streaming import AgentRun, OutputAccumulator, RunOutcome

logger = logging.getLogger(__name__)

_PUMP_JOIN_SECONDS = 2.0
_FAILURE_TAIL_CHARS = 2000
_TEMPLATE_PLACEHOLDERS = ("prompt", "prompt_file", "task_file", "model")
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def build_conversation_prompt(
    prompt: str,
    system_prompt: str | None = None,
    history: Sequence[ConversationTurn] = (),
) -> str:
    """Flatten a conversation into one ``Human:``/``Assistant:`` transcript."""

    parts: list[str] = []
    if system_prompt:
        parts.append(system_prompt)
    for turn in history:
        speaker = "Human" if turn.role == "user" else "Assistant"
        parts.append(f"{speaker}: {turn.content}")
    parts.append(f"Human: {prompt}\n\nAssistant:")
    return "\n\n".join(parts)


def build_claude_invoke_args(binary: str, model: str | None, prompt: str) -> list[str]:
    args = [binary]
    if model:
        args.extend(["--model", model])
    args.extend(["--print", prompt])
    return args


def build_cursor_invoke_args(binary: str, model: str | None, prompt: str) -> list[str]:
    args = [binary, "-p"]
    if model:
        args.extend(["--model", model])
    args.extend(["--force", "--trust", "--mode", "ask", prompt])
    return args


def build_claude_task_args(binary: str, model: str | None, task_content: str) -> list[str]:
    args = [binary]
    if model:
        args.extend(["--model", model])
    args.extend(["--print", "--dangerously-skip-permissions", task_content])
    return args


def build_cursor_task_args(
    binary: str,
    model: str | None,
    task_content: str,
    cwd: Path,
) -> list[str]:
    args = [
        binary,
        "--print",
        "--output-format",
        "stream-json",
        "--stream-partial-output",
        "--workspace",
        str(cwd),
        "--trust",
    ]
    if model:
        args.extend(["--model", model])
    args.append(task_content)
    return args


def build_custom_args(
    cli_command: str | None,
    *,
    prompt: str,
    prompt_file: Path | None = None,
    model: str | None = None,
) -> list[str]:
    """Render a user command template into an argument vector.

    The template is split with POSIX shell-word rules and never executed by a
    shell. ``{prompt}``, ``{prompt_file}``/``{task_file}`` and ``{model}``
    each render as exactly one argument. Without any prompt placeholder the
    prompt is appended as the last argument.
    """

    stripped = (cli_command or "").strip()
    if not stripped:
        raise AgentConfigurationError(
            "Custom agent requires a CLI command (cliCommand).",
            provider=AgentProvider.CUSTOM.value,
        )

    try:
        template = shlex.split(stripped)
    except ValueError as error:
        raise AgentConfigurationError(
            f"Could not parse CLI command {stripped!r}: {error}",
            provider=AgentProvider.CUSTOM.value,
        ) from error
    if not template:
        raise AgentConfigurationError(
            "Custom CLI command rendered an empty command.",
            provider=AgentProvider.CUSTOM.value,
        )

    used: set[str] = set()
    for word in template:
        for name in _PLACEHOLDER_RE.findall(word):
            if name not in _TEMPLATE_PLACEHOLDERS:
                raise AgentConfigurationError(
                    f"Unsupported CLI command placeholder: {{{name}}}",
                    provider=AgentProvider.CUSTOM.value,
                )
            used.add(name)

    file_value = str(prompt_file) if prompt_file is not None else ""
    values = {
        "prompt": prompt,
        "prompt_file": file_value,
        "task_file": file_value,
        "model": model or "",
    }
    # Values are substituted per word, after splitting.
    argv = [_PLACEHOLDER_RE.sub(lambda match: values[match.group(1)], word) for word in template]

    if not used & {"prompt", "prompt_file", "task_file"}:
        argv.append(prompt)
    return argv


@dataclass(slots=True)
class CliAttemptResult:
    """Captured output of one synchronous command-line attempt."""

    stdout: str
    stderr: str
    exit_code: int
    truncated: bool = False


def run_cli_attempt(  # noqa: PLR0913
    processes: ProcessLifecycleManager,
    argv: Sequence[str],
    *,
    provider: AgentProvider,
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: float,
    max_output_bytes: int,
) -> CliAttemptResult:
    """Run ``argv`` to completion, reading stdout and stderr separately.

    Non-zero exits raise the classified error; expiry of ``timeout_seconds``
    kills the process group and raises ``AgentTimeoutError``.
    """

    process = _spawn(processes, argv, provider=provider, cwd=cwd, env=env, capture="separate")
    stdout = OutputAccumulator(max_output_bytes)
    stderr = OutputAccumulator(max_output_bytes)
    pumps = process.start_pumps(stdout.feed, stderr.feed)

    try:
        exit_code = process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        logger.warning(
            "%s agent pid=%s timed out after %.0fs",
            provider.value,
            process.pid,
            timeout_seconds,
        )
        process.kill()
        process.wait()
        _join(pumps)
        raise AgentTimeoutError(
            f"{provider.value} agent timed out after {timeout_seconds:.0f}s",
            provider=provider.value,
            hint=hint_for(FailureKind.TIMEOUT, provider.value),
            partial_output=stdout.text,
        ) from None
    _join(pumps)

    if exit_code != 0:
        raw = (
            stderr.text.strip()
            or stdout.text.strip()
            or f"{provider.value} agent exited with code {exit_code}"
        )
        logger.warning("%s agent exited with code %s", provider.value, exit_code)
        raise error_from_raw(provider=provider.value, raw=raw)

    return CliAttemptResult(
        stdout=stdout.text,
        stderr=stderr.text,
        exit_code=exit_code,
        truncated=stdout.truncated,
    )


class CommandLineStrategy:
    """Shared invoke/start behaviour for command-line agent providers."""

    provider: AgentProvider = AgentProvider.CUSTOM

    def __init__(self, context: StrategyContext) -> None:
        self._context = context

    @property
    def credential_key(self) -> str | None:
        return PROVIDER_KEY_NAMES.get(self.provider)

    def validate(self, config: AgentConfig) -> None:
        return None

    def invoke_args(self, config: AgentConfig, prompt: str, prompt_file: Path | None) -> list[str]:
        raise NotImplementedError

    def task_args(self, request: LongLivedRequest, task_content: str) -> list[str]:
        raise NotImplementedError

    def uses_prompt_file(self, config: AgentConfig) -> bool:
        return False

    def invoke(
        self,
        request: InvocationRequest,
        credential: ResolvedCredential | None,
    ) -> InvocationResult:
        prompt = build_conversation_prompt(request.prompt, request.system_prompt, request.history)
        cwd = request.cwd or Path.cwd()
        env = credential_env(os.environ, self.credential_key, credential)

        if self.uses_prompt_file(request.config):
            with tempfile.TemporaryDirectory(prefix="agent-dispatch-") as scratch:
                prompt_file = Path(scratch) / "prompt.txt"
                prompt_file.write_text(prompt, "utf-8")
                argv = self.invoke_args(request.config, prompt, prompt_file)
                result = self._attempt(argv, cwd=cwd, env=env)
        else:
            argv = self.invoke_args(request.config, prompt, None)
            result = self._attempt(argv, cwd=cwd, env=env)

        content = result.stdout.strip()
        _emit(request.on_chunk, content)
        return InvocationResult(
            content=content,
            provider=self.provider,
            truncated=result.truncated,
        )

    def start(self, request: LongLivedRequest, task_content: str, run: AgentRun) -> None:
        rotation = self._context.rotation
        argv = self.task_args(request, task_content)
        credential = rotation.acquire(request.project_id, self.credential_key)
        env = credential_env(os.environ, self.credential_key, credential)

        try:
            process = _spawn(
                self._context.processes,
                argv,
                provider=self.provider,
                cwd=request.cwd,
                env=env,
                output_log_path=request.output_log_path,
            )
        except AgentInvocationError as error:
            run.dispatched(None, _noop)
            run.deliver(f"[Agent error: {error}]\n")
            run.finish(RunOutcome(state=RunState.FAILED, exit_code=1, error=error))
            return

        run.dispatched(process.pid, process.kill)
        supervisor = threading.Thread(
            target=self._supervise,
            args=(process, request, run, credential),
            name=f"agent-supervisor-{process.pid}",
            daemon=True,
        )
        supervisor.start()

    def _attempt(self, argv: Sequence[str], *, cwd: Path, env: dict[str, str]) -> CliAttemptResult:
        settings = self._context.settings
        return run_cli_attempt(
            self._context.processes,
            argv,
            provider=self.provider,
            cwd=cwd,
            env=env,
            timeout_seconds=settings.timeout_seconds,
            max_output_bytes=settings.max_output_bytes,
        )

    def _supervise(
        self,
        process: ManagedProcess,
        request: LongLivedRequest,
        run: AgentRun,
        credential: ResolvedCredential | None,
    ) -> None:
        settings = self._context.settings
        timeout = request.timeout_seconds or settings.timeout_seconds
        accumulator = OutputAccumulator(settings.max_output_bytes, sink=run.deliver)
        pumps = process.start_pumps(accumulator.feed)

        timed_out = False
        try:
            exit_code = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(
                "%s agent pid=%s timed out after %.0fs",
                self.provider.value,
                process.pid,
                timeout,
            )
            process.kill()
            exit_code = process.wait()
        _join(pumps)

        outcome = self._outcome(
            exit_code=exit_code,
            timed_out=timed_out,
            killed=process.kill_requested,
            accumulator=accumulator,
            timeout=timeout,
        )
        logger.info(
            "%s agent pid=%s finished state=%s exit_code=%s",
            self.provider.value,
            process.pid,
            outcome.state.value,
            exit_code,
        )
        self._context.rotation.settle(
            request.project_id,
            self.credential_key,
            credential,
            outcome.error,
        )
        run.finish(outcome)

    def _outcome(
        self,
        *,
        exit_code: int,
        timed_out: bool,
        killed: bool,
        accumulator: OutputAccumulator,
        timeout: float,
    ) -> RunOutcome:
        content = accumulator.text
        truncated = accumulator.truncated
        if timed_out:
            error: AgentInvocationError = AgentTimeoutError(
                f"{self.provider.value} agent timed out after {timeout:.0f}s",
                provider=self.provider.value,
                hint=hint_for(FailureKind.TIMEOUT, self.provider.value),
                partial_output=content,
            )
            return RunOutcome(RunState.TIMED_OUT, exit_code, content, truncated, error)
        if killed:
            return RunOutcome(RunState.KILLED, exit_code, content, truncated)
        if exit_code == 0:
            return RunOutcome(RunState.COMPLETED, exit_code, content, truncated)

        tail = content[-_FAILURE_TAIL_CHARS:].strip()
        raw = f"{self.provider.value} agent exited with code {exit_code}"
        if tail:
            raw = f"{raw}: {tail}"
        error = error_from_raw(provider=self.provider.value, raw=raw, binary_rules=False)
        return RunOutcome(RunState.FAILED, exit_code, content, truncated, error)


class ClaudeCliStrategy(CommandLineStrategy):
    provider = AgentProvider.CLAUDE

    @property
    def credential_key(self) -> str | None:
        return None

    def invoke_args(self, config: AgentConfig, prompt: str, prompt_file: Path | None) -> list[str]:
        binary = self._context.settings.cli.claude_binary
        return build_claude_invoke_args(binary, config.model, prompt)

    def task_args(self, request: LongLivedRequest, task_content: str) -> list[str]:
        return build_claude_task_args(
            self._context.settings.cli.claude_binary,
            request.config.model,
            task_content,
        )


class CursorCliStrategy(CommandLineStrategy):
    provider = AgentProvider.CURSOR

    def invoke_args(self, config: AgentConfig, prompt: str, prompt_file: Path | None) -> list[str]:
        binary = self._context.settings.cli.cursor_binary
        return build_cursor_invoke_args(binary, config.model, prompt)

    def task_args(self, request: LongLivedRequest, task_content: str) -> list[str]:
        return build_cursor_task_args(
            self._context.settings.cli.cursor_binary,
            request.config.model,
            task_content,
            request.cwd,
        )


class CustomCliStrategy(CommandLineStrategy):
    """User-supplied command; never credential-rotated."""

    provider = AgentProvider.CUSTOM

    @property
    def credential_key(self) -> str | None:
        return None

    def validate(self, config: AgentConfig) -> None:
        if not (config.cli_command or "").strip():
            raise AgentConfigurationError(
                "Custom agent requires a CLI command (cliCommand).",
                provider=self.provider.value,
            )

    def uses_prompt_file(self, config: AgentConfig) -> bool:
        command = config.cli_command or ""
        return "{prompt_file}" in command or "{task_file}" in command

    def invoke_args(self, config: AgentConfig, prompt: str, prompt_file: Path | None) -> list[str]:
        return build_custom_args(
            config.cli_command,
            prompt=prompt,
            prompt_file=prompt_file,
            model=config.model,
        )

    def task_args(self, request: LongLivedRequest, task_content: str) -> list[str]:
        return build_custom_args(
            request.config.cli_command,
            prompt=task_content,
            prompt_file=request.task_file,
            model=request.config.model,
        )


def _spawn(  # noqa: PLR0913
    processes: ProcessLifecycleManager,
    argv: Sequence[str],
    *,
    provider: AgentProvider,
    cwd: Path,
    env: dict[str, str],
    output_log_path: Path | None = None,
    capture: Literal["merged", "separate"] = "merged",
) -> ManagedProcess:
    try:
        return processes.spawn(
            argv,
            cwd=cwd,
            env=env,
            output_log_path=output_log_path,
            capture=capture,
        )
    except FileNotFoundError as error:
        raw = f"{argv[0]}: command not found (ENOENT)"
        if not Path(cwd).is_dir():
            raw = f"Working directory does not exist: {cwd}"
            raise AgentConfigurationError(raw, provider=provider.value) from error
        classification = classification_for(FailureKind.BINARY_NOT_FOUND, provider.value)
        raise classification.to_error(raw, provider=provider.value) from error
    except OSError as error:
        raise AgentProviderError(
            f"{provider.value} agent failed to start: {error}",
            provider=provider.value,
        ) from error


def _join(pumps: Sequence[threading.Thread]) -> None:
    for pump in pumps:
        pump.join(timeout=_PUMP_JOIN_SECONDS)


def _emit(sink: OutputSink | None, content: str) -> None:
    if sink is not None and content:
        sink(content)


def _noop() -> None:
    return None

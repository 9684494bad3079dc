"""Request, result and configuration models for agent invocation."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from agent_dispatch.agents.errors import AgentConfigurationError


class AgentProvider(str, Enum):
    """Closed set of supported agent providers."""

    CLAUDE = "claude"
    CURSOR = "cursor"
    OPENAI = "openai"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: str | AgentProvider) -> AgentProvider:
        if isinstance(value, AgentProvider):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as error:
            raise AgentConfigurationError(
                f"Unsupported agent type: {value!r}. Use claude, cursor, openai, or custom.",
                provider=str(value),
            ) from error


class RunState(str, Enum):
    """Per-attempt execution state."""

    IDLE = "idle"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {RunState.COMPLETED, RunState.FAILED, RunState.TIMED_OUT, RunState.KILLED},
)

OutputSink = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class AgentConfig:
    """Provider selection for one invocation."""

    provider: AgentProvider
    model: str | None = None
    cli_command: str | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> AgentConfig:
        """Parse ``{type, model, cliCommand}`` project settings payloads."""

        provider_raw = raw.get("type", raw.get("provider"))
        if provider_raw is None:
            raise AgentConfigurationError("Agent config is missing a provider type.")
        model = raw.get("model")
        cli_command = raw.get("cliCommand", raw.get("cli_command"))
        return cls(
            provider=AgentProvider.parse(provider_raw),
            model=_optional_text(model),
            cli_command=_optional_text(cli_command),
        )


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    """One prior turn of a conversation."""

    role: Literal["user", "assistant"]
    content: str


@dataclass(slots=True)
class InvocationRequest:
    """Inputs for one short conversational invocation."""

    config: AgentConfig
    prompt: str
    system_prompt: str | None = None
    history: tuple[ConversationTurn, ...] = ()
    cwd: Path | None = None
    project_id: str | None = None
    on_chunk: OutputSink | None = None


@dataclass(slots=True)
class InvocationResult:
    """Completed invocation response."""

    content: str
    provider: AgentProvider
    truncated: bool = False


@dataclass(slots=True)
class LongLivedRequest:
    """Inputs for one long-running task execution."""

    config: AgentConfig
    task_file: Path
    cwd: Path
    role: str | None = None
    output_log_path: Path | None = None
    project_id: str | None = None
    timeout_seconds: float | None = None

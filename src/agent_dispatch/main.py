"""CLI entrypoint for agent-dispatch."""

import logging
from pathlib import Path

import rich_click as click

from agent_dispatch import __version__
from agent_dispatch.agents import AgentProvider
from agent_dispatch.controllers import (
    AgentDispatchCliController,
    BoardCommand,
    CommandResult,
    InvokeCommand,
    RunCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentDispatchCliController()
PROVIDER_CHOICES = [provider.value for provider in AgentProvider]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.version_option(version=__version__, prog_name="agent-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics written to stderr.",
)
def agent_dispatch(log_level: str) -> None:
    """Run coding agents and resolve kanban columns for tracker tasks."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_dispatch.command("invoke")
@click.option(
    "--provider",
    type=click.Choice(PROVIDER_CHOICES, case_sensitive=False),
    required=True,
    help="Agent provider.",
)
@click.option("--prompt", required=True, help="User prompt.")
@click.option("--model", default=None, help="Model identifier passed to the provider.")
@click.option(
    "--cli-command",
    default=None,
    help="Command template for the `custom` provider, e.g. `my-agent --ask {prompt}`.",
)
@click.option("--system-prompt", default=None, help="Optional system prompt.")
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory for command-line agents.",
)
@click.option(
    "--project-id",
    default=None,
    help="Project id; enables rotation over AGENT_DISPATCH_CURSOR_API_KEYS or `_OPENAI_API_KEYS`.",
)
@click.option("--stream/--no-stream", default=False, help="Print the response as it arrives.")
def invoke(  # noqa: PLR0913
    provider: str,
    prompt: str,
    model: str | None,
    cli_command: str | None,
    system_prompt: str | None,
    cwd: Path | None,
    project_id: str | None,
    stream: bool,
) -> None:
    """Send one conversational prompt to an agent and print the response."""

    result = CONTROLLER.invoke(
        InvokeCommand(
            provider=provider.lower(),
            prompt=prompt,
            model=model,
            cli_command=cli_command,
            system_prompt=system_prompt,
            cwd=cwd,
            project_id=project_id,
            stream=stream,
        ),
        on_chunk=_echo_chunk,
    )
    if stream:
        click.echo()
    _finish(result)


@agent_dispatch.command("run")
@click.option(
    "--provider",
    type=click.Choice(PROVIDER_CHOICES, case_sensitive=False),
    required=True,
    help="Agent provider.",
)
@click.option(
    "--task-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    required=True,
    help="File whose content becomes the agent's task.",
)
@click.option("--model", default=None, help="Model identifier passed to the provider.")
@click.option(
    "--cli-command",
    default=None,
    help="Command template for the `custom` provider; `{task_file}` is the task path.",
)
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory of the agent (defaults to the current directory).",
)
@click.option(
    "--output-log",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Append merged stdout/stderr of the agent to this file.",
)
@click.option("--role", default=None, help="Agent role, e.g. developer or reviewer.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Hard timeout in seconds (defaults to AGENT_DISPATCH_TIMEOUT_SECONDS).",
)
def run(  # noqa: PLR0913
    provider: str,
    task_file: Path,
    model: str | None,
    cli_command: str | None,
    cwd: Path | None,
    output_log: Path | None,
    role: str | None,
    timeout_seconds: float | None,
) -> None:
    """Run a long-lived agent task, streaming its output.

    The exit code mirrors the agent; SIGINT and SIGTERM cancel the run and
    exit with 130 and 143.
    """

    result = CONTROLLER.run(
        RunCommand(
            provider=provider.lower(),
            task_file=task_file,
            model=model,
            cli_command=cli_command,
            cwd=cwd,
            output_log=output_log,
            role=role,
            timeout_seconds=timeout_seconds,
        ),
        on_output=_echo_chunk,
    )
    _finish(result)


@agent_dispatch.command("board")
@click.option(
    "--tasks",
    "tasks_path",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    required=True,
    help="JSON file with tracker issues (a list or `{\"issues\": [...]}`).",
)
@click.option(
    "--ready",
    "ready_ids",
    multiple=True,
    help="Task id reported ready by the tracker. Can be repeated.",
)
@click.option("--review-task", default=None, help="Task currently under review.")
def board(tasks_path: Path, ready_ids: tuple[str, ...], review_task: str | None) -> None:
    """Print `id<TAB>column` for every tracker issue."""

    _finish(
        CONTROLLER.board(
            BoardCommand(
                tasks_path=tasks_path,
                ready_ids=ready_ids,
                review_task_id=review_task,
            ),
        ),
    )


def _echo_chunk(text: str) -> None:
    click.echo(text, nl=False)


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code:
        raise SystemExit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_dispatch()

from __future__ import annotations

import json
import os
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import allure
import httpx
import pytest

from agent_dispatch.agents import (
    AgentConfig,
    AgentConfigurationError,
    AgentInvoker,
    AgentProvider,
    AgentRateLimitError,
    CredentialEntry,
    ExitEvent,
    InvocationRequest,
    OutputEvent,
    RunOutcome,
    RunState,
    StaticCredentialResolver,
)
from agent_dispatch.agents.errors import AgentBinaryNotFoundError, FailureKind
from agent_dispatch.config import CliAgentSettings, Settings

pytestmark = [
    allure.epic("Agent Invocation"),
    allure.feature("Long-Lived Runs"),
]

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX launcher scripts")

STREAMING_AGENT_SCRIPT = """
import sys
import time

for step in ("planning", "editing", "done"):
    print(step, flush=True)
    time.sleep(0.05)
print("warning on stderr", file=sys.stderr, flush=True)
"""

SLOW_AGENT_SCRIPT = """
import time

print("thinking...", flush=True)
time.sleep(30)
"""

RATE_LIMITED_AGENT_SCRIPT = """
import sys

print("starting", flush=True)
print("Error: 429 Too Many Requests", flush=True)
raise SystemExit(2)
"""


class _Collector:
    """Thread-safe sink for on_output and on_exit callbacks."""

    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.outcomes: list[RunOutcome] = []
        self.first_chunk = threading.Event()
        self._lock = threading.Lock()

    def on_output(self, text: str) -> None:
        with self._lock:
            self.chunks.append(text)
        self.first_chunk.set()

    def on_exit(self, outcome: RunOutcome) -> None:
        with self._lock:
            self.outcomes.append(outcome)

    @property
    def text(self) -> str:
        with self._lock:
            return "".join(self.chunks)


@pytest.fixture()
def task_file(tmp_path: Path) -> Path:
    path = tmp_path / "task.md"
    path.write_text("Implement the login form.", "utf-8")
    return path


def test_unknown_provider_is_rejected(fast_settings: Settings, workdir: Path) -> None:
    invoker = AgentInvoker(fast_settings)

    with pytest.raises(AgentConfigurationError, match="Unsupported agent type"):
        invoker.invoke(
            InvocationRequest(
                config=AgentConfig("gemini"),  # type: ignore[arg-type]
                prompt="hi",
                cwd=workdir,
            ),
        )


def test_custom_without_command_fails_before_spawning(
    monkeypatch: pytest.MonkeyPatch,
    fast_settings: Settings,
    task_file: Path,
    workdir: Path,
) -> None:
    def _forbidden(*args: object, **kwargs: object) -> None:
        raise AssertionError("no process may be started")

    monkeypatch.setattr("agent_dispatch.agents.process.subprocess.Popen", _forbidden)
    invoker = AgentInvoker(fast_settings)

    with pytest.raises(AgentConfigurationError, match="requires a CLI command"):
        invoker.invoke(
            InvocationRequest(config=AgentConfig(AgentProvider.CUSTOM), prompt="hi", cwd=workdir),
        )
    with pytest.raises(AgentConfigurationError, match="requires a CLI command"):
        invoker.run_long_lived(
            AgentConfig(AgentProvider.CUSTOM, cli_command="  "),
            task_file,
            workdir,
        )


def test_unreadable_task_file_is_configuration_error(
    fast_settings: Settings,
    tmp_path: Path,
    workdir: Path,
) -> None:
    with pytest.raises(AgentConfigurationError, match="Could not read task file"):
        AgentInvoker(fast_settings).run_long_lived(
            AgentConfig(AgentProvider.CLAUDE),
            tmp_path / "missing.md",
            workdir,
        )


@posix_only
class TestCommandLineRuns:
    def test_streams_output_and_completes(
        self,
        agent_bin: Callable[..., Path],
        fast_settings: Settings,
        task_file: Path,
        workdir: Path,
    ) -> None:
        agent_bin("claude", STREAMING_AGENT_SCRIPT)
        collector = _Collector()

        run = AgentInvoker(fast_settings).run_long_lived(
            AgentConfig(AgentProvider.CLAUDE),
            task_file,
            workdir,
            on_output=collector.on_output,
            on_exit=collector.on_exit,
        )
        outcome = run.wait(timeout=15)

        assert outcome is not None
        assert outcome.state is RunState.COMPLETED
        assert outcome.exit_code == 0
        assert outcome.succeeded
        assert "planning\nediting\ndone\n" in collector.text
        assert "warning on stderr" in outcome.content
        assert collector.outcomes == [outcome]
        assert run.pid is not None

        events = list(run.events())
        assert isinstance(events[-1], ExitEvent)
        assert "".join(e.text for e in events if isinstance(e, OutputEvent)) == outcome.content

    def test_task_content_is_one_argument_after_permission_flag(
        self,
        agent_bin: Callable[..., Path],
        fast_settings: Settings,
        task_file: Path,
        workdir: Path,
    ) -> None:
        agent_bin("claude")

        run = AgentInvoker(fast_settings).run_long_lived(
            AgentConfig(AgentProvider.CLAUDE, model="claude-opus-4"),
            task_file,
            workdir,
        )
        outcome = run.wait(timeout=15)

        assert outcome is not None
        assert json.loads(outcome.content) == [
            "--model",
            "claude-opus-4",
            "--print",
            "--dangerously-skip-permissions",
            "Implement the login form.",
        ]

    def test_custom_command_receives_task_file_path(
        self,
        agent_bin: Callable[..., Path],
        fast_settings: Settings,
        task_file: Path,
        workdir: Path,
    ) -> None:
        agent_bin("runner")

        run = AgentInvoker(fast_settings).run_long_lived(
            AgentConfig(AgentProvider.CUSTOM, cli_command="runner --task {task_file}"),
            task_file,
            workdir,
        )
        outcome = run.wait(timeout=15)

        assert outcome is not None
        assert json.loads(outcome.content) == ["--task", str(task_file)]

    def test_output_log_receives_everything(
        self,
        agent_bin: Callable[..., Path],
        fast_settings: Settings,
        task_file: Path,
        tmp_path: Path,
        workdir: Path,
    ) -> None:
        agent_bin("claude", STREAMING_AGENT_SCRIPT)
        log_path = tmp_path / "logs" / "run.log"
        collector = _Collector()

        run = AgentInvoker(fast_settings).run_long_lived(
            AgentConfig(AgentProvider.CLAUDE),
            task_file,
            workdir,
            on_output=collector.on_output,
            output_log_path=log_path,
        )
        outcome = run.wait(timeout=15)

        assert outcome is not None
        assert outcome.state is RunState.COMPLETED
        logged = log_path.read_text("utf-8")
        assert "planning\nediting\ndone\n" in logged
        assert "warning on stderr" in logged
        assert collector.text == logged

    def test_cancel_kills_run_and_is_idempotent(
        self,
        agent_bin: Callable[..., Path],
        fast_settings: Settings,
        task_file: Path,
        workdir: Path,
    ) -> None:
        agent_bin("claude", SLOW_AGENT_SCRIPT)
        collector = _Collector()
        run = AgentInvoker(fast_settings).run_long_lived(
            AgentConfig(AgentProvider.CLAUDE),
            task_file,
            workdir,
            on_output=collector.on_output,
            on_exit=collector.on_exit,
        )
        assert collector.first_chunk.wait(10)

        run.cancel()
        run.cancel()
        outcome = run.wait(timeout=15)
        run.cancel()

        assert outcome is not None
        assert outcome.state is RunState.KILLED
        assert outcome.content == "thinking...\n"
        assert run.cancel_requested
        assert len(collector.outcomes) == 1

    def test_timeout_marks_run_timed_out_with_partial_output(
        self,
        agent_bin: Callable[..., Path],
        fast_settings: Settings,
        task_file: Path,
        workdir: Path,
    ) -> None:
        agent_bin("claude", SLOW_AGENT_SCRIPT)

        run = AgentInvoker(fast_settings).run_long_lived(
            AgentConfig(AgentProvider.CLAUDE),
            task_file,
            workdir,
            timeout_seconds=1.0,
        )
        outcome = run.wait(timeout=15)

        assert outcome is not None
        assert outcome.state is RunState.TIMED_OUT
        assert outcome.content == "thinking...\n"
        assert outcome.error is not None
        assert "timed out after 1s" in outcome.error.raw_message

    def test_missing_binary_resolves_failed_with_error_line(
        self,
        task_file: Path,
        workdir: Path,
    ) -> None:
        settings = Settings(cli=CliAgentSettings(cursor_binary="no-such-cursor-agent-xyz"))
        collector = _Collector()

        run = AgentInvoker(settings).run_long_lived(
            AgentConfig(AgentProvider.CURSOR),
            task_file,
            workdir,
            on_output=collector.on_output,
        )
        outcome = run.wait(timeout=5)

        assert outcome is not None
        assert outcome.state is RunState.FAILED
        assert outcome.exit_code == 1
        assert isinstance(outcome.error, AgentBinaryNotFoundError)
        assert collector.text.startswith("[Agent error: ")
        assert "cursor.com/install" in collector.text
        assert run.pid is None

    def test_failure_is_classified_from_output_tail(
        self,
        agent_bin: Callable[..., Path],
        fast_settings: Settings,
        task_file: Path,
        workdir: Path,
    ) -> None:
        agent_bin("claude", RATE_LIMITED_AGENT_SCRIPT)

        run = AgentInvoker(fast_settings).run_long_lived(
            AgentConfig(AgentProvider.CLAUDE),
            task_file,
            workdir,
        )
        outcome = run.wait(timeout=15)

        assert outcome is not None
        assert outcome.state is RunState.FAILED
        assert outcome.exit_code == 2
        assert isinstance(outcome.error, AgentRateLimitError)
        assert outcome.error.raw_message.startswith("claude agent exited with code 2: starting")

    def test_ordinary_tool_output_in_tail_is_not_misclassified(
        self,
        agent_bin: Callable[..., Path],
        fast_settings: Settings,
        task_file: Path,
        workdir: Path,
    ) -> None:
        agent_bin(
            "claude",
            "print('dev server listening on port 14290', flush=True)\n"
            "print(\"[Errno 2] No such file or directory: 'src/app.py'\", flush=True)\n"
            "raise SystemExit(1)\n",
        )

        outcome = AgentInvoker(fast_settings).run_long_lived(
            AgentConfig(AgentProvider.CLAUDE),
            task_file,
            workdir,
        ).wait(timeout=15)

        assert outcome is not None
        assert outcome.state is RunState.FAILED
        assert outcome.error is not None
        assert outcome.error.kind is FailureKind.PROVIDER
        assert outcome.error.hint is None

    def test_rate_limited_cursor_run_marks_key_for_next_run(
        self,
        agent_bin: Callable[..., Path],
        fast_settings: Settings,
        task_file: Path,
        workdir: Path,
    ) -> None:
        agent_bin(
            "agent",
            "import os\n"
            "key = os.environ['CURSOR_API_KEY']\n"
            "print('key=' + key)\n"
            "if key == 'key-one':\n"
            "    print('rate limit exceeded')\n"
            "    raise SystemExit(1)\n",
        )
        resolver = StaticCredentialResolver(
            {
                "CURSOR_API_KEY": [
                    CredentialEntry(id="k1", value="key-one"),
                    CredentialEntry(id="k2", value="key-two"),
                ],
            },
            environ={},
        )
        invoker = AgentInvoker(fast_settings, credential_resolver=resolver)
        config = AgentConfig(AgentProvider.CURSOR)

        first = invoker.run_long_lived(config, task_file, workdir, project_id="proj").wait(15)
        second = invoker.run_long_lived(config, task_file, workdir, project_id="proj").wait(15)

        assert first is not None
        assert first.state is RunState.FAILED
        assert "key=key-one" in first.content
        assert second is not None
        assert second.state is RunState.COMPLETED
        assert "key=key-two" in second.content


def _sse(*deltas: str) -> bytes:
    events = [{"choices": [{"delta": {"content": delta}}]} for delta in deltas]
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events)
    return (body + "data: [DONE]\n\n").encode("utf-8")


class _StallingStream(httpx.SyncByteStream):
    """Response body that sends one chunk, then stalls until released."""

    def __init__(self, first: bytes) -> None:
        self._first = first
        self.release = threading.Event()
        self.closed = threading.Event()

    def __iter__(self) -> Iterator[bytes]:
        yield self._first
        self.release.wait(10)
        yield b'data: {"choices": [{"delta": {"content": "late"}}]}\n\n'
        yield b"data: [DONE]\n\n"

    def close(self) -> None:
        self.closed.set()


@pytest.fixture()
def openai_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")


@pytest.mark.usefixtures("openai_key")
class TestHostedRuns:
    def test_streams_deltas_with_role_instructions(
        self,
        task_file: Path,
        workdir: Path,
    ) -> None:
        requests: list[httpx.Request] = []

        def _handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=_sse("Plan. ", "Code. ", "Done."))

        collector = _Collector()
        invoker = AgentInvoker(Settings(), http_transport=httpx.MockTransport(_handler))

        run = invoker.run_long_lived(
            AgentConfig(AgentProvider.OPENAI, model="gpt-4.1"),
            task_file,
            workdir,
            on_output=collector.on_output,
            role="reviewer",
        )
        outcome = run.wait(timeout=10)

        assert outcome is not None
        assert outcome.state is RunState.COMPLETED
        assert outcome.exit_code == 0
        assert outcome.content == "Plan. Code. Done."
        assert collector.chunks == ["Plan. ", "Code. ", "Done."]
        assert run.pid is None
        payload = json.loads(requests[0].content)
        assert payload["max_tokens"] == 16384
        assert payload["stream"] is True
        system, user = payload["messages"]
        assert "coding agent" in system["content"]
        assert "reviewer" in system["content"]
        assert str(workdir) in system["content"]
        assert user == {"role": "user", "content": "Implement the login form."}

    def test_cancel_stops_stream_and_resolves_killed(
        self,
        task_file: Path,
        workdir: Path,
    ) -> None:
        release = threading.Event()
        first_chunk = threading.Event()
        chunks: list[str] = []

        def _on_output(text: str) -> None:
            chunks.append(text)
            first_chunk.set()
            release.wait(5)

        def _handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=_sse("one ", "two ", "three"))

        invoker = AgentInvoker(Settings(), http_transport=httpx.MockTransport(_handler))
        run = invoker.run_long_lived(
            AgentConfig(AgentProvider.OPENAI),
            task_file,
            workdir,
            on_output=_on_output,
        )
        assert first_chunk.wait(5)

        run.cancel()
        release.set()
        outcome = run.wait(timeout=10)

        assert outcome is not None
        assert outcome.state is RunState.KILLED
        assert outcome.content == "one "
        assert chunks == ["one "]

    def test_provider_error_resolves_failed(
        self,
        task_file: Path,
        workdir: Path,
    ) -> None:
        def _handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

        invoker = AgentInvoker(Settings(), http_transport=httpx.MockTransport(_handler))

        outcome = invoker.run_long_lived(
            AgentConfig(AgentProvider.OPENAI),
            task_file,
            workdir,
        ).wait(timeout=10)

        assert outcome is not None
        assert outcome.state is RunState.FAILED
        assert outcome.exit_code == 1
        assert outcome.error is not None
        assert outcome.error.raw_message == "OpenAI API error (401): Incorrect API key provided"

    def test_cancel_during_stalled_read_closes_stream_and_resolves_killed(
        self,
        task_file: Path,
        workdir: Path,
    ) -> None:
        stream = _StallingStream(b'data: {"choices": [{"delta": {"content": "one "}}]}\n\n')
        collector = _Collector()

        def _handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=stream)

        invoker = AgentInvoker(
            Settings(timeout_seconds=30.0),
            http_transport=httpx.MockTransport(_handler),
        )
        run = invoker.run_long_lived(
            AgentConfig(AgentProvider.OPENAI),
            task_file,
            workdir,
            on_output=collector.on_output,
            on_exit=collector.on_exit,
        )
        try:
            assert collector.first_chunk.wait(5)

            run.cancel()
            outcome = run.wait(timeout=2)

            assert outcome is not None
            assert outcome.state is RunState.KILLED
            assert outcome.exit_code is None
            assert outcome.content == "one "
            assert stream.closed.is_set()
        finally:
            stream.release.set()
        assert collector.chunks == ["one "]

    def test_rate_limit_after_output_fails_without_rotating(
        self,
        task_file: Path,
        workdir: Path,
    ) -> None:
        requests: list[httpx.Request] = []

        def _handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            body = (
                b'data: {"choices": [{"delta": {"content": "half-done "}}]}\n\n'
                b'data: {"error": {"message": "Rate limit reached for requests"}}\n\n'
            )
            if request.headers["Authorization"] == "Bearer sk-two":
                body = _sse("fresh answer")
            return httpx.Response(200, content=body)

        resolver = StaticCredentialResolver(
            {
                "OPENAI_API_KEY": [
                    CredentialEntry(id="one", value="sk-one"),
                    CredentialEntry(id="two", value="sk-two"),
                ],
            },
            environ={},
        )
        collector = _Collector()
        invoker = AgentInvoker(
            Settings(),
            http_transport=httpx.MockTransport(_handler),
            credential_resolver=resolver,
        )

        outcome = invoker.run_long_lived(
            AgentConfig(AgentProvider.OPENAI),
            task_file,
            workdir,
            on_output=collector.on_output,
            project_id="proj",
        ).wait(timeout=10)

        assert outcome is not None
        assert outcome.state is RunState.FAILED
        assert isinstance(outcome.error, AgentRateLimitError)
        assert outcome.content == "half-done "
        assert collector.chunks == ["half-done "]
        assert len(requests) == 1


def test_agent_config_from_project_settings_payload() -> None:
    config = AgentConfig.from_dict(
        {"type": " Custom ", "model": "", "cliCommand": "my-agent --ask {prompt}"},
    )

    assert config == AgentConfig(
        AgentProvider.CUSTOM,
        model=None,
        cli_command="my-agent --ask {prompt}",
    )
    with pytest.raises(AgentConfigurationError, match="missing a provider type"):
        AgentConfig.from_dict({"model": "m"})

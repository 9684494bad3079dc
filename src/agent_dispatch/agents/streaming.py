"""Output accumulation, SSE decoding and the long-lived run handle."""

from __future__ import annotations

import json
import logging
import queue
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from agent_dispatch.agents.errors import AgentInvocationError
from agent_dispatch.agents.models import OutputSink, RunState

logger = logging.getLogger(__name__)

SSE_DONE = "[DONE]"


class OutputAccumulator:
    """Collects streamed text up to ``max_bytes`` while forwarding every chunk live."""

    def __init__(self, max_bytes: int, sink: OutputSink | None = None) -> None:
        self._max_bytes = max_bytes
        self._sink = sink
        self._parts: list[str] = []
        self._size = 0
        self._truncated = False
        self._lock = threading.Lock()

    @property
    def text(self) -> str:
        with self._lock:
            return "".join(self._parts)

    @property
    def truncated(self) -> bool:
        return self._truncated

    def feed(self, chunk: str) -> None:
        if not chunk:
            return
        with self._lock:
            self._append(chunk)
        if self._sink is not None:
            self._sink(chunk)

    def _append(self, chunk: str) -> None:
        if self._truncated:
            return
        encoded = chunk.encode("utf-8")
        remaining = self._max_bytes - self._size
        if len(encoded) <= remaining:
            self._parts.append(chunk)
            self._size += len(encoded)
            return
        kept = encoded[:remaining].decode("utf-8", errors="ignore")
        if kept:
            self._parts.append(kept)
            self._size += len(kept.encode("utf-8"))
        self._truncated = True
        logger.warning(
            "Agent output exceeded %d bytes; accumulated text truncated",
            self._max_bytes,
        )


def iter_sse_payloads(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    """Yield JSON payloads of ``data:`` lines until the ``[DONE]`` sentinel."""

    for line in lines:
        if not line or not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if not data:
            continue
        if data == SSE_DONE:
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON SSE data line: %.200s", data)
            continue
        if isinstance(payload, dict):
            yield payload


@dataclass(slots=True)
class RunOutcome:
    """Terminal result of one long-lived run."""

    state: RunState
    exit_code: int | None
    content: str = ""
    truncated: bool = False
    error: AgentInvocationError | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.COMPLETED


@dataclass(frozen=True, slots=True)
class OutputEvent:
    text: str


@dataclass(frozen=True, slots=True)
class ExitEvent:
    outcome: RunOutcome


RunEvent = OutputEvent | ExitEvent
ExitCallback = Callable[[RunOutcome], None]


class AgentRun:
    """Live handle of a long-lived agent run.

    Output reaches ``on_output`` and the ``events()`` stream in generation
    order; the outcome is delivered exactly once. ``cancel()`` may be called
    from any thread any number of times.
    """

    def __init__(
        self,
        *,
        on_output: OutputSink | None = None,
        on_exit: ExitCallback | None = None,
    ) -> None:
        self._on_output = on_output
        self._on_exit = on_exit
        self._lock = threading.Lock()
        self._state = RunState.IDLE
        self._pid: int | None = None
        self._canceller: Callable[[], None] | None = None
        self._cancel_requested = False
        self._outcome: RunOutcome | None = None
        self._done = threading.Event()
        self._events: queue.Queue[RunEvent] = queue.Queue()

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def outcome(self) -> RunOutcome | None:
        return self._outcome

    def dispatched(self, pid: int | None, canceller: Callable[[], None]) -> None:
        """Attach the started attempt; a cancel that arrived earlier is applied now."""

        with self._lock:
            self._pid = pid
            self._canceller = canceller
            if self._state is RunState.IDLE:
                self._state = RunState.DISPATCHED
            pending_cancel = self._cancel_requested
        if pending_cancel:
            canceller()

    def cancel(self) -> None:
        with self._lock:
            if self._cancel_requested or self._state.is_terminal:
                return
            self._cancel_requested = True
            canceller = self._canceller
        logger.info("Cancelling agent run pid=%s", self._pid)
        if canceller is not None:
            canceller()

    def deliver(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            if self._state.is_terminal:
                return
            if self._state in (RunState.IDLE, RunState.DISPATCHED):
                self._state = RunState.STREAMING
        self._events.put(OutputEvent(text))
        if self._on_output is not None:
            try:
                self._on_output(text)
            except Exception:  # noqa: BLE001
                logger.exception("on_output callback failed")

    def finish(self, outcome: RunOutcome) -> None:
        with self._lock:
            if self._outcome is not None:
                return
            self._outcome = outcome
            self._state = outcome.state
        self._events.put(ExitEvent(outcome))
        self._done.set()
        if self._on_exit is not None:
            try:
                self._on_exit(outcome)
            except Exception:  # noqa: BLE001
                logger.exception("on_exit callback failed")

    def wait(self, timeout: float | None = None) -> RunOutcome | None:
        """Block until the run resolves; None if ``timeout`` expires first."""

        if not self._done.wait(timeout):
            return None
        return self._outcome

    def events(self) -> Iterator[RunEvent]:
        """Single-consumer stream of output events terminated by one ``ExitEvent``."""

        while True:
            event = self._events.get()
            yield event
            if isinstance(event, ExitEvent):
                return

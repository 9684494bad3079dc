"""Detached agent subprocesses with process-group termination."""

from __future__ import annotations

import codecs
import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import IO, Literal, Protocol

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 5.0
_READ_CHUNK_BYTES = 65_536
_TAIL_POLL_SECONDS = 0.05

ChunkCallback = Callable[[str], None]


class ProcessRegistry(Protocol):
    """Crash-recovery bookkeeping of live agent processes."""

    def register(self, pid: int, *, process_group: bool) -> None:
        """Track a started agent process."""

    def unregister(self, pid: int, *, process_group: bool) -> None:
        """Stop tracking an exited agent process."""


class InMemoryProcessRegistry:
    """Thread-safe registry of agent pids and process groups.

    Process groups are stored by leader pid and signalled as ``-pid``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pids: set[int] = set()
        self._groups: set[int] = set()

    def register(self, pid: int, *, process_group: bool) -> None:
        with self._lock:
            if process_group and pid > 0:
                self._groups.add(pid)
            else:
                self._pids.add(pid)

    def unregister(self, pid: int, *, process_group: bool) -> None:
        with self._lock:
            if process_group and pid > 0:
                self._groups.discard(pid)
            else:
                self._pids.discard(pid)

    def tracked(self) -> tuple[frozenset[int], frozenset[int]]:
        """Return ``(pids, process_group_leaders)`` currently tracked."""

        with self._lock:
            return frozenset(self._pids), frozenset(self._groups)

    def kill_all(self, wait_seconds: float = 2.0) -> None:
        """Terminate every tracked process: graceful signal, wait, then force-kill survivors."""

        with self._lock:
            pids = list(self._pids)
            groups = list(self._groups)
            self._pids.clear()
            self._groups.clear()

        if not pids and not groups:
            return
        logger.info("Killing tracked agent processes: pids=%s groups=%s", pids, groups)
        for leader in groups:
            _signal_quietly(-leader, _graceful_signal())
        for pid in pids:
            _signal_quietly(pid, _graceful_signal())

        if wait_seconds > 0:
            time.sleep(wait_seconds)

        for leader in groups:
            if _pid_alive(leader):
                _signal_quietly(-leader, _forceful_signal())
        for pid in pids:
            if _pid_alive(pid):
                _signal_quietly(pid, _forceful_signal())


class ProcessHandle(Protocol):
    """Platform-specific termination of an agent and its descendants."""

    pid: int
    process_group: bool

    def terminate(self) -> None:
        """Send the graceful termination signal."""

    def force_kill(self) -> None:
        """Send the forceful termination signal."""

    def is_alive(self) -> bool:
        """Return True while any member of the process tree may still run."""


class PosixProcessGroupHandle:
    """Signals the whole POSIX process group led by the agent (``kill -TERM -pid``)."""

    process_group = True

    def __init__(self, process: subprocess.Popen[bytes]) -> None:
        self._process = process
        self.pid = process.pid

    def terminate(self) -> None:
        self._signal_group(signal.SIGTERM, fallback=self._process.terminate)

    def force_kill(self) -> None:
        self._signal_group(signal.SIGKILL, fallback=self._process.kill)

    def is_alive(self) -> bool:
        if self._process.poll() is None:
            return True
        try:
            os.killpg(self.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _signal_group(self, signum: int, *, fallback: Callable[[], None]) -> None:
        try:
            os.killpg(self.pid, signum)
        except ProcessLookupError:
            return
        except PermissionError:
            try:
                fallback()
            except OSError:
                return


class WindowsProcessTreeHandle:
    """Terminates a Windows process tree started with ``CREATE_NEW_PROCESS_GROUP``."""

    process_group = True

    def __init__(self, process: subprocess.Popen[bytes]) -> None:
        self._process = process
        self.pid = process.pid

    def terminate(self) -> None:
        try:
            self._process.send_signal(signal.CTRL_BREAK_EVENT)  # type: ignore[attr-defined]
        except OSError:
            return

    def force_kill(self) -> None:
        subprocess.run(  # noqa: S603
            ["taskkill", "/T", "/F", "/PID", str(self.pid)],  # noqa: S607
            check=False,
            capture_output=True,
        )

    def is_alive(self) -> bool:
        return self._process.poll() is None


class ManagedProcess:
    """One running agent process owned by :class:`ProcessLifecycleManager`."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        process: subprocess.Popen[bytes],
        handle: ProcessHandle,
        registry: ProcessRegistry | None,
        kill_grace_seconds: float,
        output_log_path: Path | None = None,
        log_offset: int = 0,
    ) -> None:
        self._process = process
        self._handle = handle
        self._registry = registry
        self._kill_grace_seconds = kill_grace_seconds
        self._output_log_path = output_log_path
        self._log_offset = log_offset
        self._lock = threading.Lock()
        self._kill_requested = False
        self._released = False
        self._escalation: threading.Timer | None = None

    @property
    def pid(self) -> int:
        return self._handle.pid

    @property
    def process_group(self) -> bool:
        return self._handle.process_group

    @property
    def kill_requested(self) -> bool:
        return self._kill_requested

    def poll(self) -> int | None:
        return self._process.poll()

    def kill(self) -> None:
        """Terminate the process group; safe to call repeatedly and from any thread.

        The forceful signal follows after the grace period on a timer thread,
        so the caller never waits for escalation.
        """

        with self._lock:
            if self._kill_requested:
                return
            self._kill_requested = True

        logger.info("Terminating agent process group pid=%s", self.pid)
        self._handle.terminate()
        timer = threading.Timer(self._kill_grace_seconds, self._escalate)
        timer.daemon = True
        self._escalation = timer
        timer.start()

    def wait(self, timeout: float | None = None) -> int:
        """Wait for exit and release the registry entry; raises ``subprocess.TimeoutExpired``."""

        returncode = self._process.wait(timeout=timeout)
        self._release()
        return returncode

    def start_pumps(
        self,
        on_stdout: ChunkCallback,
        on_stderr: ChunkCallback | None = None,
    ) -> list[threading.Thread]:
        """Start reader threads delivering decoded output chunks in arrival order."""

        threads: list[threading.Thread] = []
        if self._output_log_path is not None:
            threads.append(
                _start_thread(
                    f"agent-log-tail-{self.pid}",
                    self._tail_log,
                    on_stdout,
                ),
            )
        else:
            if self._process.stdout is not None:
                threads.append(
                    _start_thread(
                        f"agent-stdout-{self.pid}",
                        _pump_pipe,
                        self._process.stdout,
                        on_stdout,
                    ),
                )
            if self._process.stderr is not None:
                threads.append(
                    _start_thread(
                        f"agent-stderr-{self.pid}",
                        _pump_pipe,
                        self._process.stderr,
                        on_stderr or on_stdout,
                    ),
                )
        return threads

    def _escalate(self) -> None:
        if not self._handle.is_alive():
            return
        logger.warning(
            "Agent process group pid=%s still alive after %.1fs; sending forceful kill",
            self.pid,
            self._kill_grace_seconds,
        )
        self._handle.force_kill()

    def _release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        if self._registry is not None:
            self._registry.unregister(self.pid, process_group=self.process_group)

    def _tail_log(self, on_chunk: ChunkCallback) -> None:
        assert self._output_log_path is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        with self._output_log_path.open("rb") as handle:
            handle.seek(self._log_offset)
            while True:
                data = handle.read(_READ_CHUNK_BYTES)
                if data:
                    text = decoder.decode(data)
                    if text:
                        on_chunk(text)
                    continue
                if self._process.poll() is not None:
                    remainder = handle.read()
                    text = decoder.decode(remainder, final=True)
                    if text:
                        on_chunk(text)
                    return
                time.sleep(_TAIL_POLL_SECONDS)


class ProcessLifecycleManager:
    """Spawns command-line agents detached, as leaders of their own process group."""

    def __init__(
        self,
        registry: ProcessRegistry | None = None,
        *,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        os_name: str | None = None,
    ) -> None:
        self._registry = registry
        self._kill_grace_seconds = kill_grace_seconds
        self._os_name = os_name or os.name

    def spawn(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        env: dict[str, str],
        output_log_path: Path | None = None,
        capture: Literal["merged", "separate"] = "merged",
    ) -> ManagedProcess:
        """Start ``argv`` without a shell.

        With ``output_log_path`` both stdout and stderr are bound to the same
        open file so the log keeps wall-clock interleaving. Raises
        ``FileNotFoundError`` when the executable is missing.
        """

        log_handle: IO[bytes] | None = None
        log_offset = 0
        if output_log_path is not None:
            output_log_path.parent.mkdir(parents=True, exist_ok=True)
            log_handle = output_log_path.open("ab")
            log_offset = log_handle.tell()
            stdout_target: int | IO[bytes] = log_handle
            stderr_target: int | IO[bytes] = log_handle
        elif capture == "merged":
            stdout_target = subprocess.PIPE
            stderr_target = subprocess.STDOUT
        else:
            stdout_target = subprocess.PIPE
            stderr_target = subprocess.PIPE

        try:
            process = subprocess.Popen(  # noqa: S603
                list(argv),
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=stdout_target,
                stderr=stderr_target,
                **self._detach_kwargs(),
            )
        finally:
            if log_handle is not None:
                log_handle.close()

        handle = self._handle_for(process)
        if self._registry is not None:
            self._registry.register(handle.pid, process_group=handle.process_group)
        logger.info(
            "Spawned agent subprocess pid=%s command=%s cwd=%s",
            handle.pid,
            argv[0],
            cwd,
        )
        return ManagedProcess(
            process=process,
            handle=handle,
            registry=self._registry,
            kill_grace_seconds=self._kill_grace_seconds,
            output_log_path=output_log_path,
            log_offset=log_offset,
        )

    def _detach_kwargs(self) -> dict[str, object]:
        if self._os_name == "nt":
            return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0x200)}
        return {"start_new_session": True}

    def _handle_for(self, process: subprocess.Popen[bytes]) -> ProcessHandle:
        if self._os_name == "nt":
            return WindowsProcessTreeHandle(process)
        return PosixProcessGroupHandle(process)


def _pump_pipe(pipe: IO[bytes], on_chunk: ChunkCallback) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    fd = pipe.fileno()
    try:
        while True:
            data = os.read(fd, _READ_CHUNK_BYTES)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                on_chunk(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            on_chunk(tail)
    finally:
        pipe.close()


def _start_thread(name: str, target: Callable[..., None], *args: object) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, name=name, daemon=True)
    thread.start()
    return thread


def _graceful_signal() -> int:
    return signal.SIGTERM


def _forceful_signal() -> int:
    return getattr(signal, "SIGKILL", signal.SIGTERM)


def _signal_quietly(target: int, signum: int) -> None:
    try:
        os.kill(target, signum)
    except (ProcessLookupError, PermissionError):
        return


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True

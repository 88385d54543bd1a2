"""FIFO command queue that runs at most one shell process at a time."""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass

from taskpilot.agent.models import ToolResult
from taskpilot.shell import CommandResult, ShellAdapter

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
_SENTINEL = object()


@dataclass(slots=True)
class CommandExecution:
    """The in-flight or most recently finished shell invocation."""

    command: str
    start_time: float
    end_time: float | None = None
    exit_code: int | None = None
    output: str = ""
    error: str | None = None


@dataclass(slots=True)
class _QueuedCommand:
    command: str
    working_dir: str | None
    timeout_seconds: float
    future: Future[ToolResult]


class CommandSerializer:
    """Serialize shell commands through a single worker thread.

    Callers on any thread may enqueue; commands run strictly in submission
    order and each caller receives a future resolved with its own result.
    The serializer never retries.
    """

    def __init__(
        self,
        shell: ShellAdapter,
        *,
        default_working_dir: str | None = None,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.shell = shell
        self.default_working_dir = default_working_dir
        self.default_timeout_seconds = default_timeout_seconds
        self._queue: queue.Queue[_QueuedCommand | object] = queue.Queue()
        self._lock = threading.Lock()
        self._worker: threading.Thread | None = None
        self._closed = False
        self._current_execution: CommandExecution | None = None

    @property
    def last_execution(self) -> CommandExecution | None:
        return self._current_execution

    def enqueue(
        self,
        command: str,
        *,
        working_dir: str | None = None,
        timeout_seconds: float | None = None,
    ) -> Future[ToolResult]:
        future: Future[ToolResult] = Future()
        item = _QueuedCommand(
            command=command,
            working_dir=working_dir or self.default_working_dir,
            timeout_seconds=(
                timeout_seconds
                if timeout_seconds is not None and timeout_seconds > 0
                else self.default_timeout_seconds
            ),
            future=future,
        )
        with self._lock:
            if self._closed:
                msg = "Command serializer is closed"
                raise RuntimeError(msg)
            self._ensure_worker()
            self._queue.put(item)
        LOGGER.debug(
            "command_enqueued",
            extra={"pending": self._queue.qsize(), "timeout_seconds": item.timeout_seconds},
        )
        return future

    def run(
        self,
        command: str,
        *,
        working_dir: str | None = None,
        timeout_seconds: float | None = None,
    ) -> ToolResult:
        """Enqueue a command and block until its turn has finished."""
        return self.enqueue(
            command,
            working_dir=working_dir,
            timeout_seconds=timeout_seconds,
        ).result()

    def close(self, timeout: float | None = None) -> None:
        """Stop accepting commands; already queued ones still run."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker
            if worker is not None:
                self._queue.put(_SENTINEL)
        if worker is not None:
            worker.join(timeout=timeout)

    def _ensure_worker(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._worker_loop,
            daemon=True,
            name="taskpilot-commands",
        )
        self._worker.start()

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _SENTINEL or not isinstance(item, _QueuedCommand):
                break
            if not item.future.set_running_or_notify_cancel():
                continue
            try:
                result = self._run_command(item)
            except Exception as exc:
                LOGGER.exception("command_worker_error")
                result = ToolResult.fail(str(exc) or "Command execution failed")
            item.future.set_result(result)

    def _run_command(self, item: _QueuedCommand) -> ToolResult:
        execution = CommandExecution(command=item.command, start_time=time.time())
        self._current_execution = execution

        command_result = self.shell.execute(
            item.command,
            cwd=item.working_dir,
            timeout=item.timeout_seconds,
        )

        execution.end_time = time.time()
        execution.exit_code = command_result.returncode
        duration_ms = round(command_result.duration_seconds * 1000)
        data = {"exit_code": command_result.returncode, "duration_ms": duration_ms}

        if command_result.succeeded:
            output = command_result.stdout
            if command_result.stderr:
                output = f"{output}\nStderr: {command_result.stderr}"
            execution.output = output.strip()
            return ToolResult.ok(output=execution.output, data=data)

        error = (
            command_result.stderr.strip()
            or command_result.stdout.strip()
            or _generic_failure(command_result, item.timeout_seconds)
        )
        execution.output = command_result.stdout
        execution.error = error
        return ToolResult.fail(error, output=command_result.stdout, data=data)


def _generic_failure(result: CommandResult, timeout_seconds: float) -> str:
    if result.timed_out:
        return f"Command timed out after {timeout_seconds:.1f}s"
    return f"Command failed with exit code {result.returncode}"

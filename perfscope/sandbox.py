"""
Isolated, time-bounded execution of one instrumented program.

Each SandboxRuntime owns a temporary directory and at most one child
process. The child runs in its own session with a curated environment and
POSIX resource limits; on timeout the whole process group is killed.
"""

import asyncio
import inspect
import logging
import os
import shutil
import signal
import sys
import tempfile
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from perfscope.config import settings
from perfscope.errors import ErrorKind, ProtocolDecodeError
from perfscope.events import Failure, Success, TraceEvent
from perfscope.protocol import FrameKind, aggregate_trace, split_line

try:
    import resource
except ImportError:  # Windows
    resource = None

logger = logging.getLogger(__name__)

EventCallback = Callable[[TraceEvent], Any]

STDERR_TAIL = 2000


class SandboxState(str, Enum):
    CREATED = "created"
    INSTRUMENTED = "instrumented"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = {SandboxState.COMPLETED, SandboxState.FAILED, SandboxState.TIMED_OUT}

_TRANSITIONS = {
    SandboxState.CREATED: {SandboxState.INSTRUMENTED, SandboxState.FAILED},
    SandboxState.INSTRUMENTED: {SandboxState.RUNNING, SandboxState.FAILED},
    SandboxState.RUNNING: TERMINAL_STATES,
}


class SandboxRuntime:
    """
    One execution context.

    Use as an async context manager; leaving the block kills any surviving
    child and removes the working directory.
    """

    def __init__(
        self,
        execution_id: str,
        timeout: float,
        memory_limit_mb: Optional[int] = None,
        file_size_limit_mb: Optional[int] = None,
        kill_grace: Optional[float] = None,
        max_line_bytes: Optional[int] = None,
    ):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.execution_id = execution_id
        self.timeout = timeout
        self.memory_limit_mb = memory_limit_mb
        self.file_size_limit_mb = file_size_limit_mb if file_size_limit_mb is not None else settings.file_size_limit_mb
        self.kill_grace = kill_grace if kill_grace is not None else settings.kill_grace
        self.max_line_bytes = max_line_bytes or settings.max_line_bytes
        self.state = SandboxState.CREATED
        self.workdir: Optional[str] = tempfile.mkdtemp(prefix=f"perfscope-{execution_id[:8]}-")
        self._process: Optional[asyncio.subprocess.Process] = None

    async def __aenter__(self) -> "SandboxRuntime":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --- lifecycle ---

    def _transition(self, new_state: SandboxState) -> bool:
        if self.state in TERMINAL_STATES:
            logger.warning(
                "Execution %s already %s, ignoring %s",
                self.execution_id, self.state.value, new_state.value,
            )
            return False
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal sandbox transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        return True

    def stage(self, filename: str, content: str, instrumented: bool = False) -> str:
        """Write a file into the working directory and return its path."""
        path = os.path.join(self.workdir, filename)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        if instrumented:
            self._transition(SandboxState.INSTRUMENTED)
        return path

    def environment(self) -> Dict[str, str]:
        return {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": self.workdir,
            "TMPDIR": self.workdir,
            "LANG": "C.UTF-8",
            "PYTHONHASHSEED": "0",
            "PYTHONUNBUFFERED": "1",
            "PYTHONIOENCODING": "utf-8",
            "PYTHONDONTWRITEBYTECODE": "1",
        }

    def _limit_resources(self) -> None:
        # Runs in the child between fork and exec
        cpu = int(self.timeout) + 2
        resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu + 1))
        if self.file_size_limit_mb:
            size = self.file_size_limit_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_FSIZE, (size, size))
        if self.memory_limit_mb:
            memory = self.memory_limit_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (memory, memory))

    async def close(self) -> None:
        if self._process is not None and self._process.returncode is None:
            await self._kill()
        if self.state not in TERMINAL_STATES:
            self.state = SandboxState.FAILED
        if self.workdir is not None:
            shutil.rmtree(self.workdir, ignore_errors=True)
            self.workdir = None

    async def _kill(self) -> None:
        process = self._process
        try:
            if sys.platform != "win32":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.error("Execution %s: child %s did not exit after SIGKILL", self.execution_id, process.pid)

    # --- running ---

    async def run(self, argv: List[str], stdin: Optional[List[str]], on_event: EventCallback):
        """
        Start the program and drive it to a terminal outcome.

        Returns a Success or Failure; never raises for program behaviour.
        """
        self._transition(SandboxState.RUNNING)
        started = time.perf_counter()
        popen_kwargs: Dict[str, Any] = {}
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True
            if resource is not None:
                popen_kwargs["preexec_fn"] = self._limit_resources

        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.workdir,
                env=self.environment(),
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.max_line_bytes,
                **popen_kwargs,
            )
        except OSError as e:
            logger.error("Execution %s: could not start %s: %s", self.execution_id, argv[0], e)
            self._transition(SandboxState.FAILED)
            return Failure(kind=ErrorKind.RUNTIME_ERROR, message=f"Could not start {argv[0]}: {e}", source_line="unknown")

        try:
            outcome = await asyncio.wait_for(self._communicate(stdin, on_event), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill()
            elapsed = (time.perf_counter() - started) * 1000.0
            logger.info("Execution %s timed out after %.0fms", self.execution_id, elapsed)
            timeout_ms = self.timeout * 1000.0
            outcome = Failure(
                kind=ErrorKind.TIMEOUT,
                message=f"Execution timed out after {timeout_ms:.0f}ms",
                source_line="unknown",
                timeout_ms=timeout_ms,
            )
            self._transition(SandboxState.TIMED_OUT)
            return outcome

        self._transition(SandboxState.COMPLETED if isinstance(outcome, Success) else SandboxState.FAILED)
        return outcome

    async def _feed(self, lines: List[str]) -> None:
        writer = self._process.stdin
        try:
            writer.write(("\n".join(lines) + "\n").encode("utf-8"))
            await writer.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Execution %s exited before reading all of stdin", self.execution_id)
        finally:
            writer.close()

    async def _communicate(self, stdin: Optional[List[str]], on_event: EventCallback):
        process = self._process
        feeder = asyncio.ensure_future(self._feed(stdin)) if stdin else None
        stderr_task = asyncio.ensure_future(process.stderr.read())
        output: List[str] = []
        terminal = None
        last_ts = 0.0

        try:
            while True:
                try:
                    raw = await process.stdout.readline()
                except ValueError:
                    # StreamReader drops the partial line, so the stream can't be resynchronised
                    logger.warning("Execution %s: output line over %d bytes", self.execution_id, self.max_line_bytes)
                    await self._kill()
                    return Failure(
                        kind=ErrorKind.RUNTIME_ERROR,
                        message=f"Output line exceeds the {self.max_line_bytes} byte limit",
                        source_line="unknown",
                    )
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace")
                try:
                    frames = split_line(line)
                except ProtocolDecodeError as e:
                    logger.warning("Execution %s: %s", self.execution_id, e.message)
                    output.append(e.details.get("output", ""))
                    continue

                for frame in frames:
                    if frame.kind is FrameKind.OUTPUT:
                        output.append(frame.text)
                    elif frame.kind is FrameKind.EVENT:
                        if terminal is not None:
                            logger.warning("Execution %s: event after terminal frame dropped", self.execution_id)
                            continue
                        event = frame.event
                        if event.timestamp_ms < last_ts:
                            event.timestamp_ms = last_ts
                        last_ts = event.timestamp_ms
                        result = on_event(event)
                        if inspect.isawaitable(result):
                            await result
                    elif terminal is None:
                        terminal = frame
                    else:
                        logger.warning(
                            "Execution %s: duplicate %s frame ignored", self.execution_id, frame.kind.value,
                        )

            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
            if feeder is not None:
                await feeder
        finally:
            for task in (feeder, stderr_task):
                if task is not None and not task.done():
                    task.cancel()

        text = "".join(output)
        if terminal is not None and terminal.kind is FrameKind.COMPLETE:
            payload = terminal.payload
            return Success(
                output=text,
                trace=aggregate_trace(payload),
                total_duration_ms=float(payload.get("executionTime") or 0.0),
                stderr=stderr,
            )
        if terminal is not None:
            payload = terminal.payload
            line_no = payload.get("line")
            return Failure(
                kind=ErrorKind.RUNTIME_ERROR,
                message=payload.get("message") or "Program raised an error",
                source_line=line_no if line_no is not None else "unknown",
                stack=payload.get("stack"),
            )

        message = f"Process exited with code {returncode} before reporting completion"
        tail = stderr.strip()[-STDERR_TAIL:]
        if tail:
            message = f"{message}: {tail}"
        return Failure(kind=ErrorKind.RUNTIME_ERROR, message=message, source_line="unknown", stack=stderr or None)

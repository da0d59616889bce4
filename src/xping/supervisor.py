"""
Xray process supervision for xping.

Launches ``xray run -config stdin:``, collects its stdout/stderr and
reduces that chatter to one verdict: ready to take traffic, or failed
with the best diagnostic available.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

import structlog

from .core.config import DEFAULT_FATAL_MARKERS, DEFAULT_READY_MARKERS
from .errors import ProcessExitedEarly, ProcessLaunchFailed, StartupTimeout
from .utils import sleep_unless_cancelled
from .xray import dump_config

logger = structlog.get_logger(__name__)

NO_STARTUP_OUTPUT = "No output received from Xray during startup"
NO_EXIT_OUTPUT = "No specific error message available"


class Channel(str, Enum):
    """Output stream of the xray process."""
    STDOUT = "stdout"
    STDERR = "stderr"


class LineKind(Enum):
    """What a single output line tells us about startup."""
    READY = "ready"
    FATAL = "fatal"
    OTHER = "other"


class SessionState(Enum):
    """Lifecycle of the supervised process."""
    SPAWNED = "spawned"
    STARTING = "starting"
    STARTED = "started"
    FAILED = "failed"
    EXITED = "exited"
    STOPPED = "stopped"


def classify_line(
    line: str,
    channel: Channel,
    ready_markers: Sequence[Sequence[str]] = DEFAULT_READY_MARKERS,
    fatal_markers: Sequence[str] = DEFAULT_FATAL_MARKERS,
) -> LineKind:
    """
    Classify one line of xray output.

    Stdout lines are checked against the ready markers (every part of a
    marker must occur in the line). Stderr lines are checked against the
    fatal markers. Matching is case-sensitive substring search.
    """
    if channel == Channel.STDOUT:
        for marker in ready_markers:
            if marker and all(part in line for part in marker):
                return LineKind.READY
    else:
        for marker in fatal_markers:
            if marker and marker in line:
                return LineKind.FATAL
    return LineKind.OTHER


@dataclass
class ProcessSession:
    """The running xray process and what has been observed about it."""
    process: asyncio.subprocess.Process
    started: bool = False
    error: bool = False
    stdout_lines: list[str] = field(default_factory=list)
    stderr_lines: list[str] = field(default_factory=list)
    exited: bool = False
    exit_code: Optional[int] = None
    failed: bool = False
    stopped: bool = False

    @property
    def state(self) -> SessionState:
        if self.failed:
            return SessionState.FAILED
        if self.stopped:
            return SessionState.STOPPED
        if self.exited:
            return SessionState.EXITED
        if self.started:
            return SessionState.STARTED
        if self.stdout_lines or self.stderr_lines:
            return SessionState.STARTING
        return SessionState.SPAWNED

    @property
    def alive(self) -> bool:
        return self.started and not (self.exited or self.failed or self.stopped)

    def diagnostics(self, fallback: str) -> list[str]:
        """Error lines if any, else output lines, else the fallback."""
        if self.stderr_lines:
            return list(self.stderr_lines)
        if self.stdout_lines:
            return list(self.stdout_lines)
        return [fallback]


class XraySupervisor:
    """
    Owns the single xray process of a run.

    Readers append lines and flip flags; the caller polls with
    ``wait_until_ready`` and afterwards checks ``is_alive``.
    """

    def __init__(
        self,
        binary_path: str,
        ready_markers: Sequence[Sequence[str]] = DEFAULT_READY_MARKERS,
        fatal_markers: Sequence[str] = DEFAULT_FATAL_MARKERS,
        poll_interval: float = 0.5,
        attempts: int = 6,
        stop_timeout: float = 5.0,
    ):
        """
        Initialize the supervisor.

        Args:
            binary_path: xray executable
            ready_markers: stdout markers meaning xray is ready
            fatal_markers: stderr substrings meaning startup failed
            poll_interval: seconds between readiness checks
            attempts: readiness checks before declaring a timeout
            stop_timeout: grace period between terminate and kill
        """
        self.binary_path = binary_path
        self.ready_markers = ready_markers
        self.fatal_markers = fatal_markers
        self.poll_interval = poll_interval
        self.attempts = attempts
        self.stop_timeout = stop_timeout
        self._session: Optional[ProcessSession] = None
        self._tasks: list[asyncio.Task] = []
        self._error_callback: Optional[Callable[[str], None]] = None

    @property
    def session(self) -> Optional[ProcessSession]:
        return self._session

    @property
    def is_alive(self) -> bool:
        """True while xray is started and has not exited or been stopped."""
        return self._session is not None and self._session.alive

    def set_error_callback(self, callback: Callable[[str], None]) -> None:
        """Set callback invoked with each fatal stderr line as it arrives."""
        self._error_callback = callback

    async def start(self, document: dict) -> ProcessSession:
        """
        Spawn xray with the config written to its stdin.

        Raises:
            ProcessLaunchFailed: the binary could not be executed
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary_path, "run", "-config", "stdin:",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Keep terminal Ctrl+C away from xray; teardown stops it
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessLaunchFailed(f"Failed to start xray: {e}") from e

        self._session = ProcessSession(process=process)
        logger.info("Spawned xray", pid=process.pid, binary=self.binary_path)

        self._tasks = [
            asyncio.create_task(self._pump(process.stdout, Channel.STDOUT)),
            asyncio.create_task(self._pump(process.stderr, Channel.STDERR)),
        ]
        self._tasks.append(asyncio.create_task(self._watch_exit(list(self._tasks))))

        try:
            process.stdin.write(dump_config(document))
            await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            # xray died before reading its config; the exit watcher reports it
            logger.debug("Could not write config to xray", error=str(e))

        return self._session

    async def _pump(self, stream: asyncio.StreamReader, channel: Channel) -> None:
        """Read lines from one stream until EOF."""
        while True:
            raw = await stream.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                self._on_line(line, channel)

    def _on_line(self, line: str, channel: Channel) -> None:
        session = self._session
        if channel == Channel.STDOUT:
            session.stdout_lines.append(line)
        else:
            session.stderr_lines.append(line)
        logger.debug("xray output", channel=channel.value, line=line)

        kind = classify_line(line, channel, self.ready_markers, self.fatal_markers)
        if kind == LineKind.READY and not session.started:
            session.started = True
            logger.info("Xray reported ready", line=line)
        elif kind == LineKind.FATAL:
            session.error = True
            if self._error_callback:
                self._error_callback(line)

    async def _watch_exit(self, pumps: list[asyncio.Task]) -> None:
        """Record the exit of xray once its output has been drained."""
        session = self._session
        code = await session.process.wait()
        await asyncio.wait(pumps, timeout=1.0)
        session.exit_code = code
        session.exited = True
        if session.stopped:
            logger.debug("Xray stopped", exit_code=code)
        else:
            logger.warning("Xray exited", exit_code=code, was_started=session.started)

    async def wait_until_ready(self, cancel: Optional[asyncio.Event] = None) -> bool:
        """
        Poll until xray is ready, fails, or the startup deadline passes.

        Returns:
            True when ready, False when ``cancel`` was set while waiting

        Raises:
            ProcessExitedEarly: xray exited before reporting ready
            ProcessLaunchFailed: xray printed a fatal error line
            StartupTimeout: no readiness signal within the deadline
        """
        session = self._session
        if session is None:
            raise RuntimeError("xray has not been started")

        for _ in range(self.attempts):
            if session.started or session.exited or session.error:
                break
            if await sleep_unless_cancelled(self.poll_interval, cancel):
                return False

        if cancel is not None and cancel.is_set():
            return False

        if session.exited:
            session.failed = True
            raise ProcessExitedEarly(session.exit_code, session.diagnostics(NO_EXIT_OUTPUT))

        if session.error:
            session.failed = True
            details = session.diagnostics(NO_STARTUP_OUTPUT)
            await self.stop()
            raise ProcessLaunchFailed("Xray startup errors detected", details)

        if not session.started:
            session.failed = True
            details = session.diagnostics(NO_STARTUP_OUTPUT)
            await self.stop()
            raise StartupTimeout("Xray failed to start within timeout period", details)

        return True

    def check_alive(self) -> None:
        """
        Raise if xray exited after startup.

        Raises:
            ProcessExitedEarly: the process is gone
        """
        session = self._session
        if session is not None and session.exited and not session.stopped:
            raise ProcessExitedEarly(session.exit_code, session.diagnostics(NO_EXIT_OUTPUT))

    async def stop(self) -> None:
        """Terminate xray, killing it if it ignores the terminate request."""
        session = self._session
        if session is None:
            return

        session.stopped = True
        process = session.process
        if process.returncode is None:
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                pass
            logger.info("Xray terminated", pid=process.pid, exit_code=process.returncode)

        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

"""
Command Process
===============

Runs one external CLI command, streaming stdout/stderr line by line to a
callback while keeping a bounded tail of each stream. A deadline stops the
process: SIGTERM first, SIGKILL if it does not exit within the grace period.
"""

import os
import time
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, List, Callable

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str, bool], None]

STREAM_LIMIT = 1024 * 1024  # max bytes per line before falling back to chunked reads
DEFAULT_OUTPUT_MAX_CHARS = 200000


class CommandSpawnError(RuntimeError):
    """The command could not be started (missing binary, bad cwd, permissions)."""


@dataclass
class CommandResult:
    """Outcome of a finished command."""
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool
    duration_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _TailBuffer:
    """Keeps the most recent lines up to a character budget."""

    def __init__(self, max_chars: int):
        self.max_chars = max(0, int(max_chars))
        self._chunks = deque()
        self._chars = 0
        self.truncated = False

    def append(self, line: str) -> None:
        if not self.max_chars:
            return
        self._chunks.append(line)
        self._chars += len(line)
        while self._chars > self.max_chars and self._chunks:
            removed = self._chunks.popleft()
            self._chars -= len(removed)
            self.truncated = True

    def text(self) -> str:
        return '\n'.join(self._chunks)


class CommandProcess:
    """Manages a single child process."""

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        on_output: Optional[OutputCallback] = None,
        max_output_chars: int = DEFAULT_OUTPUT_MAX_CHARS,
        stop_grace: float = 10.0
    ):
        self.command = command
        self.args = list(args or [])
        self.cwd = cwd
        self.env = dict(env or {})
        self.on_output = on_output
        # SIGTERM-to-SIGKILL window used when the deadline passes
        self.stop_grace = stop_grace
        self.process: Optional[asyncio.subprocess.Process] = None
        self._stdout_tail = _TailBuffer(max_output_chars)
        self._stderr_tail = _TailBuffer(max_output_chars)
        self._start_time: Optional[float] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    async def start(self) -> None:
        """Spawn the process. Raises CommandSpawnError if it cannot be started."""
        env = os.environ.copy()
        env.update(self.env)
        try:
            self.process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                cwd=self.cwd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            raise CommandSpawnError(f"Failed to spawn {self.command}: {e}") from e
        self._start_time = time.monotonic()
        logger.debug(f"Spawned {self.command} (pid {self.process.pid})")

    def is_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def _stream(self, stream: asyncio.StreamReader, is_stderr: bool) -> None:
        tail = self._stderr_tail if is_stderr else self._stdout_tail
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than STREAM_LIMIT: take what is buffered as one chunk
                raw = await stream.read(STREAM_LIMIT)
            if not raw:
                break
            line = raw.decode('utf-8', errors='replace').rstrip('\r\n')
            tail.append(line)
            if line and self.on_output:
                try:
                    self.on_output(line, is_stderr)
                except Exception:
                    logger.exception("Output callback failed")

    async def wait(self, timeout: Optional[float] = None) -> CommandResult:
        """
        Drain output and wait for exit. On timeout the process is stopped
        and the result is marked timed_out.
        """
        if self.process is None:
            raise RuntimeError("Process has not been started")

        timed_out = False
        readers = asyncio.gather(
            self._stream(self.process.stdout, False),
            self._stream(self.process.stderr, True),
            self.process.wait(),
        )
        try:
            await asyncio.wait_for(readers, timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"{self.command} exceeded {timeout}s deadline, stopping")
            await self.stop(self.stop_grace)

        exit_code = self.process.returncode
        if exit_code is None:
            exit_code = -1
        duration_ms = int((time.monotonic() - (self._start_time or time.monotonic())) * 1000)
        return CommandResult(
            stdout=self._stdout_tail.text(),
            stderr=self._stderr_tail.text(),
            exit_code=exit_code,
            timed_out=timed_out,
            duration_ms=duration_ms,
        )

    async def stop(self, grace: float = 10.0) -> Optional[int]:
        """
        Stop the process gracefully.

        Args:
            grace: Seconds to wait after SIGTERM before SIGKILL

        Returns:
            Exit code, or None if the process was never started
        """
        if self.process is None:
            return None
        if self.process.returncode is not None:
            return self.process.returncode

        try:
            self.process.terminate()
        except ProcessLookupError:
            return await self.process.wait()

        try:
            await asyncio.wait_for(self.process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"{self.command} did not terminate, killing...")
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()
        return self.process.returncode

"""
Command Executor
================

Background job queue for CLI commands:
- FIFO admission with a fixed number of running slots (no priority, no preemption)
- Progress streaming: every output line is emitted as a `job:progress` event
- Lifecycle events: queued -> started -> completed | failed, exactly once each
- Per-job deadline with forced termination
- Bounded history of finished jobs

All state is mutated on the event loop; listeners are called synchronously
in emission order, so a job's events reach every listener in order.
"""

import os
import time
import asyncio
import logging
from collections import deque, OrderedDict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Callable, Union

from .process import CommandProcess, CommandResult, DEFAULT_OUTPUT_MAX_CHARS

logger = logging.getLogger(__name__)

EVENT_QUEUED = 'job:queued'
EVENT_STARTED = 'job:started'
EVENT_PROGRESS = 'job:progress'
EVENT_COMPLETED = 'job:completed'
EVENT_FAILED = 'job:failed'
EVENT_CANCELLED = 'job:cancelled'
EVENT_QUEUE_EMPTY = 'queue:empty'

EVENTS = (
    EVENT_QUEUED, EVENT_STARTED, EVENT_PROGRESS, EVENT_COMPLETED,
    EVENT_FAILED, EVENT_CANCELLED, EVENT_QUEUE_EMPTY,
)

Listener = Callable[[Dict[str, Any]], None]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobValidationError(ValueError):
    """Malformed job submission; the job is never enqueued."""


class JobNotFoundError(KeyError):
    """No queued, running or remembered job has this id."""


class JobStatus(Enum):
    """Job lifecycle states."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class JobConfig:
    """What to run and what it belongs to."""
    command: str
    args: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None  # seconds; executor default when None
    id: Optional[str] = None
    project_id: Optional[str] = None
    ticket_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobConfig':
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise JobValidationError(f"Unknown job fields: {', '.join(sorted(unknown))}")
        if 'command' not in data:
            raise JobValidationError("Job command is required")
        values = {k: v for k, v in data.items() if v is not None}
        return cls(**values)

    def validate(self) -> None:
        if not isinstance(self.command, str) or not self.command.strip():
            raise JobValidationError("Job command must be a non-empty string")
        if not isinstance(self.args, list) or not all(isinstance(a, str) for a in self.args):
            raise JobValidationError("Job args must be a list of strings")
        if self.cwd is not None and not os.path.isdir(self.cwd):
            raise JobValidationError(f"Working directory does not exist: {self.cwd}")
        if not isinstance(self.env, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in self.env.items()
        ):
            raise JobValidationError("Job env must map strings to strings")
        if self.timeout is not None:
            if isinstance(self.timeout, bool) or not isinstance(self.timeout, (int, float)) or self.timeout <= 0:
                raise JobValidationError("Job timeout must be a positive number of seconds")
        if self.id is not None and (not isinstance(self.id, str) or not self.id.strip()):
            raise JobValidationError("Job id must be a non-empty string")
        if not isinstance(self.metadata, dict):
            raise JobValidationError("Job metadata must be an object")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # Never echo environment values (tokens) back to clients
        data['env'] = sorted(self.env)
        return data


@dataclass
class JobResult:
    """Terminal outcome of a job."""
    job_id: str
    status: str
    exit_code: Optional[int] = None
    stdout: str = ''
    stderr: str = ''
    timed_out: bool = False
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Job:
    """A job tracked by the executor."""
    id: str
    config: JobConfig
    status: JobStatus = JobStatus.QUEUED
    created_at: str = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    result: Optional[JobResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'config': self.config.to_dict(),
            'status': self.status.value,
            'created_at': self.created_at,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'error': self.error,
            'result': self.result.to_dict() if self.result else None,
        }


class CommandExecutor:
    """
    In-process job scheduler for external commands.

    submit() must be called on the running event loop whenever processing
    is enabled, since admission spawns the job's task immediately.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        default_timeout: float = 300.0,
        max_history: int = 500,
        auto_start: bool = True,
        stop_grace: float = 10.0,
        max_output_chars: int = DEFAULT_OUTPUT_MAX_CHARS,
        process_factory: Callable[..., CommandProcess] = CommandProcess
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.default_timeout = default_timeout
        self.max_history = max_history
        self.stop_grace = stop_grace
        self.max_output_chars = max_output_chars
        self.process_factory = process_factory

        self._queue: deque = deque()
        self._running: Dict[str, Job] = {}
        self._completed: 'OrderedDict[str, Job]' = OrderedDict()
        self._processes: Dict[str, CommandProcess] = {}
        self._tasks: set = set()
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in EVENTS}
        self._is_processing = auto_start
        self._stopping = False
        self._job_counter = 0

        self.total_completed = 0
        self.total_failed = 0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        if event not in self._listeners:
            raise ValueError(f"Unknown executor event: {event}")
        self._listeners[event].append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        try:
            self._listeners[event].remove(listener)
        except (KeyError, ValueError):
            pass

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(payload)
            except Exception:
                logger.exception(f"Listener for {event} raised")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _generate_job_id(self) -> str:
        self._job_counter += 1
        return f"job-{int(time.time() * 1000)}-{self._job_counter}"

    def _find(self, job_id: str) -> Optional[Job]:
        if job_id in self._running:
            return self._running[job_id]
        if job_id in self._completed:
            return self._completed[job_id]
        for job in self._queue:
            if job.id == job_id:
                return job
        return None

    def submit(self, config: Union[JobConfig, Dict[str, Any]]) -> str:
        """
        Queue a job and admit it if a slot is free.

        Returns:
            Job ID

        Raises:
            JobValidationError: malformed config or duplicate id
        """
        if isinstance(config, dict):
            config = JobConfig.from_dict(config)
        elif not isinstance(config, JobConfig):
            raise JobValidationError("Job config must be a JobConfig or a dict")
        config.validate()

        job_id = config.id or self._generate_job_id()
        if self._find(job_id) is not None:
            raise JobValidationError(f"Job id already in use: {job_id}")

        job = Job(id=job_id, config=config)
        self._queue.append(job)
        logger.info(f"Queued job {job_id}: {config.command} (queue depth {len(self._queue)})")
        self._emit(EVENT_QUEUED, job.to_dict())

        self._process_next()
        return job_id

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _process_next(self) -> None:
        if not self._is_processing:
            return
        if self._queue and len(self._running) < self.max_concurrent:
            loop = asyncio.get_running_loop()
            while self._queue and len(self._running) < self.max_concurrent:
                self._start_job(self._queue.popleft(), loop)

    def _emit_if_drained(self) -> None:
        """Announce queue:empty once a finished or removed job leaves nothing queued or running."""
        if not self._queue and not self._running:
            self._emit(EVENT_QUEUE_EMPTY, {})

    def _start_job(self, job: Job, loop: asyncio.AbstractEventLoop) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = _now_iso()
        self._running[job.id] = job
        logger.info(f"Starting job {job.id} ({len(self._running)}/{self.max_concurrent} running)")
        self._emit(EVENT_STARTED, job.to_dict())

        task = loop.create_task(self._execute(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: Job) -> None:
        start = time.monotonic()
        timeout = job.config.timeout or self.default_timeout

        def on_output(line: str, is_stderr: bool) -> None:
            self._emit(EVENT_PROGRESS, {
                'job_id': job.id,
                'status': JobStatus.RUNNING.value,
                'output': line,
                'is_error': is_stderr,
                'timestamp': _now_iso(),
            })

        try:
            process = self.process_factory(
                job.config.command,
                job.config.args,
                cwd=job.config.cwd,
                env=job.config.env,
                on_output=on_output,
                max_output_chars=self.max_output_chars,
                stop_grace=self.stop_grace,
            )
            self._processes[job.id] = process
            await process.start()
            if self._stopping:
                # Spawned after shutdown swept the running processes
                await process.stop(self.stop_grace)
            result = await process.wait(timeout=timeout)

            if result.timed_out:
                self._finish(job, JobStatus.FAILED, start, result, f"Command timed out after {timeout:g}s")
            elif result.exit_code != 0:
                error = result.stderr.strip()[-2000:] or f"Command failed with exit code {result.exit_code}"
                self._finish(job, JobStatus.FAILED, start, result, error)
            else:
                self._finish(job, JobStatus.COMPLETED, start, result)
        except asyncio.CancelledError:
            process = self._processes.get(job.id)
            if process is not None:
                await process.stop(0)
            self._finish(job, JobStatus.FAILED, start, None, "Job cancelled during shutdown")
            raise
        except Exception as e:
            logger.error(f"Job {job.id} raised: {e!r}")
            self._finish(job, JobStatus.FAILED, start, None, str(e) or e.__class__.__name__)
        finally:
            self._processes.pop(job.id, None)

    def _finish(
        self,
        job: Job,
        status: JobStatus,
        start: float,
        result: Optional[CommandResult],
        error: Optional[str] = None
    ) -> None:
        if job.status in TERMINAL_STATUSES:
            return
        job.status = status
        job.completed_at = _now_iso()
        job.error = error
        job.result = JobResult(
            job_id=job.id,
            status=status.value,
            exit_code=result.exit_code if result else None,
            stdout=result.stdout if result else '',
            stderr=result.stderr if result else '',
            timed_out=result.timed_out if result else False,
            error=error,
            started_at=job.started_at,
            completed_at=job.completed_at,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        self._running.pop(job.id, None)
        self._remember(job)

        if status == JobStatus.COMPLETED:
            self.total_completed += 1
            logger.info(f"Job {job.id} completed in {job.result.duration_ms}ms")
            self._emit(EVENT_COMPLETED, job.result.to_dict())
        else:
            self.total_failed += 1
            logger.warning(f"Job {job.id} failed: {error}")
            self._emit(EVENT_FAILED, job.result.to_dict())

        self._resolve_waiters(job)
        self._process_next()
        self._emit_if_drained()

    def _remember(self, job: Job) -> None:
        self._completed[job.id] = job
        while len(self._completed) > self.max_history:
            self._completed.popitem(last=False)

    def _resolve_waiters(self, job: Job) -> None:
        for future in self._waiters.pop(job.id, []):
            if not future.done():
                future.set_result(job.result)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self._find(job_id)
        return job.to_dict() if job else None

    def get_job_status(self, job_id: str) -> Optional[str]:
        job = self._find(job_id)
        return job.status.value if job else None

    def get_job_result(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self._completed.get(job_id)
        return job.result.to_dict() if job and job.result else None

    async def wait_for_job(self, job_id: str, timeout: float = 300.0) -> JobResult:
        """
        Wait until a job reaches a terminal state.

        Raises:
            JobNotFoundError: unknown job id
            asyncio.TimeoutError: not finished within `timeout` seconds
        """
        job = self._find(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status in TERMINAL_STATUSES:
            return job.result

        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(job_id, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            waiters = self._waiters.get(job_id)
            if waiters and future in waiters:
                waiters.remove(future)

    def get_stats(self) -> Dict[str, int]:
        return {
            'queued': len(self._queue),
            'running': len(self._running),
            'completed': len(self._completed),
            'max_concurrent': self.max_concurrent,
        }

    def get_running_jobs(self) -> List[Dict[str, Any]]:
        """Running jobs in admission order."""
        return [
            {
                'id': job.id,
                'command': job.config.command,
                'started_at': job.started_at,
                'project_id': job.config.project_id,
                'ticket_id': job.config.ticket_id,
            }
            for job in self._running.values()
        ]

    def get_pending_jobs(self) -> List[Dict[str, Any]]:
        """Queued jobs in submission order."""
        return [
            {
                'id': job.id,
                'command': job.config.command,
                'created_at': job.created_at,
                'project_id': job.config.project_id,
                'ticket_id': job.config.ticket_id,
            }
            for job in self._queue
        ]

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self, job_id: str) -> bool:
        """Remove a queued job. Running jobs cannot be cancelled."""
        for job in self._queue:
            if job.id == job_id:
                break
        else:
            return False

        self._queue.remove(job)
        job.status = JobStatus.CANCELLED
        job.completed_at = _now_iso()
        job.result = JobResult(
            job_id=job.id,
            status=JobStatus.CANCELLED.value,
            error='Cancelled before start',
            completed_at=job.completed_at,
        )
        self._remember(job)
        logger.info(f"Cancelled queued job {job_id}")
        self._emit(EVENT_CANCELLED, {'job_id': job_id})
        self._resolve_waiters(job)
        self._emit_if_drained()
        return True

    def clear_completed(self) -> None:
        self._completed.clear()

    def set_max_concurrent(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._process_next()

    def start_processing(self) -> None:
        self._stopping = False
        self._is_processing = True
        self._process_next()

    def stop_processing(self) -> None:
        """Stop admitting queued jobs; running jobs finish normally."""
        self._is_processing = False

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """
        Stop admission, cancel queued jobs and terminate running processes.
        Jobs still running after the grace period are cancelled.
        """
        self._stopping = True
        self.stop_processing()
        for job_id in [job.id for job in self._queue]:
            self.cancel(job_id)

        # Let jobs admitted in this loop iteration register their process
        await asyncio.sleep(0)

        grace = self.stop_grace if grace is None else grace
        processes = list(self._processes.values())
        if processes:
            logger.info(f"Stopping {len(processes)} running job(s)")
            await asyncio.gather(*(p.stop(grace) for p in processes), return_exceptions=True)
        if self._tasks:
            _, pending = await asyncio.wait(list(self._tasks), timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

"""
Output Buffer
=============

Bounded log of executor output for polling clients. Each line carries a
monotonically increasing sequence number and each consumer keeps the next
sequence number it has not seen, so trimming old lines never shifts a
cursor. A consumer that falls more than `max_size` lines behind resumes at
the oldest retained line; the lines it missed are counted in `evicted`.
"""

import logging
from collections import deque, OrderedDict
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable

from .executor import CommandExecutor, EVENT_STARTED, EVENT_PROGRESS, EVENT_COMPLETED, EVENT_FAILED

logger = logging.getLogger(__name__)

MAX_BUFFER_SIZE = 1000
MAX_CONSUMERS = 1000


@dataclass
class OutputLine:
    seq: int
    timestamp: str
    text: str
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OutputBuffer:
    """Append-only ring of log lines with per-consumer read cursors."""

    def __init__(self, max_size: int = MAX_BUFFER_SIZE, max_consumers: int = MAX_CONSUMERS):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.max_consumers = max_consumers
        self._lines: deque = deque()
        self._cursors: 'OrderedDict[str, int]' = OrderedDict()
        self._next_seq = 0
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._lines)

    def append(self, text: str, is_error: bool = False, timestamp: Optional[str] = None) -> OutputLine:
        line = OutputLine(
            seq=self._next_seq,
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
            text=text,
            is_error=is_error,
        )
        self._next_seq += 1
        self._lines.append(line)
        while len(self._lines) > self.max_size:
            self._lines.popleft()
            self.evicted += 1
        return line

    def read_new(self, consumer_id: str) -> List[OutputLine]:
        """Lines this consumer has not seen yet, oldest first; advances its cursor."""
        cursor = self._cursors.pop(consumer_id, 0)
        if self._lines and cursor < self._lines[0].seq:
            logger.debug(f"Consumer {consumer_id} fell behind, {self._lines[0].seq - cursor} lines dropped")

        # Retained seqs are contiguous, so the first wanted line sits at a fixed offset
        offset = 0
        if self._lines:
            offset = max(0, cursor - self._lines[0].seq)
        new_lines = [self._lines[i] for i in range(offset, len(self._lines))]

        self._cursors[consumer_id] = self._next_seq
        while len(self._cursors) > self.max_consumers:
            self._cursors.popitem(last=False)
        return new_lines

    def cursor(self, consumer_id: str) -> Optional[int]:
        return self._cursors.get(consumer_id)

    def snapshot(self) -> List[OutputLine]:
        return list(self._lines)

    def clear(self) -> None:
        """Drop all lines. Cursors stay valid since sequence numbers keep increasing."""
        self._lines.clear()

    def attach(self, executor: CommandExecutor) -> Callable[[], None]:
        """Record executor lifecycle and progress events. Returns a detach callable."""

        def on_started(job: Dict[str, Any]) -> None:
            self.append(f"[JOB STARTED] {job['id']} - {job['config']['command']}")

        def on_progress(progress: Dict[str, Any]) -> None:
            if progress.get('output'):
                self.append(progress['output'], is_error=bool(progress.get('is_error')),
                            timestamp=progress.get('timestamp'))

        def on_completed(result: Dict[str, Any]) -> None:
            self.append(f"[JOB COMPLETED] {result['job_id']} - Duration: {result['duration_ms']}ms")

        def on_failed(result: Dict[str, Any]) -> None:
            self.append(f"[JOB FAILED] {result['job_id']} - {result['error']}", is_error=True)

        unsubscribers = [
            executor.on(EVENT_STARTED, on_started),
            executor.on(EVENT_PROGRESS, on_progress),
            executor.on(EVENT_COMPLETED, on_completed),
            executor.on(EVENT_FAILED, on_failed),
        ]

        def detach() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return detach

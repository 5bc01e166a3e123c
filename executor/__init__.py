"""
Executor Package
================

Runs external CLI jobs with bounded concurrency and buffers their output
for polling clients.
"""

from .process import CommandProcess, CommandResult, CommandSpawnError
from .executor import (
    CommandExecutor,
    Job,
    JobConfig,
    JobResult,
    JobStatus,
    JobValidationError,
    JobNotFoundError,
)
from .output_buffer import OutputBuffer, OutputLine

__all__ = [
    'CommandProcess',
    'CommandResult',
    'CommandSpawnError',
    'CommandExecutor',
    'Job',
    'JobConfig',
    'JobResult',
    'JobStatus',
    'JobValidationError',
    'JobNotFoundError',
    'OutputBuffer',
    'OutputLine',
]

"""
Command execution for scheduled runs.

Runs the configured command to completion and classifies the outcome.
The child inherits the runner's stdout and stderr; nothing is captured
or transformed.
"""

import enum
import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

from cronrunner.tracker import CancellationToken

logger = logging.getLogger(__name__)


class JobExecutionError(Exception):
    """Base class for per-invocation failures."""
    pass


class ExecutionFailed(JobExecutionError):
    """The command could not be started or exited non-zero."""
    pass


class ExecutionCancelled(JobExecutionError):
    """The command's run ended while shutdown was in progress."""
    pass


class Outcome(enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class Invocation:
    """A command and its fixed arguments, shared by every fire."""
    command: str
    args: Tuple[str, ...] = ()

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]

    def __str__(self):
        return shlex.join(self.argv)


@dataclass(frozen=True)
class ExecutionResult:
    """Result of one invocation."""
    outcome: Outcome
    returncode: Optional[int]
    duration_seconds: float
    error: Optional[JobExecutionError] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.COMPLETED


class CommandExecutor:
    """
    Executes the scheduled command and blocks until it exits.

    The executor never kills the child. Cancellation only changes how a
    failed run is reported: a run that ends while the token is set is
    CANCELLED rather than FAILED, so shutdown does not read as an
    application error.
    """

    def __init__(self, schedule: Optional[str] = None):
        """
        Initialize command executor.

        Args:
            schedule: Schedule expression, included in log records
        """
        self.schedule = schedule

    def run(self, invocation: Invocation, token: CancellationToken) -> ExecutionResult:
        """
        Run one invocation to completion.

        Args:
            invocation: Command and arguments to execute
            token: Process-wide cancellation token

        Returns:
            ExecutionResult describing the outcome
        """
        fields = {
            'schedule': self.schedule,
            'command': invocation.command,
            'command_args': list(invocation.args),
        }
        logger.info("executing command", extra=fields)

        start = time.monotonic()
        returncode = None
        try:
            process = subprocess.Popen(invocation.argv)
            returncode = process.wait()
            if returncode != 0:
                raise subprocess.CalledProcessError(returncode, invocation.argv)
        except (OSError, subprocess.CalledProcessError) as e:
            duration = time.monotonic() - start

            if token.is_cancelled:
                error = ExecutionCancelled(f"command cancelled: {e}")
                error.__cause__ = e
                return ExecutionResult(Outcome.CANCELLED, returncode, duration, error)

            error = ExecutionFailed(f"command execution failed: {e}")
            error.__cause__ = e
            logger.error(
                "command execution error",
                extra={**fields, 'error': str(error), 'returncode': returncode},
            )
            return ExecutionResult(Outcome.FAILED, returncode, duration, error)

        duration = time.monotonic() - start
        logger.info(
            f"command finished in {duration:.2f}s",
            extra={**fields, 'duration_seconds': round(duration, 3)},
        )
        return ExecutionResult(Outcome.COMPLETED, returncode, duration)

"""
Cron Runner

Runs one command on a cron-style schedule and, on SIGINT/SIGTERM,
waits for running invocations to finish before exiting.

Features:
- 5 or 6 field cron expressions, descriptors and @every intervals
- Overlapping runs when a command outlives its interval
- Graceful shutdown, optionally bounded by a timeout
- JSON or text log lines on stdout
"""

from cronrunner.schedule import Schedule, InvalidScheduleError
from cronrunner.jobs import CommandExecutor, Invocation, ExecutionResult, Outcome
from cronrunner.tracker import CancellationToken, RunTracker, QuiesceResult
from cronrunner.service import CronRunner, TriggerLoop, ShutdownCoordinator, ShutdownOutcome
from cronrunner.config import RunnerConfig

__version__ = "0.1.0"

# Replaced by release builds
COMMIT = "none"
BUILD_DATE = "unknown"
BUILT_BY = "unknown"

__all__ = [
    "Schedule",
    "InvalidScheduleError",
    "CommandExecutor",
    "Invocation",
    "ExecutionResult",
    "Outcome",
    "CancellationToken",
    "RunTracker",
    "QuiesceResult",
    "CronRunner",
    "TriggerLoop",
    "ShutdownCoordinator",
    "ShutdownOutcome",
    "RunnerConfig",
]

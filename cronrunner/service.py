"""
Core scheduler service.

Provides:
- TriggerLoop: waits for each fire time and hands the command off to a
  fresh thread under RunTracker accounting
- ShutdownCoordinator: cancels, stops the loop and waits for in-flight runs
- CronRunner: wires the components for one schedule and one command and
  reacts to SIGINT/SIGTERM

Overlapping runs of the same command are allowed: a slow command never
delays the next fire.
"""

import enum
import logging
import signal
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from cronrunner.jobs import CommandExecutor, Invocation
from cronrunner.schedule import Schedule
from cronrunner.tracker import AdmitToken, CancellationToken, QuiesceResult, RunTracker

logger = logging.getLogger(__name__)


class LoopState(enum.Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    FIRING = "firing"
    STOPPED = "stopped"


class ShutdownOutcome(enum.Enum):
    QUIESCED = "quiesced"
    FORCED = "forced"


class TriggerLoop:
    """
    Drives one schedule: wait for the next fire time, admit, dispatch.

    The wait between fires is an Event wait, so stop() takes effect
    immediately even during a long gap.
    """

    def __init__(
        self,
        schedule: Schedule,
        invocation: Invocation,
        executor: CommandExecutor,
        tracker: RunTracker,
        token: CancellationToken,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize trigger loop.

        Args:
            schedule: Parsed schedule producing fire times
            invocation: Command to run on each fire
            executor: Executor used for every run
            tracker: In-flight run tracker
            token: Process-wide cancellation token
            clock: Returns the current aware time (defaults to schedule.now)
        """
        self.schedule = schedule
        self.invocation = invocation
        self.executor = executor
        self.tracker = tracker
        self.token = token
        self.clock = clock or schedule.now

        self._state = LoopState.IDLE
        self._next_fire_time: Optional[datetime] = None
        self._fires = 0
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> LoopState:
        with self._state_lock:
            return self._state

    @property
    def next_fire_time(self) -> Optional[datetime]:
        with self._state_lock:
            return self._next_fire_time

    @property
    def fires(self) -> int:
        """Number of admitted fires so far."""
        with self._state_lock:
            return self._fires

    def _set_state(self, state: LoopState, next_fire_time: Optional[datetime] = None):
        with self._state_lock:
            self._state = state
            self._next_fire_time = next_fire_time

    def start(self):
        """Start the loop on a background thread."""
        with self._state_lock:
            if self._state is not LoopState.IDLE:
                logger.warning(f"Trigger loop cannot start from state '{self._state.value}'")
                return
            self._state = LoopState.SCHEDULED

        self._thread = threading.Thread(
            target=self._run,
            name="cronrunner-trigger-loop",
            daemon=True
        )
        self._thread.start()

    def stop(self):
        """Stop computing and waiting for fire times. Safe to call repeatedly."""
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._set_state(LoopState.STOPPED)

    def _run(self):
        after = self.clock()

        while not self._stop_event.is_set():
            fire_at = self.schedule.next(after)
            if fire_at is None:
                logger.warning(
                    "schedule has no further fire times, trigger loop stopping",
                    extra={'schedule': self.schedule.expression}
                )
                break

            self._set_state(LoopState.SCHEDULED, fire_at)
            if not self._wait_until(fire_at):
                break

            self._set_state(LoopState.FIRING)
            self._fire(fire_at)
            # A late wake-up fires once rather than replaying missed times
            after = max(fire_at, self.clock())

        self._set_state(LoopState.STOPPED)
        logger.debug("Trigger loop stopped")

    def _wait_until(self, fire_at: datetime) -> bool:
        """Wait for the fire time; False if stopped first."""
        while True:
            remaining = (fire_at - self.clock()).total_seconds()
            if remaining <= 0:
                return not self._stop_event.is_set()
            if self._stop_event.wait(remaining):
                return False

    def _fire(self, fire_at: datetime):
        admitted = self.tracker.admit()
        if admitted is None:
            logger.debug(f"Fire at {fire_at.isoformat()} rejected, shutdown in progress")
            return

        with self._state_lock:
            self._fires += 1
        worker = threading.Thread(
            target=self._run_admitted,
            args=(admitted,),
            name=f"cronrunner-run-{admitted.run_id}",
            daemon=True
        )
        try:
            worker.start()
        except RuntimeError as e:
            self.tracker.release(admitted)
            logger.error(
                f"Failed to start run {admitted.run_id}: {e}",
                extra={'schedule': self.schedule.expression, 'command': self.invocation.command}
            )

    def _run_admitted(self, admitted: AdmitToken):
        try:
            self.executor.run(self.invocation, self.token)
        except Exception as e:
            logger.error(
                f"Run {admitted.run_id} raised unexpectedly: {e}",
                extra={'schedule': self.schedule.expression, 'command': self.invocation.command},
                exc_info=True
            )
        finally:
            self.tracker.release(admitted)


class ShutdownCoordinator:
    """
    Stops new fires and waits for in-flight runs.

    A timeout of None waits indefinitely. When the timeout elapses the
    remaining runs are left alone: they are neither killed nor awaited.
    """

    def __init__(
        self,
        token: CancellationToken,
        loop: TriggerLoop,
        tracker: RunTracker,
        timeout: Optional[float] = None
    ):
        self.token = token
        self.loop = loop
        self.tracker = tracker
        self.timeout = timeout
        self._started = False
        self._lock = threading.Lock()

    def shutdown(self) -> ShutdownOutcome:
        """
        Cancel, stop the trigger loop and wait for running jobs.

        The token may already be cancelled by a signal handler; that only
        closes admission earlier.

        Returns:
            QUIESCED if every run finished, FORCED if the timeout elapsed first
        """
        with self._lock:
            first, self._started = not self._started, True
        self.token.cancel()
        if first:
            logger.info("stopping scheduler")
        else:
            logger.debug("Shutdown already started")

        self.loop.stop()

        in_flight = self.tracker.in_flight
        logger.info(
            "waiting for running jobs to complete",
            extra={'in_flight': in_flight, 'timeout': self.timeout}
        )

        if self.tracker.quiesce(self.timeout) is QuiesceResult.QUIESCED:
            logger.info("scheduler stopped successfully")
            return ShutdownOutcome.QUIESCED

        logger.warning(
            f"shutdown timed out after {self.timeout}s, exiting with "
            f"{self.tracker.in_flight} job(s) still running",
            extra={'in_flight': self.tracker.in_flight, 'timeout': self.timeout}
        )
        return ShutdownOutcome.FORCED


class CronRunner:
    """
    Runs one command on one schedule until a termination request.

    Components are built here and passed explicitly to each other; there
    is no module-level state.
    """

    def __init__(
        self,
        expression: str,
        command: str,
        args: Sequence[str] = (),
        shutdown_timeout: Optional[float] = None,
        poll_interval: float = 0.2
    ):
        """
        Initialize the runner.

        Args:
            expression: Schedule expression
            command: Program to execute on each fire
            args: Fixed arguments passed to the program
            shutdown_timeout: Seconds to wait for running jobs on shutdown (None = forever)
            poll_interval: How often the main thread checks for a shutdown request

        Raises:
            InvalidScheduleError: If the schedule expression is malformed
        """
        self.schedule = Schedule.parse(expression)
        self.invocation = Invocation(command, tuple(args))
        self.token = CancellationToken()
        self.tracker = RunTracker(self.token)
        self.executor = CommandExecutor(schedule=expression)
        self.loop = TriggerLoop(
            self.schedule, self.invocation, self.executor, self.tracker, self.token
        )
        self.coordinator = ShutdownCoordinator(
            self.token, self.loop, self.tracker, timeout=shutdown_timeout
        )
        self.poll_interval = poll_interval

        # Written by signal handlers, read by the main thread in run().
        # Appending to a list and assigning a bool take no locks.
        self._shutdown_requested = False
        self._requests: List[Optional[int]] = []
        self._reported = 0

        logger.info("new cron scheduled", extra={'schedule': expression})

    def install_signal_handlers(self):
        """Route SIGINT and SIGTERM to request_shutdown(). Main thread only."""

        def signal_handler(signum, frame):
            self.request_shutdown(signum)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def request_shutdown(self, signum: Optional[int] = None):
        """
        Ask run() to shut down. Safe to call from a signal handler.

        The first request cancels the token immediately, so runs ending
        from here on are classified as cancelled. Logging is left to run().
        """
        self._requests.append(signum)
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        # run() only takes the token's lock inside the coordinator, which
        # never starts before this flag is set
        self.token.cancel()

    def _report_requests(self):
        while self._reported < len(self._requests):
            signum = self._requests[self._reported]
            if signum is not None:
                logger.info("received signal", extra={'signal': signal.Signals(signum).name})
            if self._reported > 0:
                logger.info("shutdown already in progress")
            self._reported += 1

    def run(self) -> ShutdownOutcome:
        """
        Start triggering and block until shutdown completes.

        The shutdown sequence runs on its own thread so this thread can
        keep reporting further signals while jobs drain.

        Returns:
            Outcome of the shutdown sequence
        """
        self.loop.start()

        while not self._shutdown_requested:
            time.sleep(self.poll_interval)
        self._report_requests()

        outcome: List[ShutdownOutcome] = []
        shutdown_thread = threading.Thread(
            target=lambda: outcome.append(self.coordinator.shutdown()),
            name="cronrunner-shutdown",
            daemon=True
        )
        shutdown_thread.start()
        while shutdown_thread.is_alive():
            shutdown_thread.join(self.poll_interval)
            self._report_requests()

        self._report_requests()
        return outcome[0]

"""
In-flight run accounting and the process-wide cancellation token.

Admission is check-then-increment: RunTracker.admit() looks at the
cancellation token and bumps the counter inside the same critical
section. A fire whose check happens before cancel() is admitted and
shutdown waits for it; a fire whose check happens after is rejected.
The counter never over-counts and never goes negative.
"""

import enum
import itertools
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """Write-once flag set on the first termination request."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()

    def cancel(self) -> bool:
        """
        Set the token.

        Returns:
            True if this call set it, False if it was already set
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            return True

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class QuiesceResult(enum.Enum):
    QUIESCED = "quiesced"
    TIMED_OUT = "timed_out"


class AdmitToken:
    """Handle for one admitted run; must be released exactly once."""

    def __init__(self, run_id: int):
        self.run_id = run_id
        self.released = False

    def __repr__(self):
        state = "released" if self.released else "outstanding"
        return f"AdmitToken(run_id={self.run_id}, {state})"


class RunTracker:
    """
    Counts in-flight invocations and signals when none remain.

    All mutation goes through admit() and release(). quiesce() waits on
    the same condition, so a release that lands while quiesce() starts
    waiting still wakes it.
    """

    def __init__(self, token: CancellationToken):
        self._token = token
        self._condition = threading.Condition()
        self._in_flight = 0
        self._ids = itertools.count(1)

    @property
    def in_flight(self) -> int:
        with self._condition:
            return self._in_flight

    def admit(self) -> Optional[AdmitToken]:
        """
        Register a new run unless cancellation has been requested.

        Returns:
            AdmitToken to release later, or None if the run was rejected
        """
        with self._condition:
            if self._token.is_cancelled:
                return None
            self._in_flight += 1
            admitted = AdmitToken(next(self._ids))
            logger.debug(f"Admitted run {admitted.run_id} ({self._in_flight} in flight)")
            return admitted

    def release(self, admitted: AdmitToken):
        """
        Deregister a finished run.

        Raises:
            ValueError: If the token was already released
        """
        with self._condition:
            if admitted.released:
                raise ValueError(f"run {admitted.run_id} already released")
            admitted.released = True
            self._in_flight -= 1
            logger.debug(f"Released run {admitted.run_id} ({self._in_flight} in flight)")
            if self._in_flight == 0:
                self._condition.notify_all()

    def quiesce(self, timeout: Optional[float] = None) -> QuiesceResult:
        """
        Block until no runs are in flight.

        Args:
            timeout: Maximum seconds to wait; None waits indefinitely

        Returns:
            QUIESCED when the counter reached zero, TIMED_OUT otherwise
        """
        with self._condition:
            if self._condition.wait_for(lambda: self._in_flight == 0, timeout):
                return QuiesceResult.QUIESCED
            return QuiesceResult.TIMED_OUT

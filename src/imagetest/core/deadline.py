"""Deadlines used to bound and cancel every suspendable operation of a run."""
import threading
import time
from typing import Optional

from imagetest.core.errors import DeadlineExceeded


class Deadline:
    """A point in time after which the work it bounds must stop.

    Deadlines form a tree: a child expires no later than its parent and
    cancelling a deadline cancels all of its children.

    Arguments:
        timeout: seconds from now until the deadline expires. `None` means
            that it never expires on its own.
        parent: the deadline this one is derived from.
    """

    def __init__(self, timeout: Optional[float] = None, parent: Optional["Deadline"] = None):
        self._parent = parent
        self._cancelled = threading.Event()
        self._expires_at = None if timeout is None else time.monotonic() + timeout

        if parent is not None and parent.expires_at is not None:
            if self._expires_at is None or parent.expires_at < self._expires_at:
                self._expires_at = parent.expires_at

    @classmethod
    def fresh(cls, timeout: Optional[float] = None) -> "Deadline":
        """Creates a deadline unrelated to any other one, i.e. not affected by
        the cancellation of a run."""
        return cls(timeout=timeout)

    @property
    def expires_at(self) -> Optional[float]:
        """Monotonic time when this deadline expires."""
        return self._expires_at

    def child(self, timeout: Optional[float] = None) -> "Deadline":
        """Derives a deadline bounded by `min(remaining, timeout)`."""
        return Deadline(timeout=timeout, parent=self)

    def cancel(self):
        """Cancels this deadline and all the ones derived from it."""
        self._cancelled.set()

    def cancelled(self) -> bool:
        """Checks if this deadline, or any of its parents, has been cancelled."""
        if self._cancelled.is_set():
            return True

        return self._parent is not None and self._parent.cancelled()

    def remaining(self) -> Optional[float]:
        """Seconds left before expiring, `None` if it never expires."""
        if self.cancelled():
            return 0.0

        if self._expires_at is None:
            return None

        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        """Checks if the deadline has expired or has been cancelled."""
        remaining = self.remaining()

        return remaining is not None and remaining <= 0

    def check(self, what: str = "operation"):
        """Raises `DeadlineExceeded` if the deadline has expired.

        Arguments:
            what: description of the operation being bounded.
        """
        if self.cancelled():
            raise DeadlineExceeded(f"{what} cancelled")

        if self.expired():
            raise DeadlineExceeded(f"{what} did not complete before the deadline")

    def bound(self, seconds: Optional[float]) -> Optional[float]:
        """Clamps a timeout so that it does not go past the deadline."""
        remaining = self.remaining()

        if remaining is None:
            return seconds

        if seconds is None:
            return remaining

        return min(seconds, remaining)

    def wait(self, seconds: float) -> bool:
        """Sleeps for the given time, waking up early on expiry or cancel.

        Returns:
            True if the whole period elapsed, False if the deadline expired.
        """
        end = time.monotonic() + seconds

        while True:
            if self.expired():
                return False

            left = end - time.monotonic()
            if left <= 0:
                return True

            # poll so that a parent cancellation is noticed too
            self._cancelled.wait(min(left, 0.1))

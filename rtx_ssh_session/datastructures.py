"""Data structures for RTX session management."""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import OperationCancelledError, OperationTimeoutError


class SessionState(Enum):
    CONNECTING = "connecting"
    AWAITING_INITIAL_PROMPT = "awaiting_initial_prompt"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class CommandResult:
    output: bytes
    prompt_found: bool
    prompt: str = ""


@dataclass
class PoolStats:
    total_created: int
    in_use: int
    available: int
    max_sessions: int
    total_acquisitions: int
    wait_count: int


class Deadline:
    """Cancellation token with an optional absolute expiry.

    Every blocking wait in the package accepts one of these. Children share
    the parent's cancel flag and can only tighten the expiry.
    """

    def __init__(self, timeout: Optional[float] = None, _event: Optional[threading.Event] = None,
                 _expires_at: Optional[float] = None):
        self._event = _event or threading.Event()
        if _expires_at is not None:
            self._expires_at = _expires_at
        elif timeout is not None:
            self._expires_at = time.monotonic() + timeout
        else:
            self._expires_at = None

    def child(self, timeout: Optional[float] = None) -> 'Deadline':
        """Return a deadline expiring at the earlier of ``timeout`` and this one."""
        expires_at = self._expires_at
        if timeout is not None:
            candidate = time.monotonic() + timeout
            if expires_at is None or candidate < expires_at:
                expires_at = candidate
        return Deadline(_event=self._event, _expires_at=expires_at)

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def bound(self, timeout: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def done(self) -> bool:
        return self.cancelled or self.expired

    def cancel(self):
        self._event.set()

    def check(self):
        """Raise if the operation was cancelled or the deadline passed."""
        if self.cancelled:
            raise OperationCancelledError("operation cancelled")
        if self.expired:
            raise OperationTimeoutError("operation deadline exceeded")

    def sleep(self, seconds: float):
        """Sleep for ``seconds`` unless cancelled or expired first (then raise)."""
        self.check()
        if seconds <= 0:
            return
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._event.wait(remaining)
            self.check()
            # The delay outlives the deadline
            raise OperationTimeoutError("operation deadline exceeded")
        if self._event.wait(seconds):
            raise OperationCancelledError("operation cancelled")

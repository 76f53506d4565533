import time
from enum import Enum
from typing import Callable, Optional

from api.metrics import metrics


class LockState(Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"


class OrderLock:
    """At most one order submission in flight."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._state = LockState.IDLE
        self._kind: Optional[str] = None
        self._since: Optional[float] = None

    @property
    def state(self) -> LockState:
        return self._state

    @property
    def kind(self) -> Optional[str]:
        return self._kind

    @property
    def held(self) -> bool:
        return self._state is LockState.SUBMITTING

    def try_acquire(self, kind: str) -> bool:
        if self._state is LockState.SUBMITTING:
            return False
        self._state = LockState.SUBMITTING
        self._kind = kind
        self._since = self.clock()
        metrics.set_in_flight(True)
        return True

    def release(self) -> None:
        self._state = LockState.IDLE
        self._kind = None
        self._since = None
        metrics.set_in_flight(False)

    def held_for(self) -> float:
        if self._since is None:
            return 0.0
        return self.clock() - self._since

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from stackbox.errors import ProvisioningCancelledError, ValidationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunContext:
    """Cancellation and deadline scope for one provisioning run.

    Long waits go through `wait`, which blocks on the cancel event instead of
    sleeping, so `cancel()` from another thread wakes them up immediately.
    """

    def __init__(self, tenant_id: str = "", timeout: Optional[float] = None, clock=time.monotonic):
        self.tenant_id = tenant_id
        self._clock = clock
        self._cancelled = threading.Event()
        self.deadline = clock() + timeout if timeout is not None else None

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def check(self):
        if self.cancelled:
            raise ProvisioningCancelledError(f"Provisioning cancelled for tenant {self.tenant_id}")

    def wait(self, seconds: float) -> bool:
        """Wait up to `seconds`; returns True if the run was cancelled meanwhile."""
        return self._cancelled.wait(max(0.0, seconds))


def poll_until(
    check: Callable[[], Optional[T]],
    *,
    description: str,
    interval: float,
    timeout: float,
    log_every: float = 120,
    context: Optional[RunContext] = None,
    clock=time.monotonic,
) -> T:
    """Call `check` until it returns a value.

    `check` returns None to keep waiting and raises to abort. The wait is
    bounded by `timeout` and by the run context deadline, whichever is sooner.
    """
    context = context or RunContext()
    started = clock()
    deadline = started + timeout
    if context.deadline is not None:
        deadline = min(deadline, context.deadline)
    next_log = started + log_every

    while True:
        context.check()
        result = check()
        if result is not None:
            return result

        now = clock()
        if now >= deadline:
            raise ValidationTimeoutError(description, now - started)

        if context.wait(min(interval, deadline - now)):
            context.check()

        now = clock()
        if now >= next_log:
            logger.info("Still waiting for %s (%d minutes)", description, int((now - started) // 60))
            next_log = now + log_every

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional, Tuple

from stackbox.models import TenantConfig
from stackbox.polling import RunContext

logger = logging.getLogger(__name__)


class ProvisioningPool:
    """Bounded pool of provisioning runs, at most one in flight per tenant.

    Runs for different tenants proceed concurrently up to `max_workers`; the
    rest queue inside the executor.
    """

    def __init__(self, run: Callable[[TenantConfig, RunContext], object], max_workers: int = 4):
        self._run = run
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="provision")
        self._lock = threading.Lock()
        self._in_flight: Dict[str, Tuple[Future, RunContext]] = {}
        self.max_workers = max_workers

    def submit(self, tenant: TenantConfig) -> Future:
        with self._lock:
            existing = self._in_flight.get(tenant.tenant_id)
            if existing is not None:
                logger.info("Provisioning already in flight for %s", tenant.tenant_id)
                return existing[0]
            context = RunContext(tenant.tenant_id)
            future = self._executor.submit(self._run, tenant, context)
            self._in_flight[tenant.tenant_id] = (future, context)
        future.add_done_callback(lambda f, tenant_id=tenant.tenant_id: self._finished(tenant_id, f))
        return future

    def _finished(self, tenant_id: str, future: Future):
        with self._lock:
            current = self._in_flight.get(tenant_id)
            if current is not None and current[0] is future:
                del self._in_flight[tenant_id]
        if not future.cancelled() and future.exception() is not None:
            logger.error("Provisioning run for %s raised: %s", tenant_id, future.exception())

    def in_flight(self, tenant_id: str) -> Optional[Future]:
        with self._lock:
            entry = self._in_flight.get(tenant_id)
            return entry[0] if entry else None

    def cancel(self, tenant_id: str) -> Optional[Future]:
        """Ask an in-flight run to stop; it rolls back at its next check."""
        with self._lock:
            entry = self._in_flight.get(tenant_id)
        if entry is None:
            return None
        future, context = entry
        context.cancel()
        logger.info("Cancellation requested for %s", tenant_id)
        return future

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

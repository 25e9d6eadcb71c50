import logging
import threading
from datetime import timedelta

from lockout_service.errors import LockoutError

logger = logging.getLogger(__name__)


class Reaper:
    """Background sweep that keeps the ledger compact.

    Lock expiry does not depend on it; ``check_status`` clears expired locks on
    read. Each pass clears stale locks and purges audit entries older than the
    policy's retention window.
    """

    def __init__(self, engine, policies, interval_s: float = 60):
        self.engine = engine
        self.policies = policies
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> tuple[int, int]:
        expired = self.engine.expire_locks()
        retention = timedelta(days=self.policies.get_policy().audit_logging.retention_days)
        purged = self.engine.ledger.purge_audit(self.engine.clock() - retention)
        return expired, purged

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.run_once()
            except LockoutError as e:
                logger.warning("Reaper pass failed: %s", e)
            except Exception:
                logger.exception("Reaper pass failed")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="lockout-reaper", daemon=True)
        self._thread.start()
        logger.info("Reaper started (every %ss)", self.interval_s)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_s)
            self._thread = None
